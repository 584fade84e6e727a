from __future__ import annotations


class TopologyError(Exception):
    """Base class for all pgtopology errors."""


class ConninfoParseError(TopologyError, ValueError):
    """A connection string could not be decoded."""


class NodeConnectionError(TopologyError):
    """Transport-level failure while opening a connection to a node."""

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        self.message = message
        super().__init__(f"connection to {target} failed: {message}")


class SessionConfigError(NodeConnectionError):
    """A session default could not be applied to a freshly opened connection."""


class ConnectionNotOpenError(TopologyError):
    """Operation attempted on a connection that is closed."""


class QueryError(TopologyError):
    """A statement reached the server but returned an error."""

    def __init__(self, operation: str, message: str) -> None:
        self.operation = operation
        self.message = message
        super().__init__(f"{operation} failed: {message}")


class RegistryQueryError(QueryError):
    """A read against the node registry failed."""


class PrimaryNotFoundError(TopologyError):
    """No registered node could be verified as the cluster primary."""
