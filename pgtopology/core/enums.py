from __future__ import annotations

from enum import StrEnum


class NodeRole(StrEnum):
    PRIMARY = "primary"
    STANDBY = "standby"
    WITNESS = "witness"
    BDR = "bdr"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: str | None) -> NodeRole:
        """Decode a stored role, mapping unrecognized text to ``UNKNOWN``."""
        if value is None:
            return cls.UNKNOWN
        normalized = value.strip().lower()
        if normalized == "master":
            return cls.PRIMARY
        try:
            return cls(normalized)
        except ValueError:
            return cls.UNKNOWN

    def to_db(self) -> str:
        if self is NodeRole.UNKNOWN:
            msg = "Cannot persist a node with an unknown role"
            raise ValueError(msg)
        return self.value


class ProbeStatus(StrEnum):
    PRIMARY = "primary"
    STANDBY = "standby"
    UNREACHABLE = "unreachable"
    QUERY_FAILED = "query_failed"
    SKIPPED = "skipped"
