"""Configuration models for node connections, the registry and discovery.

- `ConnectionDefaults`: libpq-style defaults read from ``PG*`` environment variables
- `SessionSettings`: session parameters applied to every new connection
- `ConnectionConfig`: timeouts and strictness for opening node connections
- `RegistryConfig`: location of the node registry table
- `DiscoveryConfig`: primary discovery behaviour
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..resilience import RetryConfig

_IDENTIFIER_RE = re.compile(r"^[a-z_][a-z0-9_$]{0,62}$")


class ConnectionDefaults(BaseSettings):
    """System defaults for connection parameters.

    Mirrors the subset of libpq defaults that are meaningful to asyncpg.
    Values come from the usual ``PGHOST``, ``PGPORT``... environment
    variables, falling back to the libpq built-in defaults.
    """

    model_config = SettingsConfigDict(env_prefix="PG", extra="ignore", frozen=True)

    host: str | None = Field(default=None)
    hostaddr: str | None = Field(default=None)
    port: int = Field(default=5432, ge=1, le=65535)
    user: str | None = Field(default=None)
    password: SecretStr | None = Field(default=None)
    database: str | None = Field(default=None)
    sslmode: str = Field(default="prefer")
    connect_timeout: int | None = Field(default=None, ge=0)
    appname: str | None = Field(default=None)
    options: str | None = Field(default=None)
    target_session_attrs: str | None = Field(default=None, validation_alias="PGTARGETSESSIONATTRS")

    def as_parameters(self) -> dict[str, str]:
        """Return the non-empty defaults keyed by libpq keyword."""
        values: dict[str, str | None] = {
            "host": self.host,
            "hostaddr": self.hostaddr,
            "port": str(self.port),
            "user": self.user,
            "password": self.password.get_secret_value() if self.password else None,
            "dbname": self.database,
            "sslmode": self.sslmode,
            "connect_timeout": str(self.connect_timeout) if self.connect_timeout is not None else None,
            "application_name": self.appname,
            "options": self.options,
            "target_session_attrs": self.target_session_attrs,
        }
        return {key: value for key, value in values.items() if value}


class SessionSettings(BaseModel):
    """Session parameters forced on every non-replication connection."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    # "local" keeps registry writes from blocking on a synchronous standby
    parameters: dict[str, str | bool] = Field(default_factory=lambda: {"synchronous_commit": "local"})


class ConnectionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    connect_timeout: float = Field(default=10.0, gt=0.0, le=300.0)
    command_timeout: float = Field(default=30.0, gt=0.0, le=3600.0)
    fallback_application_name: str = Field(default="pgtopology", min_length=1, max_length=63)
    strict_session_defaults: bool = Field(default=True)
    session: SessionSettings = Field(default_factory=SessionSettings)


class RegistryConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_name: str = Field(default="repmgr")
    table_name: str = Field(default="nodes")
    query_timeout: float | None = Field(default=None, gt=0.0)

    @field_validator("schema_name", "table_name")
    @classmethod
    def _validate_identifier(cls, value: str) -> str:
        if not _IDENTIFIER_RE.match(value):
            msg = f"{value!r} is not a valid lowercase SQL identifier"
            raise ValueError(msg)
        return value

    @property
    def qualified_table(self) -> str:
        return f'"{self.schema_name}"."{self.table_name}"'


class DiscoveryConfig(BaseModel):
    """Configuration for primary discovery.

    Examples
    --------
    >>> config = DiscoveryConfig(
    ...     connection=ConnectionConfig(connect_timeout=3.0),
    ...     max_concurrent_probes=4,
    ...     retry=RetryConfig(max_attempts=5, wait_min=0.5, wait_max=5.0),
    ... )
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    connection: ConnectionConfig = Field(default_factory=ConnectionConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    max_concurrent_probes: int = Field(default=1, ge=1, le=64)
    query_timeout: float = Field(default=10.0, gt=0.0, le=300.0)
    retry: RetryConfig | None = Field(default=None)
