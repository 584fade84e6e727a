"""Connection parameter registry.

`ConnectionParameters` is an ordered, key-unique mapping of libpq connection
keywords to values. Node records store their connection details as libpq
connection strings, so this module decodes both keyword/value strings and
``postgresql://`` URIs, and converts the result into keyword arguments for
``asyncpg.connect()``.

Usage
-----
>>> params = ConnectionParameters.parse("host=db1 port=5433 dbname=repmgr user=repmgr")
>>> params.set("connect_timeout", "2")
>>> params.get("port")
'5433'
>>> params.to_conninfo()
'host=db1 port=5433 dbname=repmgr user=repmgr connect_timeout=2'
"""

from __future__ import annotations

import shlex
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any, Self
from urllib.parse import parse_qsl, unquote

from .config import ConnectionDefaults
from .exceptions import ConninfoParseError

if TYPE_CHECKING:
    from .connection import NodeConnection

CONNINFO_KEYWORDS: frozenset[str] = frozenset(
    {
        "application_name",
        "channel_binding",
        "client_encoding",
        "connect_timeout",
        "dbname",
        "fallback_application_name",
        "gssdelegation",
        "gssencmode",
        "gsslib",
        "host",
        "hostaddr",
        "keepalives",
        "keepalives_count",
        "keepalives_idle",
        "keepalives_interval",
        "krbsrvname",
        "load_balance_hosts",
        "options",
        "passfile",
        "password",
        "port",
        "replication",
        "require_auth",
        "requirepeer",
        "requiressl",
        "service",
        "ssl_max_protocol_version",
        "ssl_min_protocol_version",
        "sslcert",
        "sslcertmode",
        "sslcompression",
        "sslcrl",
        "sslcrldir",
        "sslkey",
        "sslmode",
        "sslnegotiation",
        "sslpassword",
        "sslrootcert",
        "sslsni",
        "target_session_attrs",
        "tcp_user_timeout",
        "user",
    }
)

_URI_SCHEMES = ("postgresql://", "postgres://")
_URI_ALIASES = {"ssl": "sslmode"}
_SECRET_KEYWORDS = frozenset({"password", "sslpassword"})
_REDACTED = "********"


class ConnectionParameters(Mapping[str, str]):
    """Ordered, key-deduplicated set of connection parameters.

    `get` returns ``None`` for a key that is not set or holds a blank value,
    so "unset" is never conflated with an empty string.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values: dict[str, str] = {}
        if values:
            for key, value in values.items():
                self.set(key, value)

    @classmethod
    def initialize(cls, *, defaults: bool = False) -> Self:
        """Create an empty parameter list, optionally pre-populated with system defaults."""
        params = cls()
        if defaults:
            params.merge(ConnectionDefaults().as_parameters())
        return params

    @classmethod
    def parse(cls, conninfo: str, *, ignore_application_name: bool = False) -> Self:
        """Decode a libpq keyword/value string or a ``postgresql://`` URI.

        Parameters
        ----------
        conninfo
            Connection string to decode.
        ignore_application_name
            Drop ``application_name`` so an inherited identifier is not propagated.

        Raises
        ------
        ConninfoParseError
            If the string is malformed or names an unknown keyword.
        """
        stripped = conninfo.strip()
        if stripped.startswith(_URI_SCHEMES):
            pairs = _parse_uri(stripped)
        else:
            pairs = _parse_keyword_value(stripped)

        params = cls()
        for key, value in pairs:
            if key not in CONNINFO_KEYWORDS:
                msg = f'invalid connection option "{key}"'
                raise ConninfoParseError(msg)
            if not value or (ignore_application_name and key == "application_name"):
                continue
            _validate_value(key, value)
            params.set(key, value)
        return params

    @classmethod
    async def afrom_connection(cls, conn: NodeConnection) -> Self:
        """Return the effective parameters of an open connection.

        Starts from the parameters the connection was opened with and
        overlays what the live session reports: the authenticated user,
        the current database, the server address and the application name.
        """
        params = cls(conn.parameters)
        row = await conn.afetchrow(
            """
            SELECT current_user::text AS "user",
                   pg_catalog.current_database()::text AS dbname,
                   pg_catalog.host(pg_catalog.inet_server_addr()) AS host,
                   pg_catalog.inet_server_port()::text AS port,
                   pg_catalog.current_setting('application_name') AS application_name
            """
        )
        if row is not None:
            for key in ("user", "dbname", "host", "port", "application_name"):
                value = row[key]
                if value:
                    params.set(key, value)
        return params

    def set(self, key: str, value: str | int | None) -> None:
        """Insert ``key`` or overwrite its value in place."""
        self._values[key] = "" if value is None else str(value)

    def get(self, key: str, default: str | None = None) -> str | None:  # type: ignore[override]
        """Return the value of ``key``, or ``default`` when it is unset or blank."""
        return self._values.get(key) or default

    def merge(self, source: Mapping[str, str]) -> None:
        """Copy every non-empty value of ``source`` into this list."""
        for key, value in source.items():
            if value:
                self.set(key, value)

    def copy(self) -> Self:
        return type(self)(self._values)

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_conninfo(redact=True)!r})"

    @property
    def is_replication(self) -> bool:
        return self.get("replication") is not None

    def describe(self) -> str:
        """Short human-readable target, e.g. ``db1:5432/repmgr``."""
        host = self.get("hostaddr") or self.get("host") or "localhost"
        port = self.get("port") or "5432"
        dbname = self.get("dbname") or self.get("user") or ""
        return f"{host}:{port}/{dbname}"

    def to_conninfo(self, *, redact: bool = False) -> str:
        """Serialize to a keyword/value connection string in insertion order."""
        parts = []
        for key, value in self._values.items():
            if not value:
                continue
            shown = _REDACTED if redact and key in _SECRET_KEYWORDS else value
            parts.append(f"{key}={_quote(shown)}")
        return " ".join(parts)

    def to_connect_kwargs(self) -> dict[str, Any]:
        """Translate into keyword arguments for ``asyncpg.connect()``.

        Keywords asyncpg has no equivalent for (keepalives, GSS, client
        certificates, ...) are left out.
        """
        kwargs: dict[str, Any] = {}

        host = self.get("hostaddr") or self.get("host")
        if host:
            hosts = [h.strip() for h in host.split(",")]
            kwargs["host"] = hosts if len(hosts) > 1 else hosts[0]

        port = self.get("port")
        if port:
            try:
                ports = [int(p) for p in port.split(",")]
            except ValueError as e:
                msg = f'invalid port number: "{port}"'
                raise ConninfoParseError(msg) from e
            kwargs["port"] = ports if len(ports) > 1 else ports[0]

        for keyword, argument in (
            ("user", "user"),
            ("password", "password"),
            ("dbname", "database"),
            ("passfile", "passfile"),
            ("sslmode", "ssl"),
            ("target_session_attrs", "target_session_attrs"),
        ):
            value = self.get(keyword)
            if value:
                kwargs[argument] = value

        timeout = self.get("connect_timeout")
        if timeout:
            try:
                seconds = float(timeout)
            except ValueError as e:
                msg = f'invalid integer value "{timeout}" for connection option "connect_timeout"'
                raise ConninfoParseError(msg) from e
            # libpq: zero or negative waits forever, anything else is at least 2s
            if seconds > 0:
                kwargs["timeout"] = max(seconds, 2.0)

        server_settings = _parse_options(self.get("options"))
        application_name = self.get("application_name") or self.get("fallback_application_name")
        if application_name:
            server_settings["application_name"] = application_name
        if server_settings:
            kwargs["server_settings"] = server_settings

        return kwargs


def _validate_value(key: str, value: str) -> None:
    """Reject values libpq would refuse at connect time."""
    if key == "port":
        for port in value.split(","):
            if not port.strip().isdigit():
                msg = f'invalid port number: "{port}"'
                raise ConninfoParseError(msg)
    elif key == "connect_timeout":
        try:
            int(value)
        except ValueError as e:
            msg = f'invalid integer value "{value}" for connection option "connect_timeout"'
            raise ConninfoParseError(msg) from e
    elif key == "options":
        _parse_options(value)


def _quote(value: str) -> str:
    if value and not any(ch.isspace() or ch in "'\\" for ch in value):
        return value
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"


def _parse_keyword_value(conninfo: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    pos = 0
    length = len(conninfo)

    while pos < length:
        while pos < length and conninfo[pos].isspace():
            pos += 1
        if pos >= length:
            break

        start = pos
        while pos < length and conninfo[pos] != "=" and not conninfo[pos].isspace():
            pos += 1
        key = conninfo[start:pos]

        while pos < length and conninfo[pos].isspace():
            pos += 1
        if pos >= length or conninfo[pos] != "=":
            msg = f'missing "=" after "{key}" in connection info string'
            raise ConninfoParseError(msg)
        pos += 1
        while pos < length and conninfo[pos].isspace():
            pos += 1

        chars: list[str] = []
        if pos < length and conninfo[pos] == "'":
            pos += 1
            while True:
                if pos >= length:
                    msg = "unterminated quoted string in connection info string"
                    raise ConninfoParseError(msg)
                ch = conninfo[pos]
                if ch == "\\" and pos + 1 < length:
                    chars.append(conninfo[pos + 1])
                    pos += 2
                elif ch == "'":
                    pos += 1
                    break
                else:
                    chars.append(ch)
                    pos += 1
        else:
            while pos < length and not conninfo[pos].isspace():
                ch = conninfo[pos]
                if ch == "\\" and pos + 1 < length:
                    chars.append(conninfo[pos + 1])
                    pos += 2
                else:
                    chars.append(ch)
                    pos += 1

        pairs.append((key, "".join(chars)))

    return pairs


def _parse_uri(uri: str) -> list[tuple[str, str]]:
    rest = uri.split("://", 1)[1]
    rest, _, query = rest.partition("?")
    netloc, _, dbname = rest.partition("/")

    pairs: list[tuple[str, str]] = []

    userinfo, at, hostinfo = netloc.rpartition("@")
    if not at:
        hostinfo = netloc
    elif userinfo:
        user, _, password = userinfo.partition(":")
        pairs.append(("user", unquote(user)))
        if password:
            pairs.append(("password", unquote(password)))

    hosts: list[str] = []
    ports: list[str] = []
    for spec in hostinfo.split(",") if hostinfo else []:
        host, port = _split_host_port(spec)
        hosts.append(unquote(host))
        ports.append(port)
    if any(hosts):
        pairs.append(("host", ",".join(hosts)))
    if any(ports):
        pairs.append(("port", ",".join(p or "5432" for p in ports)))

    if dbname:
        pairs.append(("dbname", unquote(dbname)))

    try:
        query_pairs = parse_qsl(query, keep_blank_values=True, strict_parsing=bool(query))
    except ValueError as e:
        msg = f'invalid URI query parameter in "{uri}"'
        raise ConninfoParseError(msg) from e
    for key, value in query_pairs:
        if key == "ssl":
            value = "require" if value == "true" else value
        pairs.append((_URI_ALIASES.get(key, key), value))

    return pairs


def _split_host_port(spec: str) -> tuple[str, str]:
    if spec.startswith("["):
        end = spec.find("]")
        if end == -1:
            msg = f'missing "]" in IPv6 host address in URI: "{spec}"'
            raise ConninfoParseError(msg)
        host, remainder = spec[1:end], spec[end + 1 :]
        if remainder and not remainder.startswith(":"):
            msg = f'unexpected character after IPv6 host address in URI: "{spec}"'
            raise ConninfoParseError(msg)
        port = remainder[1:]
    else:
        host, _, port = spec.partition(":")

    if port and not port.isdigit():
        msg = f'invalid port number: "{port}"'
        raise ConninfoParseError(msg)
    return host, port


def _parse_options(options: str | None) -> dict[str, str]:
    """Extract ``-c name=value`` settings from a libpq ``options`` string."""
    if not options:
        return {}

    settings: dict[str, str] = {}
    try:
        tokens = shlex.split(options)
    except ValueError as e:
        msg = f'invalid connection option "options": {e}'
        raise ConninfoParseError(msg) from e
    index = 0
    while index < len(tokens):
        token = tokens[index]
        if token == "-c" and index + 1 < len(tokens):
            assignment = tokens[index + 1]
            index += 2
        elif token.startswith("-c"):
            assignment = token[2:]
            index += 1
        elif token.startswith("--"):
            assignment = token[2:]
            index += 1
        else:
            index += 1
            continue

        name, sep, value = assignment.partition("=")
        if sep and name:
            settings[name.replace("-", "_")] = value
    return settings
