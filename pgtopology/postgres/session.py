"""Per-session settings applied to node connections."""

from __future__ import annotations

from typing import TYPE_CHECKING

from ..logger import get_logger
from .config import SessionSettings
from .exceptions import QueryError

if TYPE_CHECKING:
    from ..logger import BoundLogger
    from .connection import NodeConnection


def _format_setting(value: str | bool) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    return str(value)


async def aset_session_parameter(
    conn: NodeConnection,
    name: str,
    value: str | bool,
    *,
    logger: BoundLogger | None = None,
) -> bool:
    """Set a session-level configuration parameter.

    Uses ``set_config()`` so name and value travel as bind parameters.

    Returns
    -------
    bool
        True if the server accepted the setting.
    """
    log = logger or get_logger(__name__)
    setting = _format_setting(value)
    log.debug("setting session parameter", name=name, value=setting)

    try:
        await conn.afetchval("SELECT pg_catalog.set_config($1, $2, false)", name, setting)
    except QueryError as e:
        log.error("unable to set session parameter", name=name, target=conn.describe(), error=e.message)
        return False
    return True


async def aapply_session_defaults(
    conn: NodeConnection,
    settings: SessionSettings | None = None,
    *,
    logger: BoundLogger | None = None,
) -> bool:
    """Apply every configured session default, stopping at the first failure."""
    settings = settings or SessionSettings()
    for name, value in settings.parameters.items():
        if not await aset_session_parameter(conn, name, value, logger=logger):
            return False
    return True
