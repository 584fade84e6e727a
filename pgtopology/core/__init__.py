"""Core module exports."""

from __future__ import annotations

from .enums import NodeRole, ProbeStatus

__all__ = [
    "NodeRole",
    "ProbeStatus",
]
