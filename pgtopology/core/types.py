from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from tenacity import RetryCallState

P = ParamSpec("P")
R = TypeVar("R")

type RetryCallback = Callable[[RetryCallState], Awaitable[None] | None]
type BeforeSleepCallback = Callable[[RetryCallState], Awaitable[None] | None]
