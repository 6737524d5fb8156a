"""Time source for stage transitions, request timing and think time."""

from __future__ import annotations

import asyncio
import time
from typing import Protocol


class Clock(Protocol):
    """Monotonic clock with an awaitable sleep."""

    def monotonic(self) -> float:
        """Return monotonic seconds."""
        ...

    async def sleep(self, seconds: float) -> None:
        """Suspend the calling coroutine for *seconds*."""
        ...


class SystemClock:
    """Wall-clock implementation backed by ``time`` and ``asyncio``."""

    def monotonic(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(max(seconds, 0.0))
