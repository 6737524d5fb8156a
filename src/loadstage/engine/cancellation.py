"""Cooperative stop signal handed to each virtual user."""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loadstage.engine.clock import Clock


class CancellationToken:
    """One-shot stop flag polled by a virtual user at iteration boundaries.

    Cancelling never interrupts an in-flight request.  It only makes
    :attr:`cancelled` true and wakes any :meth:`wait` (used for think
    time), so the owner exits before starting its next request.

    Example::

        token = CancellationToken()
        while not token.cancelled:
            await do_iteration()
            if await token.wait(think_time):
                break
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def cancelled(self) -> bool:
        """Return True once :meth:`cancel` has been called."""
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        """Return the reason passed to the first :meth:`cancel` call."""
        return self._reason

    def cancel(self, reason: str = "stop requested") -> None:
        """Signal the owner to stop after its current iteration."""
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or *timeout* seconds pass.

        Returns:
            True if the token was cancelled, False on timeout.
        """
        if timeout is not None and timeout <= 0:
            return self.cancelled
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        return self.cancelled

    async def sleep(self, seconds: float, clock: Clock) -> bool:
        """Sleep on *clock* for *seconds*, waking early if cancelled.

        Returns:
            True if the token was cancelled before or during the sleep.
        """
        if self.cancelled or seconds <= 0:
            return self.cancelled
        sleeper = asyncio.ensure_future(clock.sleep(seconds))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, waiter):
                if not pending.done():
                    pending.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await pending
        return self.cancelled
