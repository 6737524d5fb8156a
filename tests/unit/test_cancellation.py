"""Tests for CancellationToken and the system clock."""

from __future__ import annotations

import asyncio
import time

from loadstage.engine.cancellation import CancellationToken
from loadstage.engine.clock import SystemClock


class TestCancellationToken:
    def test_initial_state(self):
        token = CancellationToken()
        assert not token.cancelled
        assert token.reason is None

    def test_first_reason_wins(self):
        token = CancellationToken()
        token.cancel("ramp down")
        token.cancel("test finished")
        assert token.cancelled
        assert token.reason == "ramp down"

    async def test_wait_times_out(self):
        token = CancellationToken()
        assert await token.wait(0.01) is False

    async def test_wait_wakes_on_cancel(self):
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, token.cancel)

        start = time.monotonic()
        assert await token.wait(5.0) is True
        assert time.monotonic() - start < 1.0

    async def test_sleep_interrupted_by_cancel(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "stop")

        start = time.monotonic()
        assert await token.sleep(5.0, SystemClock()) is True
        assert time.monotonic() - start < 1.0

    async def test_sleep_completes(self):
        token = CancellationToken()
        assert await token.sleep(0.01, SystemClock()) is False

    async def test_sleep_when_already_cancelled(self):
        token = CancellationToken()
        token.cancel()
        assert await token.sleep(10.0, SystemClock()) is True


class TestSystemClock:
    async def test_sleep_and_monotonic(self):
        clock = SystemClock()
        start = clock.monotonic()
        await clock.sleep(0.01)
        assert clock.monotonic() >= start
        await clock.sleep(-1.0)
