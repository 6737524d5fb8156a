"""Integration tests for the virtual user iteration loop."""

from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING

import pytest

from loadstage.engine.cancellation import CancellationToken
from loadstage.engine.checks import DEFAULT_CHECKS, Check
from loadstage.engine.clock import SystemClock
from loadstage.engine.virtual_user import VirtualUser
from loadstage.metrics.aggregator import MetricsAggregator
from loadstage.metrics.collector import IntervalCollector
from loadstage.metrics.models import CHECKS, ERRORS, HTTP_REQS, ITERATION_DURATION, ITERATIONS

if TYPE_CHECKING:
    from loadstage.engine.clock import Clock
    from loadstage.engine.executor import RequestExecutor


def _make_user(
    executor: RequestExecutor,
    aggregator: MetricsAggregator,
    *,
    endpoints: tuple[str, ...] = ("/get",),
    think_time: tuple[float, float] = (0.0, 0.0),
    checks: tuple[Check, ...] = DEFAULT_CHECKS,
    collector: IntervalCollector | None = None,
    clock: Clock | None = None,
) -> VirtualUser:
    return VirtualUser(
        1,
        base_url="http://fake.test/",
        endpoints=endpoints,
        headers={"Accept": "application/json"},
        executor=executor,
        shard=aggregator.shard(1),
        token=CancellationToken(),
        rng=random.Random(7),
        think_time=think_time,
        clock=clock or SystemClock(),
        collector=collector,
        checks=checks,
    )


@pytest.mark.timeout(30)
class TestVirtualUserIteration:
    async def test_healthy_iteration(self, fake_executor_cls):
        executor = fake_executor_cls()
        aggregator = MetricsAggregator()
        collector = IntervalCollector()
        user = _make_user(executor, aggregator, collector=collector)

        failed = await user.run_iteration()

        assert failed is False
        assert executor.requests == ["http://fake.test/get"]
        assert aggregator.count(HTTP_REQS) == 1
        assert aggregator.count(CHECKS) == 4
        assert aggregator.rate(CHECKS) == 1.0
        assert aggregator.rate(ERRORS) == 0.0
        assert aggregator.view(ITERATIONS).total == 1
        assert aggregator.count(ITERATION_DURATION) == 1
        assert collector.flush(elapsed_seconds=1.0, active_users=1).iterations == 1

    async def test_failed_status_marks_iteration_failed(self, fake_executor_cls):
        aggregator = MetricsAggregator()
        user = _make_user(fake_executor_cls(status=500), aggregator)

        assert await user.run_iteration() is True
        assert aggregator.rate(ERRORS) == 1.0
        assert aggregator.rate(CHECKS, tag="status is 200") == 0.0
        assert aggregator.rate(CHECKS, tag="response has body") == 1.0

    async def test_transport_error_is_recorded_not_raised(self, fake_executor_cls):
        aggregator = MetricsAggregator()
        user = _make_user(fake_executor_cls(error=ConnectionResetError("reset")), aggregator)

        assert await user.run_iteration() is True
        assert aggregator.count(HTTP_REQS) == 1
        summary = aggregator.summary(elapsed_seconds=1.0)
        assert summary.errors_by_type == {"connection": 1}

    async def test_unexpected_exception_counts_as_failed_iteration(self, fake_executor_cls):
        aggregator = MetricsAggregator()
        broken = Check("broken", lambda r: 1 / 0 > 0)
        user = _make_user(fake_executor_cls(), aggregator, checks=(broken,))

        assert await user.run_iteration() is True
        assert aggregator.rate(ERRORS) == 1.0
        assert aggregator.view(ITERATIONS).total == 1

    async def test_endpoints_chosen_uniformly(self, fake_executor_cls):
        executor = fake_executor_cls(delay=0.0)
        user = _make_user(executor, MetricsAggregator(), endpoints=("/a", "/b", "/c"))

        for _ in range(300):
            await user.run_iteration()

        counts = {
            path: sum(url.endswith(path) for url in executor.requests)
            for path in ("/a", "/b", "/c")
        }
        assert sum(counts.values()) == 300
        assert all(60 <= n <= 140 for n in counts.values())


@pytest.mark.timeout(30)
class TestVirtualUserLoop:
    async def test_runs_until_cancelled(self, fake_executor_cls):
        aggregator = MetricsAggregator()
        user = _make_user(fake_executor_cls(), aggregator, think_time=(0.01, 0.02))

        task = asyncio.create_task(user.run())
        await asyncio.sleep(0.2)
        user.token.cancel("test over")
        await asyncio.wait_for(task, timeout=2.0)

        assert aggregator.view(ITERATIONS).total >= 2

    async def test_cancel_interrupts_think_time(self, fake_executor_cls):
        user = _make_user(fake_executor_cls(), MetricsAggregator(), think_time=(10.0, 10.0))

        task = asyncio.create_task(user.run())
        await asyncio.sleep(0.1)
        start = time.monotonic()
        user.token.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        assert time.monotonic() - start < 1.0

    async def test_cancel_does_not_interrupt_in_flight_request(self, fake_executor_cls):
        aggregator = MetricsAggregator()
        user = _make_user(fake_executor_cls(delay=0.3), aggregator, think_time=(0.0, 0.0))

        task = asyncio.create_task(user.run())
        await asyncio.sleep(0.05)
        user.token.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        assert aggregator.count(HTTP_REQS) == 1
        assert aggregator.view(ITERATIONS).total == 1

    async def test_think_time_drawn_from_half_open_range(self, fake_executor_cls, manual_clock):
        user = _make_user(
            fake_executor_cls(delay=0.0),
            MetricsAggregator(),
            endpoints=("/a", "/b"),
            think_time=(1.0, 3.0),
            clock=manual_clock,
        )

        task = asyncio.create_task(user.run())
        while len(manual_clock.sleeps) < 50:
            await asyncio.sleep(0)
        user.token.cancel()
        await asyncio.wait_for(task, timeout=2.0)

        drawn = manual_clock.sleeps[:50]
        assert all(1.0 <= seconds < 3.0 for seconds in drawn)
        assert max(drawn) - min(drawn) > 1.0
