"""Virtual user iteration loop."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loadstage._internal.logging import get_logger
from loadstage.engine.checks import DEFAULT_CHECKS, any_failed, run_checks
from loadstage.metrics.models import CHECKS, ERRORS, ITERATION_DURATION, ITERATIONS, MetricSample

if TYPE_CHECKING:
    import random
    from collections.abc import Mapping, Sequence

    from loadstage._internal.types import ThinkTime
    from loadstage.engine.cancellation import CancellationToken
    from loadstage.engine.checks import Check
    from loadstage.engine.clock import Clock
    from loadstage.engine.executor import RequestExecutor
    from loadstage.metrics.aggregator import MetricShard
    from loadstage.metrics.collector import IntervalCollector
    from loadstage.metrics.models import RequestMetric

logger = get_logger("engine.virtual_user")


class VirtualUser:
    """One simulated client repeating the fixed iteration until stopped.

    Each iteration picks an endpoint uniformly at random, issues a single
    GET, runs the check set, records an ``errors`` sample that is true when
    any check failed, then thinks for a random time.  The stop token is
    honoured between iterations and during think time, never while a
    request is in flight.

    Attributes:
        vu_id: Identifier of this virtual user.
    """

    def __init__(
        self,
        vu_id: int,
        *,
        base_url: str,
        endpoints: Sequence[str],
        headers: Mapping[str, str],
        executor: RequestExecutor,
        shard: MetricShard,
        token: CancellationToken,
        rng: random.Random,
        think_time: ThinkTime,
        clock: Clock,
        collector: IntervalCollector | None = None,
        checks: Sequence[Check] = DEFAULT_CHECKS,
    ) -> None:
        self.vu_id = vu_id
        self._base_url = base_url.rstrip("/")
        self._endpoints = tuple(endpoints)
        self._headers = dict(headers)
        self._executor = executor
        self._shard = shard
        self._token = token
        self._rng = rng
        self._think_time = think_time
        self._clock = clock
        self._collector = collector
        self._checks = tuple(checks)

    @property
    def token(self) -> CancellationToken:
        """Return the stop token this user polls."""
        return self._token

    async def run(self) -> None:
        """Iterate until the stop token is cancelled."""
        logger.debug("Virtual user %d started", self.vu_id, extra={"vu_id": self.vu_id})
        try:
            while not self._token.cancelled:
                await self.run_iteration()
                if await self._token.sleep(self._next_think_time(), self._clock):
                    break
        finally:
            logger.debug(
                "Virtual user %d stopped (%s)",
                self.vu_id,
                self._token.reason or "cancelled",
                extra={"vu_id": self.vu_id},
            )

    async def run_iteration(self) -> bool:
        """Run a single iteration.

        Returns:
            True if the iteration failed (any check failed, or the
            iteration raised unexpectedly).
        """
        started = self._clock.monotonic()
        endpoint = self._rng.choice(self._endpoints)
        try:
            result = await self._executor.execute(
                f"{self._base_url}{endpoint}",
                self._headers,
                endpoint=endpoint,
                vu_id=self.vu_id,
                metric_callback=self._on_request,
            )
            outcomes = run_checks(result, self._checks)
            for outcome in outcomes:
                self._shard.add(MetricSample.rate(CHECKS, outcome.passed, tag=outcome.name))
            failed = any_failed(outcomes)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.debug(
                "Iteration failed for virtual user %d",
                self.vu_id,
                exc_info=True,
                extra={"vu_id": self.vu_id},
            )
            failed = True

        self._shard.add(MetricSample.rate(ERRORS, failed))
        self._shard.add(MetricSample.counter(ITERATIONS))
        self._shard.add(
            MetricSample.trend(ITERATION_DURATION, (self._clock.monotonic() - started) * 1000)
        )
        if self._collector is not None:
            self._collector.record_iteration(failed=failed)
        return failed

    def _next_think_time(self) -> float:
        low, high = self._think_time
        # Uniform over [low, high)
        return low + self._rng.random() * (high - low)

    def _on_request(self, metric: RequestMetric) -> None:
        self._shard.record_request(metric)
        if self._collector is not None:
            self._collector.record(metric)
