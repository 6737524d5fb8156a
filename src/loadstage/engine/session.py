"""Virtual user population control: ticks, reconciliation and draining."""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loadstage._internal.logging import get_logger
from loadstage.engine.cancellation import CancellationToken
from loadstage.engine.clock import SystemClock
from loadstage.engine.scheduler import Scheduler
from loadstage.engine.virtual_user import VirtualUser
from loadstage.metrics.collector import IntervalCollector
from loadstage.metrics.store import MetricStore
from loadstage.patterns.stages import format_duration

if TYPE_CHECKING:
    from collections.abc import Callable

    from loadstage._internal.config import LoadTestConfig
    from loadstage.engine.clock import Clock
    from loadstage.engine.executor import RequestExecutor
    from loadstage.metrics.aggregator import MetricsAggregator
    from loadstage.metrics.models import MetricSnapshot
    from loadstage.patterns.stages import StagedPattern

logger = get_logger("engine.session")


@dataclass
class _UserHandle:
    """Scheduler-side handle on one running virtual user."""

    vu_id: int
    token: CancellationToken
    task: asyncio.Task[None]
    stop_deadline: float | None = None


class LoadSession:
    """Drives the virtual user population through the stage profile.

    On every tick the session computes the target concurrency for the
    elapsed time and reconciles towards it: missing users are spawned,
    surplus users are asked to stop (newest first) and move to a draining
    set where they finish their current iteration.  A draining user that
    is still alive after ``stop_grace_period`` is cancelled and counted as
    a scheduler anomaly.  Anomalies are logged, never fatal.

    When the profile is exhausted every remaining user is drained before
    :meth:`run` returns.

    Attributes:
        anomalies: Users force-terminated after missing the grace period.
    """

    def __init__(
        self,
        config: LoadTestConfig,
        pattern: StagedPattern,
        executor: RequestExecutor,
        aggregator: MetricsAggregator,
        *,
        store: MetricStore | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        on_snapshot: Callable[[MetricSnapshot], None] | None = None,
    ) -> None:
        self._config = config
        self._pattern = pattern
        self._executor = executor
        self._aggregator = aggregator
        self._store = store if store is not None else MetricStore()
        self._clock: Clock = clock or SystemClock()
        self._collector = IntervalCollector(self._clock)
        self._rng = rng or random.Random(config.seed)  # noqa: S311
        self._on_snapshot = on_snapshot

        self._active: list[_UserHandle] = []
        self._draining: list[_UserHandle] = []
        self._terminated: list[_UserHandle] = []
        self._next_user_id = 0
        self._target = 0
        self._stage_index = -1
        self._abort = CancellationToken()
        self.anomalies = 0

    @property
    def store(self) -> MetricStore:
        """Return the store receiving one interval snapshot per tick."""
        return self._store

    @property
    def active_user_count(self) -> int:
        """Return the number of running (non-draining) virtual users."""
        return len(self._active)

    @property
    def draining_user_count(self) -> int:
        """Return the number of users finishing their last iteration."""
        return len(self._draining)

    @property
    def target(self) -> int:
        """Return the most recent target concurrency."""
        return self._target

    @property
    def aborted(self) -> bool:
        """Return True once :meth:`abort` has been called."""
        return self._abort.cancelled

    @property
    def spawned_user_count(self) -> int:
        """Return how many virtual users were started in total."""
        return self._next_user_id

    def abort(self, reason: str = "aborted") -> None:
        """Stop spawning immediately and drain every user.

        The main loop wakes from its tick sleep, signals all users and
        waits for them within the grace period.
        """
        if not self._abort.cancelled:
            logger.warning("Aborting load generation: %s", reason)
            self._abort.cancel(reason)

    async def run(self) -> None:
        """Drive the population until the profile ends or the run is aborted."""
        scheduler = Scheduler(self._pattern, self._config.tick_interval)
        start = self._clock.monotonic()
        logger.info(
            "Ramping through %d stages over %s (tick=%.2fs)",
            len(self._pattern.stages),
            format_duration(scheduler.duration_seconds),
            self._config.tick_interval,
        )

        try:
            for command in scheduler.iter_commands():
                remaining = start + command.elapsed_seconds - self._clock.monotonic()
                if await self._abort.sleep(remaining, self._clock):
                    break

                self._log_stage_transition(command.elapsed_seconds)
                self._target = command.target_concurrency
                self._reconcile(command.target_concurrency)
                self._reap()

                elapsed = self._clock.monotonic() - start
                snapshot = self._collector.flush(
                    elapsed_seconds=elapsed,
                    active_users=self.active_user_count,
                    target_users=self._target,
                )
                self._store.append(snapshot)
                if self._on_snapshot is not None:
                    self._on_snapshot(snapshot)

                logger.debug(
                    "Tick %.1fs: target=%d, running=%d, draining=%d, rps=%.1f, p95=%.1fms",
                    elapsed,
                    self._target,
                    self.active_user_count,
                    self.draining_user_count,
                    snapshot.requests_per_second,
                    snapshot.latency_p95,
                )
        finally:
            self._target = 0
            await self._drain_all("test finished" if not self.aborted else "test aborted")

        logger.info(
            "Ramp-down complete: %d virtual users started, %d force-terminated",
            self._next_user_id,
            self.anomalies,
        )

    def _reconcile(self, target: int) -> None:
        """Spawn or stop users so the running count matches *target*."""
        if self.aborted:
            target = 0

        while len(self._active) < target:
            self._spawn()

        surplus = len(self._active) - target
        if surplus > 0:
            deadline = self._clock.monotonic() + self._config.stop_grace_period
            for _ in range(surplus):
                handle = self._active.pop()
                handle.token.cancel("ramp down")
                handle.stop_deadline = deadline
                self._draining.append(handle)

    def _spawn(self) -> None:
        vu_id = self._next_user_id
        self._next_user_id += 1
        token = CancellationToken()
        user = VirtualUser(
            vu_id,
            base_url=self._config.base_url,
            endpoints=self._config.endpoints,
            headers=self._config.headers,
            executor=self._executor,
            shard=self._aggregator.shard(vu_id),
            token=token,
            rng=random.Random(self._rng.getrandbits(64)),  # noqa: S311
            think_time=self._config.think_time,
            clock=self._clock,
            collector=self._collector,
        )
        task = asyncio.create_task(user.run(), name=f"virtual-user-{vu_id}")
        self._active.append(_UserHandle(vu_id=vu_id, token=token, task=task))

    def _reap(self) -> None:
        """Drop finished users and force-terminate drainers past their deadline."""
        now = self._clock.monotonic()

        still_active: list[_UserHandle] = []
        for handle in self._active:
            if handle.task.done():
                self._retire(handle)
            else:
                still_active.append(handle)
        self._active = still_active

        still_draining: list[_UserHandle] = []
        for handle in self._draining:
            if handle.task.done():
                self._retire(handle)
            elif handle.stop_deadline is not None and now >= handle.stop_deadline:
                self._force_terminate(handle)
            else:
                still_draining.append(handle)
        self._draining = still_draining

        still_terminating: list[_UserHandle] = []
        for handle in self._terminated:
            if handle.task.done():
                self._retire(handle)
            else:
                still_terminating.append(handle)
        self._terminated = still_terminating

    def _retire(self, handle: _UserHandle) -> None:
        """Release a finished user: report how it ended and fold its metrics."""
        self._log_unexpected_exit(handle)
        self._aggregator.retire(handle.vu_id)

    def _force_terminate(self, handle: _UserHandle) -> None:
        self.anomalies += 1
        logger.warning(
            "Scheduler anomaly: virtual user %d did not stop within %.1fs, force-terminating",
            handle.vu_id,
            self._config.stop_grace_period,
            extra={"vu_id": handle.vu_id, "anomaly": "stop_timeout"},
        )
        handle.task.cancel()
        self._terminated.append(handle)

    def _log_unexpected_exit(self, handle: _UserHandle) -> None:
        if handle.task.cancelled():
            return
        exc = handle.task.exception()
        if exc is not None:
            logger.warning(
                "Virtual user %d exited with an error: %r",
                handle.vu_id,
                exc,
                extra={"vu_id": handle.vu_id},
            )

    async def _drain_all(self, reason: str) -> None:
        """Signal every running user and wait for the draining set to empty."""
        if self._active:
            deadline = self._clock.monotonic() + self._config.stop_grace_period
            for handle in self._active:
                handle.token.cancel(reason)
                handle.stop_deadline = deadline
            self._draining.extend(self._active)
            self._active = []

        while self._draining:
            self._reap()
            if not self._draining:
                break
            nearest = min(h.stop_deadline or 0.0 for h in self._draining)
            timeout = max(min(nearest - self._clock.monotonic(), self._config.tick_interval), 0.0)
            await asyncio.wait(
                [h.task for h in self._draining],
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )

        if self._terminated:
            await asyncio.wait([h.task for h in self._terminated], timeout=2.0)
            for handle in self._terminated:
                if handle.task.done():
                    self._retire(handle)
                else:
                    logger.error(
                        "Virtual user task %s ignored cancellation", handle.task.get_name()
                    )
            self._terminated.clear()

    def _log_stage_transition(self, elapsed: float) -> None:
        index = self._pattern.stage_index_at(elapsed)
        if index == self._stage_index:
            return
        self._stage_index = index
        stage = self._pattern.stages[index]
        if index == 0:
            previous = self._pattern.start_target
        else:
            previous = self._pattern.stages[index - 1].target
        logger.info(
            "Stage %d/%d: %d -> %d users over %s",
            index + 1,
            len(self._pattern.stages),
            previous,
            stage.target,
            format_duration(stage.duration),
            extra={"stage": index + 1},
        )
