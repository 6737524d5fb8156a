"""Per-tick metric collection for the live view.

The cumulative aggregator answers threshold queries over the whole run;
this collector answers "what happened during the last tick" with exact
percentiles, computed with numpy over the interval's small sample buffer.
"""

from __future__ import annotations

from collections import defaultdict, deque
from typing import TYPE_CHECKING

import numpy as np

from loadstage.engine.clock import SystemClock
from loadstage.metrics.models import EndpointMetrics, MetricSnapshot

if TYPE_CHECKING:
    from loadstage.engine.clock import Clock
    from loadstage.metrics.models import RequestMetric

_PERCENTILES = [50.0, 90.0, 95.0, 99.0]


def _latency_stats(latencies: list[float]) -> tuple[float, ...]:
    """Compute latency statistics for one interval.

    Args:
        latencies: Latency values in milliseconds.

    Returns:
        Tuple of (min, max, avg, p50, p90, p95, p99); all zeros when empty.
    """
    if not latencies:
        return (0.0,) * 7

    arr = np.array(latencies, dtype=np.float64)
    p50, p90, p95, p99 = (float(v) for v in np.percentile(arr, _PERCENTILES))
    return (float(np.min(arr)), float(np.max(arr)), float(np.mean(arr)), p50, p90, p95, p99)


class IntervalCollector:
    """Buffers request metrics and iteration outcomes between ticks.

    ``record`` and ``record_iteration`` are called from virtual users;
    ``flush`` is called once per scheduler tick and drains everything
    buffered since the previous flush.  Appending to a deque is atomic in
    CPython, so writers never wait on a flush.
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock: Clock = clock or SystemClock()
        self._requests: deque[RequestMetric] = deque()
        self._iterations: deque[bool] = deque()
        self._last_flush_time = self._clock.monotonic()

    @property
    def pending_count(self) -> int:
        """Return the number of buffered request metrics."""
        return len(self._requests)

    def record(self, metric: RequestMetric) -> None:
        """Buffer one request metric."""
        self._requests.append(metric)

    def record_iteration(self, *, failed: bool) -> None:
        """Buffer the outcome of one completed iteration."""
        self._iterations.append(failed)

    def flush(
        self,
        elapsed_seconds: float,
        active_users: int,
        target_users: int = 0,
    ) -> MetricSnapshot:
        """Drain the buffers and summarise the interval.

        Args:
            elapsed_seconds: Seconds elapsed since the test started.
            active_users: Running virtual users at flush time.
            target_users: Target concurrency at flush time.

        Returns:
            A MetricSnapshot covering everything recorded since the last flush.
        """
        drained: list[RequestMetric] = []
        while self._requests:
            drained.append(self._requests.popleft())
        iteration_failures: list[bool] = []
        while self._iterations:
            iteration_failures.append(self._iterations.popleft())

        now = self._clock.monotonic()
        interval = max(now - self._last_flush_time, 0.001)
        self._last_flush_time = now

        snapshot = MetricSnapshot(
            timestamp=now,
            elapsed_seconds=elapsed_seconds,
            active_users=active_users,
            target_users=target_users,
            iterations=len(iteration_failures),
            iteration_error_rate=(
                sum(iteration_failures) / len(iteration_failures) if iteration_failures else 0.0
            ),
        )
        if not drained:
            return snapshot

        by_endpoint: dict[str, list[RequestMetric]] = defaultdict(list)
        errors_by_status: dict[int, int] = defaultdict(int)
        errors_by_type: dict[str, int] = defaultdict(int)
        total_errors = 0
        for metric in drained:
            by_endpoint[metric.endpoint].append(metric)
            if metric.failed:
                total_errors += 1
                if metric.status_code:
                    errors_by_status[metric.status_code] += 1
                if metric.error is not None:
                    errors_by_type[metric.error.split(":")[0].strip()] += 1

        (
            snapshot.latency_min,
            snapshot.latency_max,
            snapshot.latency_avg,
            snapshot.latency_p50,
            snapshot.latency_p90,
            snapshot.latency_p95,
            snapshot.latency_p99,
        ) = _latency_stats([m.latency_ms for m in drained])

        for name, ep_metrics in by_endpoint.items():
            ep_errors = sum(1 for m in ep_metrics if m.failed)
            ep_min, ep_max, ep_avg, ep_p50, ep_p90, ep_p95, ep_p99 = _latency_stats(
                [m.latency_ms for m in ep_metrics]
            )
            snapshot.endpoints[name] = EndpointMetrics(
                name=name,
                request_count=len(ep_metrics),
                error_count=ep_errors,
                error_rate=ep_errors / len(ep_metrics),
                requests_per_second=len(ep_metrics) / interval,
                latency_min=ep_min,
                latency_max=ep_max,
                latency_avg=ep_avg,
                latency_p50=ep_p50,
                latency_p90=ep_p90,
                latency_p95=ep_p95,
                latency_p99=ep_p99,
            )

        snapshot.total_requests = len(drained)
        snapshot.requests_per_second = len(drained) / interval
        snapshot.total_errors = total_errors
        snapshot.error_rate = total_errors / len(drained)
        snapshot.errors_by_status = dict(errors_by_status)
        snapshot.errors_by_type = dict(errors_by_type)
        return snapshot

    def reset(self) -> None:
        """Clear all buffered state."""
        self._requests.clear()
        self._iterations.clear()
        self._last_flush_time = self._clock.monotonic()
