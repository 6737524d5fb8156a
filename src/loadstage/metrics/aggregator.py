"""Sharded, merge-on-read metric aggregation.

Every writer (one per virtual user, plus one per thread for ad-hoc
writers) owns a ``MetricShard``.  A shard keeps its own accumulators and
its own lock, so writers never contend with each other; queries merge all
shards into an immutable ``MetricView``.  Trend series are backed by HDR
histograms, giving O(1) inserts and bounded memory.

When a writer finishes, :meth:`MetricsAggregator.retire` folds its shard
into a single retired shard, so memory follows the number of concurrent
writers rather than the number of writers ever started.
"""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loadstage._internal.logging import get_logger
from loadstage.engine.clock import SystemClock
from loadstage.metrics.histogram import LatencyHistogram
from loadstage.metrics.models import (
    BUILTIN_METRICS,
    CHECKS,
    DATA_RECEIVED,
    ERRORS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    ITERATIONS,
    CheckMetrics,
    EndpointMetrics,
    MetricKind,
    MetricSample,
    MetricSnapshot,
)

if TYPE_CHECKING:
    from loadstage._internal.types import ShardKey
    from loadstage.engine.clock import Clock
    from loadstage.metrics.models import RequestMetric

logger = get_logger("metrics.aggregator")

_SeriesKey = tuple[str, str | None]

_RETIRED_SHARD = "retired"


class _Series:
    """Accumulator for one ``(metric, tag)`` series inside a shard."""

    def __init__(self, kind: MetricKind) -> None:
        self.kind = kind
        self.count = 0
        self.total = 0.0
        self.hits = 0
        self.minimum = float("inf")
        self.maximum = float("-inf")
        self.histogram = LatencyHistogram() if kind is MetricKind.TREND else None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        if value:
            self.hits += 1
        self.minimum = min(self.minimum, value)
        self.maximum = max(self.maximum, value)
        if self.histogram is not None:
            self.histogram.record(value)

    def merge_into(self, target: _Series) -> None:
        target.count += self.count
        target.total += self.total
        target.hits += self.hits
        target.minimum = min(target.minimum, self.minimum)
        target.maximum = max(target.maximum, self.maximum)
        if self.histogram is not None and target.histogram is not None:
            target.histogram.merge(self.histogram)


@dataclass(frozen=True)
class MetricView:
    """Immutable merged statistics for one metric (or one tagged sub-series).

    Attributes:
        metric: Metric name.
        tag: Sub-series tag, or None for the whole metric.
        kind: Accumulation kind, or None if the metric was never recorded
            and is not a built-in.
        count: Number of samples.
        total: Sum of sample values.
        hits: Number of non-zero samples.
        minimum: Smallest sample value (0.0 when empty).
        maximum: Largest sample value (0.0 when empty).
        histogram: Merged histogram for trend metrics.
    """

    metric: str
    tag: str | None
    kind: MetricKind | None
    count: int = 0
    total: float = 0.0
    hits: int = 0
    minimum: float = 0.0
    maximum: float = 0.0
    histogram: LatencyHistogram | None = None

    @property
    def empty(self) -> bool:
        """Return True when no samples were recorded."""
        return self.count == 0

    @property
    def rate(self) -> float:
        """Return the fraction of non-zero samples."""
        return self.hits / self.count if self.count else 0.0

    @property
    def avg(self) -> float:
        """Return the exact mean of the samples."""
        return self.total / self.count if self.count else 0.0

    def percentile(self, percentile: float) -> float:
        """Return the estimated value at *percentile* (0-100).

        Raises:
            ValueError: If the metric is not a trend.
        """
        if self.kind is not MetricKind.TREND:
            msg = (
                f"percentiles are only defined for trend metrics, "
                f"{self.metric!r} is {self._kind_name}"
            )
            raise ValueError(msg)
        if self.histogram is None or self.count == 0:
            return 0.0
        return self.histogram.percentile(percentile)

    @property
    def _kind_name(self) -> str:
        return self.kind.value if self.kind is not None else "unknown"


class MetricShard:
    """Single-writer accumulation area owned by one virtual user or thread.

    Attributes:
        key: Owner of the shard.
    """

    def __init__(self, key: ShardKey, aggregator: MetricsAggregator) -> None:
        self.key = key
        self._aggregator = aggregator
        self._lock = threading.Lock()
        self._series: dict[_SeriesKey, _Series] = {}
        self._registered: set[str] = set()
        self._errors_by_status: dict[int, int] = defaultdict(int)
        self._errors_by_type: dict[str, int] = defaultdict(int)

    def add(self, sample: MetricSample) -> None:
        """Append *sample* to this shard.

        Tagged samples also count towards the untagged series of the same
        metric, so whole-metric queries never need to sum over tags.

        Raises:
            ValueError: If the metric was already registered with another kind.
        """
        # Registry lock is always taken before a shard lock, never inside one.
        if sample.metric not in self._registered:
            self._aggregator.register(sample.metric, sample.kind)
            self._registered.add(sample.metric)
        with self._lock:
            self._series_for(sample.metric, None, sample.kind).add(sample.value)
            if sample.tag is not None:
                self._series_for(sample.metric, sample.tag, sample.kind).add(sample.value)

    def record_request(self, metric: RequestMetric) -> None:
        """Convert one executor ``RequestMetric`` into the ``http_*`` samples."""
        failed = metric.failed
        self.add(MetricSample.trend(HTTP_REQ_DURATION, metric.latency_ms, tag=metric.endpoint))
        self.add(MetricSample.rate(HTTP_REQ_FAILED, failed, tag=metric.endpoint))
        self.add(MetricSample.counter(HTTP_REQS, tag=metric.endpoint))
        self.add(MetricSample.counter(DATA_RECEIVED, metric.content_length))
        if failed:
            with self._lock:
                if metric.status_code:
                    self._errors_by_status[metric.status_code] += 1
                if metric.error is not None:
                    self._errors_by_type[metric.error.split(":")[0].strip()] += 1

    def _series_for(self, metric: str, tag: str | None, kind: MetricKind) -> _Series:
        series = self._series.get((metric, tag))
        if series is None:
            series = _Series(kind)
            self._series[(metric, tag)] = series
        elif series.kind is not kind:
            msg = f"metric {metric!r} is a {series.kind.value}, got a {kind.value} sample"
            raise ValueError(msg)
        return series

    def _merge_into(self, key: _SeriesKey, target: _Series) -> None:
        with self._lock:
            series = self._series.get(key)
            if series is not None:
                series.merge_into(target)

    def _fold_into(self, target: MetricShard) -> None:
        """Add everything this shard holds into *target*."""
        with self._lock, target._lock:
            for key, series in self._series.items():
                target_series = target._series.get(key)
                if target_series is None:
                    target_series = _Series(series.kind)
                    target._series[key] = target_series
                series.merge_into(target_series)
            for status, n in self._errors_by_status.items():
                target._errors_by_status[status] += n
            for error_type, n in self._errors_by_type.items():
                target._errors_by_type[error_type] += n

    def _tags(self, metric: str) -> set[str]:
        with self._lock:
            return {tag for name, tag in self._series if name == metric and tag is not None}

    def _error_breakdown(self) -> tuple[dict[int, int], dict[str, int]]:
        with self._lock:
            return dict(self._errors_by_status), dict(self._errors_by_type)


class MetricsAggregator:
    """Concurrency-safe metric store with point-in-time queries.

    Writers obtain a shard with :meth:`shard` (one per virtual user) or use
    :meth:`add`, which routes to a per-thread shard.  Reads are pure and can
    be called at any time, including while the test is running.

    Example::

        aggregator = MetricsAggregator()
        shard = aggregator.shard(vu_id)
        shard.add(MetricSample.rate("errors", True))
        aggregator.rate("errors")  # 1.0
    """

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock: Clock = clock or SystemClock()
        self._registry_lock = threading.Lock()
        self._shards: dict[ShardKey, MetricShard] = {}
        self._retired = MetricShard(_RETIRED_SHARD, self)
        self._kinds: dict[str, MetricKind] = {}

    @property
    def shard_count(self) -> int:
        """Return the number of live (not yet retired) shards."""
        with self._registry_lock:
            return len(self._shards)

    def register(self, metric: str, kind: MetricKind) -> None:
        """Declare *metric* as *kind*.

        Raises:
            ValueError: If *metric* is already declared with another kind.
        """
        with self._registry_lock:
            existing = self._kinds.get(metric, BUILTIN_METRICS.get(metric))
            if existing is not None and existing is not kind:
                msg = f"metric {metric!r} is a {existing.value}, cannot record it as {kind.value}"
                raise ValueError(msg)
            self._kinds[metric] = kind

    def shard(self, key: ShardKey) -> MetricShard:
        """Return the shard owned by *key*, creating it on first use."""
        with self._registry_lock:
            shard = self._shards.get(key)
            if shard is None:
                shard = MetricShard(key, self)
                self._shards[key] = shard
            return shard

    def retire(self, key: ShardKey) -> None:
        """Fold the shard owned by *key* into the retired shard and release it.

        Call once the owner has stopped writing.  Queries see the same totals
        before and after.  Unknown keys are ignored.
        """
        with self._registry_lock:
            shard = self._shards.pop(key, None)
            if shard is not None:
                shard._fold_into(self._retired)

    def add(self, sample: MetricSample) -> None:
        """Append *sample* to the calling thread's shard."""
        self.shard(f"thread-{threading.get_ident()}").add(sample)

    def kind_of(self, metric: str) -> MetricKind | None:
        """Return the kind of *metric*, or None if it is unknown."""
        with self._registry_lock:
            return self._kinds.get(metric, BUILTIN_METRICS.get(metric))

    def metric_names(self) -> list[str]:
        """Return the names of all metrics that have received samples."""
        with self._registry_lock:
            return sorted(self._kinds)

    def tags(self, metric: str) -> list[str]:
        """Return every tag recorded for *metric*."""
        found: set[str] = set()
        with self._registry_lock:
            for shard in self._all_shards():
                found |= shard._tags(metric)
        return sorted(found)

    def view(self, metric: str, tag: str | None = None) -> MetricView:
        """Merge every shard's series for ``(metric, tag)`` into a view."""
        kind = self.kind_of(metric)
        if kind is None:
            return MetricView(metric=metric, tag=tag, kind=None)

        merged = _Series(kind)
        with self._registry_lock:
            for shard in self._all_shards():
                shard._merge_into((metric, tag), merged)

        if merged.count == 0:
            return MetricView(
                metric=metric,
                tag=tag,
                kind=kind,
                histogram=merged.histogram,
            )
        return MetricView(
            metric=metric,
            tag=tag,
            kind=kind,
            count=merged.count,
            total=merged.total,
            hits=merged.hits,
            minimum=merged.minimum,
            maximum=merged.maximum,
            histogram=merged.histogram,
        )

    def count(self, metric: str, tag: str | None = None) -> int:
        """Return the number of samples recorded for *metric*."""
        return self.view(metric, tag).count

    def rate(self, metric: str, tag: str | None = None) -> float:
        """Return the fraction of non-zero samples for *metric* (0.0 when empty)."""
        return self.view(metric, tag).rate

    def percentile(self, metric: str, percentile: float, tag: str | None = None) -> float:
        """Return the estimated *percentile* (0-100) of a trend metric.

        Raises:
            ValueError: If *metric* is not a trend.
        """
        return self.view(metric, tag).percentile(percentile)

    def summary(
        self,
        elapsed_seconds: float,
        active_users: int = 0,
        target_users: int = 0,
    ) -> MetricSnapshot:
        """Build a cumulative snapshot of everything recorded so far.

        Args:
            elapsed_seconds: Run duration used for RPS computation.
            active_users: Running virtual users to report.
            target_users: Target concurrency to report.

        Returns:
            Cumulative MetricSnapshot with per-endpoint and per-check breakdowns.
        """
        interval = max(elapsed_seconds, 0.001)
        durations = self.view(HTTP_REQ_DURATION)
        failed = self.view(HTTP_REQ_FAILED)
        iteration_errors = self.view(ERRORS)

        endpoints: dict[str, EndpointMetrics] = {}
        for endpoint in self.tags(HTTP_REQ_DURATION):
            ep_durations = self.view(HTTP_REQ_DURATION, endpoint)
            ep_failed = self.view(HTTP_REQ_FAILED, endpoint)
            endpoints[endpoint] = EndpointMetrics(
                name=endpoint,
                request_count=ep_durations.count,
                error_count=ep_failed.hits,
                error_rate=ep_failed.rate,
                requests_per_second=ep_durations.count / interval,
                latency_min=ep_durations.minimum,
                latency_max=ep_durations.maximum,
                latency_avg=ep_durations.avg,
                latency_p50=ep_durations.percentile(50.0),
                latency_p90=ep_durations.percentile(90.0),
                latency_p95=ep_durations.percentile(95.0),
                latency_p99=ep_durations.percentile(99.0),
            )

        checks: dict[str, CheckMetrics] = {}
        for name in self.tags(CHECKS):
            check_view = self.view(CHECKS, name)
            checks[name] = CheckMetrics(
                name=name,
                passes=check_view.hits,
                fails=check_view.count - check_view.hits,
            )

        errors_by_status: dict[int, int] = defaultdict(int)
        errors_by_type: dict[str, int] = defaultdict(int)
        with self._registry_lock:
            breakdowns = [shard._error_breakdown() for shard in self._all_shards()]
        for by_status, by_type in breakdowns:
            for status, n in by_status.items():
                errors_by_status[status] += n
            for kind, n in by_type.items():
                errors_by_type[kind] += n

        return MetricSnapshot(
            timestamp=self._clock.monotonic(),
            elapsed_seconds=elapsed_seconds,
            active_users=active_users,
            target_users=target_users,
            total_requests=durations.count,
            requests_per_second=durations.count / interval,
            latency_min=durations.minimum,
            latency_max=durations.maximum,
            latency_avg=durations.avg,
            latency_p50=durations.percentile(50.0),
            latency_p90=durations.percentile(90.0),
            latency_p95=durations.percentile(95.0),
            latency_p99=durations.percentile(99.0),
            total_errors=failed.hits,
            error_rate=failed.rate,
            iterations=int(self.view(ITERATIONS).total),
            iteration_error_rate=iteration_errors.rate,
            errors_by_status=dict(errors_by_status),
            errors_by_type=dict(errors_by_type),
            endpoints=endpoints,
            checks=checks,
        )

    def _all_shards(self) -> list[MetricShard]:
        # Caller holds the registry lock, so a shard being retired is never
        # counted twice.
        return [*self._shards.values(), self._retired]
