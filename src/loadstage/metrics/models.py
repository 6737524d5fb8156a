"""Metric samples and aggregated result dataclasses for loadstage."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loadstage.metrics.thresholds import ThresholdReport

__all__ = [
    "BUILTIN_METRICS",
    "CheckMetrics",
    "EndpointMetrics",
    "MetricKind",
    "MetricSample",
    "MetricSnapshot",
    "RequestMetric",
    "TestResult",
    "Verdict",
]

HTTP_REQ_DURATION = "http_req_duration"
HTTP_REQ_FAILED = "http_req_failed"
HTTP_REQS = "http_reqs"
DATA_RECEIVED = "data_received"
CHECKS = "checks"
ERRORS = "errors"
ITERATIONS = "iterations"
ITERATION_DURATION = "iteration_duration"


class MetricKind(Enum):
    """How samples of a metric are accumulated."""

    TREND = "trend"
    """Durations or sizes; queried by percentile, avg, min, max."""

    RATE = "rate"
    """Boolean flags; queried as the fraction of non-zero samples."""

    COUNTER = "counter"
    """Monotonic counts; queried as count or sum."""


BUILTIN_METRICS: dict[str, MetricKind] = {
    HTTP_REQ_DURATION: MetricKind.TREND,
    HTTP_REQ_FAILED: MetricKind.RATE,
    HTTP_REQS: MetricKind.COUNTER,
    DATA_RECEIVED: MetricKind.COUNTER,
    CHECKS: MetricKind.RATE,
    ERRORS: MetricKind.RATE,
    ITERATIONS: MetricKind.COUNTER,
    ITERATION_DURATION: MetricKind.TREND,
}


@dataclass(frozen=True)
class MetricSample:
    """A single observation appended to the aggregator.

    Attributes:
        metric: Metric name, e.g. ``"http_req_duration"``.
        kind: Accumulation kind of the metric.
        value: Observed value.  Milliseconds for durations, ``1.0``/``0.0``
            for rate flags, increments for counters.
        timestamp: Monotonic time of the observation.
        tag: Optional sub-series key (endpoint path, check name).
    """

    metric: str
    kind: MetricKind
    value: float
    timestamp: float = field(default_factory=time.monotonic)
    tag: str | None = None

    @classmethod
    def trend(cls, metric: str, value: float, *, tag: str | None = None) -> MetricSample:
        """Build a trend sample."""
        return cls(metric=metric, kind=MetricKind.TREND, value=float(value), tag=tag)

    @classmethod
    def rate(cls, metric: str, flag: bool, *, tag: str | None = None) -> MetricSample:
        """Build a rate sample from a boolean flag."""
        return cls(metric=metric, kind=MetricKind.RATE, value=1.0 if flag else 0.0, tag=tag)

    @classmethod
    def counter(cls, metric: str, value: float = 1.0, *, tag: str | None = None) -> MetricSample:
        """Build a counter increment."""
        return cls(metric=metric, kind=MetricKind.COUNTER, value=float(value), tag=tag)


@dataclass
class RequestMetric:
    """Raw metric emitted by the executor for every HTTP request.

    Attributes:
        timestamp: Monotonic timestamp when the request started.
        endpoint: Endpoint path used for grouping (e.g., ``"/get"``).
        method: HTTP method.
        url: Full request URL.
        status_code: HTTP response status code (0 if the request failed).
        latency_ms: Response time in milliseconds.
        content_length: Response body size in bytes.
        error: Error description if the request failed, None otherwise.
        vu_id: Virtual user that made the request (-1 outside a VU).
    """

    timestamp: float
    endpoint: str
    method: str
    url: str
    status_code: int
    latency_ms: float
    content_length: int
    error: str | None = None
    vu_id: int = -1

    @property
    def failed(self) -> bool:
        """Return True for transport errors and statuses outside 200-399."""
        return self.error is not None or not 200 <= self.status_code < 400


@dataclass
class EndpointMetrics:
    """Aggregated metrics for a single endpoint path.

    Attributes:
        name: Endpoint path (e.g., ``"/get"``).
        request_count: Total number of requests to this endpoint.
        error_count: Number of failed requests (status outside 200-399 or error).
        error_rate: Fraction of requests that failed (0.0 to 1.0).
        requests_per_second: Requests per second to this endpoint.
        latency_min: Minimum response time in milliseconds.
        latency_max: Maximum response time in milliseconds.
        latency_avg: Mean response time in milliseconds.
        latency_p50: 50th percentile response time in milliseconds.
        latency_p90: 90th percentile response time in milliseconds.
        latency_p95: 95th percentile response time in milliseconds.
        latency_p99: 99th percentile response time in milliseconds.
    """

    name: str
    request_count: int = 0
    error_count: int = 0
    error_rate: float = 0.0
    requests_per_second: float = 0.0
    latency_min: float = 0.0
    latency_max: float = 0.0
    latency_avg: float = 0.0
    latency_p50: float = 0.0
    latency_p90: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0


@dataclass
class CheckMetrics:
    """Pass/fail tally for one named check."""

    name: str
    passes: int = 0
    fails: int = 0

    @property
    def pass_rate(self) -> float:
        """Return the fraction of evaluations that passed."""
        total = self.passes + self.fails
        return self.passes / total if total else 0.0


@dataclass
class MetricSnapshot:
    """Point-in-time aggregated metrics.

    Emitted once per scheduler tick for the interval since the previous tick,
    and once at the end of the run as a cumulative summary.

    Attributes:
        timestamp: Monotonic timestamp of the snapshot.
        elapsed_seconds: Seconds since the test started.
        active_users: Number of running (non-draining) virtual users.
        target_users: Target concurrency at the time of the snapshot.
        total_requests: Requests counted by the snapshot.
        requests_per_second: Overall RPS over the snapshot's interval.
        latency_min: Minimum latency in milliseconds.
        latency_max: Maximum latency in milliseconds.
        latency_avg: Mean latency in milliseconds.
        latency_p50: 50th percentile latency (ms).
        latency_p90: 90th percentile latency (ms).
        latency_p95: 95th percentile latency (ms).
        latency_p99: 99th percentile latency (ms).
        total_errors: Failed request count.
        error_rate: Fraction of requests that failed (0.0 to 1.0).
        iterations: Completed VU iterations.
        iteration_error_rate: Fraction of iterations with a failed check.
        errors_by_status: Failed request count by HTTP status code.
        errors_by_type: Failed request count by transport error kind.
        endpoints: Per-endpoint metrics keyed by endpoint path.
        checks: Per-check tallies keyed by check name.
    """

    timestamp: float
    elapsed_seconds: float
    active_users: int
    target_users: int = 0
    total_requests: int = 0
    requests_per_second: float = 0.0
    latency_min: float = 0.0
    latency_max: float = 0.0
    latency_avg: float = 0.0
    latency_p50: float = 0.0
    latency_p90: float = 0.0
    latency_p95: float = 0.0
    latency_p99: float = 0.0
    total_errors: int = 0
    error_rate: float = 0.0
    iterations: int = 0
    iteration_error_rate: float = 0.0
    errors_by_status: dict[int, int] = field(default_factory=dict)
    errors_by_type: dict[str, int] = field(default_factory=dict)
    endpoints: dict[str, EndpointMetrics] = field(default_factory=dict)
    checks: dict[str, CheckMetrics] = field(default_factory=dict)


class Verdict(Enum):
    """Final outcome of a test run, mapped onto a process exit status."""

    PASSED = "passed"
    FAILED = "failed"
    ABORTED = "aborted"

    @property
    def exit_code(self) -> int:
        """Return the process exit status for this verdict."""
        return _EXIT_CODES[self]


_EXIT_CODES = {Verdict.PASSED: 0, Verdict.FAILED: 1, Verdict.ABORTED: 2}


@dataclass
class TestResult:
    """Complete result of a load test run.

    Attributes:
        base_url: Base URL the test ran against.
        verdict: Final verdict.
        start_time: Monotonic time when the run started.
        end_time: Monotonic time when the run completed.
        duration_seconds: Wall-clock duration of the run.
        pattern_description: Human-readable description of the stage profile.
        snapshots: Time-series of interval snapshots (one per tick).
        final_summary: Cumulative snapshot for the whole run, or None when
            the run aborted before generating load.
        threshold_report: Threshold outcomes, or None when aborted.
        anomalies: Number of virtual users force-terminated after the grace period.
        error: Description of the abort cause, if any.
    """

    base_url: str
    verdict: Verdict
    start_time: float
    end_time: float
    duration_seconds: float
    pattern_description: str
    snapshots: list[MetricSnapshot] = field(default_factory=list)
    final_summary: MetricSnapshot | None = None
    threshold_report: ThresholdReport | None = None
    anomalies: int = 0
    error: str | None = None

    @property
    def exit_code(self) -> int:
        """Return the process exit status for this result."""
        return self.verdict.exit_code
