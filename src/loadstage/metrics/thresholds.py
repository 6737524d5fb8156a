"""Threshold expressions and their evaluation against aggregated metrics.

A threshold pairs a metric (optionally narrowed to one tag) with an
expression such as ``p(95)<500`` or ``rate<0.1``.  Evaluation is a pure
query over a ``MetricsAggregator``: it can run at any point during a test
for live monitoring, and once more at the end for the verdict.
"""

from __future__ import annotations

import operator
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from loadstage._internal.errors import ConfigError
from loadstage.metrics.models import MetricKind

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from loadstage.metrics.aggregator import MetricsAggregator, MetricView

_EXPRESSION = re.compile(
    r"^\s*(?P<agg>avg|min|max|med|count|rate|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|===|==|!=|<|>)\s*(?P<bound>-?\d+(?:\.\d+)?)\s*$"
)
_METRIC_SELECTOR = re.compile(r"^\s*(?P<metric>[A-Za-z_][\w.]*)\s*(?:\{(?P<tag>[^}]*)\})?\s*$")

_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
}


class Aggregation(Enum):
    """Statistic a threshold expression is evaluated on."""

    AVG = "avg"
    MIN = "min"
    MAX = "max"
    MED = "med"
    COUNT = "count"
    RATE = "rate"
    PERCENTILE = "p"


_TREND_ONLY = {
    Aggregation.AVG,
    Aggregation.MIN,
    Aggregation.MAX,
    Aggregation.MED,
    Aggregation.PERCENTILE,
}


@dataclass(frozen=True)
class Threshold:
    """A pass/fail condition over one metric.

    Attributes:
        metric: Metric name, e.g. ``"http_req_duration"``.
        expression: Condition, e.g. ``"p(95)<500"``.
        tag: Optional tag narrowing the metric to one sub-series.

    Raises:
        ConfigError: If *expression* cannot be parsed.
    """

    metric: str
    expression: str
    tag: str | None = None
    aggregation: Aggregation = field(init=False, repr=False, compare=False)
    percentile: float | None = field(init=False, repr=False, compare=False)
    comparison: str = field(init=False, repr=False, compare=False)
    bound: float = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.metric:
            msg = "threshold metric name must not be empty"
            raise ConfigError(msg)
        match = _EXPRESSION.match(self.expression)
        if match is None:
            msg = (
                f"invalid threshold expression {self.expression!r} for {self.metric!r}; "
                "expected e.g. 'p(95)<500', 'rate<0.1', 'avg<=200', 'count>100'"
            )
            raise ConfigError(msg)

        pct = match.group("pct")
        if pct is not None:
            aggregation = Aggregation.PERCENTILE
            percentile: float | None = float(pct)
            if not 0.0 <= percentile <= 100.0:
                msg = f"percentile must be within 0-100, got p({pct}) in {self.expression!r}"
                raise ConfigError(msg)
        else:
            aggregation = Aggregation(match.group("agg"))
            percentile = None

        object.__setattr__(self, "aggregation", aggregation)
        object.__setattr__(self, "percentile", percentile)
        object.__setattr__(self, "comparison", match.group("op"))
        object.__setattr__(self, "bound", float(match.group("bound")))

    @classmethod
    def parse(cls, text: str) -> Threshold:
        """Build a threshold from ``"METRIC[{TAG}]:EXPRESSION"``.

        Example::

            Threshold.parse("http_req_duration:p(95)<500")
            Threshold.parse("http_req_failed{/get}:rate<0.05")

        Raises:
            ConfigError: If the text is malformed.
        """
        selector, sep, expression = text.rpartition(":")
        if not sep:
            msg = f"invalid threshold {text!r}; expected METRIC:EXPRESSION, e.g. 'errors:rate<0.1'"
            raise ConfigError(msg)
        match = _METRIC_SELECTOR.match(selector)
        if match is None:
            msg = f"invalid metric selector {selector!r} in threshold {text!r}"
            raise ConfigError(msg)
        return cls(
            metric=match.group("metric"),
            expression=expression.strip(),
            tag=match.group("tag"),
        )

    @property
    def name(self) -> str:
        """Return the display name, e.g. ``"http_req_duration{/get} p(95)<500"``."""
        selector = self.metric if self.tag is None else f"{self.metric}{{{self.tag}}}"
        return f"{selector} {self.expression.strip()}"

    def observe(self, view: MetricView) -> float:
        """Compute the statistic this threshold compares against its bound.

        Raises:
            ValueError: If the aggregation does not apply to the metric's kind.
        """
        kind = view.kind
        if self.aggregation in _TREND_ONLY and kind is not MetricKind.TREND:
            msg = (
                f"{self.aggregation.value} needs a trend metric, "
                f"{self.metric!r} is {_kind_name(kind)}"
            )
            raise ValueError(msg)
        if self.aggregation is Aggregation.RATE and kind is not MetricKind.RATE:
            msg = f"rate needs a rate metric, {self.metric!r} is {_kind_name(kind)}"
            raise ValueError(msg)

        if self.aggregation is Aggregation.PERCENTILE:
            return view.percentile(self.percentile or 0.0)
        if self.aggregation is Aggregation.MED:
            return view.percentile(50.0)
        if self.aggregation is Aggregation.AVG:
            return view.avg
        if self.aggregation is Aggregation.MIN:
            return view.minimum
        if self.aggregation is Aggregation.MAX:
            return view.maximum
        if self.aggregation is Aggregation.RATE:
            return view.rate
        # count: counters report their sum, other kinds their sample count
        return view.total if kind is MetricKind.COUNTER else float(view.count)

    def is_satisfied(self, observed: float) -> bool:
        """Return True if *observed* meets the condition."""
        return _OPERATORS[self.comparison](observed, self.bound)

    def margin(self, observed: float) -> float:
        """Return how far *observed* lies past the bound (positive means violated)."""
        if self.comparison in ("<", "<="):
            return observed - self.bound
        if self.comparison in (">", ">="):
            return self.bound - observed
        return abs(observed - self.bound)


def _kind_name(kind: MetricKind | None) -> str:
    return f"a {kind.value}" if kind is not None else "unknown"


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of evaluating one threshold.

    Attributes:
        threshold: The evaluated threshold.
        observed: The observed statistic, or None when the metric had no data.
        passed: Whether the threshold held.
        margin: Signed distance past the bound (positive means violated),
            or None when there was no data.
        message: Human-readable one-line explanation.
    """

    threshold: Threshold
    observed: float | None
    passed: bool
    margin: float | None
    message: str


@dataclass(frozen=True)
class ThresholdReport:
    """Outcomes of every configured threshold."""

    results: tuple[ThresholdResult, ...] = ()

    @property
    def passed(self) -> bool:
        """Return True when no threshold failed."""
        return all(result.passed for result in self.results)

    @property
    def failures(self) -> list[ThresholdResult]:
        """Return the failed thresholds."""
        return [result for result in self.results if not result.passed]


class ThresholdEvaluator:
    """Evaluates a fixed list of thresholds against aggregator state.

    Evaluation reads the aggregator and nothing else, so it is deterministic
    for a given aggregator state and safe to call while the test runs.
    """

    def __init__(self, thresholds: Iterable[Threshold]) -> None:
        self._thresholds = tuple(thresholds)

    @property
    def thresholds(self) -> tuple[Threshold, ...]:
        """Return the configured thresholds."""
        return self._thresholds

    def evaluate(self, aggregator: MetricsAggregator) -> ThresholdReport:
        """Evaluate every threshold.

        Args:
            aggregator: Aggregator holding the run's samples.

        Returns:
            A report; ``report.passed`` is False if any threshold failed.
        """
        return ThresholdReport(tuple(self.evaluate_one(t, aggregator) for t in self._thresholds))

    @staticmethod
    def evaluate_one(threshold: Threshold, aggregator: MetricsAggregator) -> ThresholdResult:
        """Evaluate a single threshold."""
        view = aggregator.view(threshold.metric, threshold.tag)
        if view.empty:
            return ThresholdResult(
                threshold=threshold,
                observed=None,
                passed=True,
                margin=None,
                message=f"{threshold.name}: no data",
            )

        try:
            observed = threshold.observe(view)
        except ValueError as exc:
            return ThresholdResult(
                threshold=threshold,
                observed=None,
                passed=False,
                margin=None,
                message=f"{threshold.name}: {exc}",
            )

        passed = threshold.is_satisfied(observed)
        margin = threshold.margin(observed)
        if passed:
            message = f"{threshold.name}: observed {observed:.4g}"
        else:
            message = f"{threshold.name}: observed {observed:.4g}, past the bound by {margin:.4g}"
        return ThresholdResult(
            threshold=threshold,
            observed=observed,
            passed=passed,
            margin=margin,
            message=message,
        )
