"""Tests for threshold parsing and evaluation."""

from __future__ import annotations

import pytest

from loadstage._internal.config import DEFAULT_THRESHOLDS
from loadstage._internal.errors import ConfigError
from loadstage.metrics.aggregator import MetricsAggregator
from loadstage.metrics.models import (
    ERRORS,
    HTTP_REQ_DURATION,
    HTTP_REQ_FAILED,
    HTTP_REQS,
    MetricSample,
)
from loadstage.metrics.thresholds import Aggregation, Threshold, ThresholdEvaluator


def _aggregator_with_durations(values: list[float], tag: str | None = None) -> MetricsAggregator:
    aggregator = MetricsAggregator()
    shard = aggregator.shard(0)
    for value in values:
        shard.add(MetricSample.trend(HTTP_REQ_DURATION, value, tag=tag))
    return aggregator


# =========================================================================
# Parsing
# =========================================================================


class TestThresholdParsing:
    def test_percentile_expression(self) -> None:
        threshold = Threshold("http_req_duration", "p(95)<500")
        assert threshold.aggregation is Aggregation.PERCENTILE
        assert threshold.percentile == 95.0
        assert threshold.comparison == "<"
        assert threshold.bound == 500.0

    @pytest.mark.parametrize(
        ("expression", "aggregation", "comparison", "bound"),
        [
            ("rate<0.1", Aggregation.RATE, "<", 0.1),
            ("avg<=200", Aggregation.AVG, "<=", 200.0),
            ("count>100", Aggregation.COUNT, ">", 100.0),
            ("med >= 5", Aggregation.MED, ">=", 5.0),
            ("max==3", Aggregation.MAX, "==", 3.0),
            ("min!=0", Aggregation.MIN, "!=", 0.0),
        ],
    )
    def test_aggregations(
        self,
        expression: str,
        aggregation: Aggregation,
        comparison: str,
        bound: float,
    ) -> None:
        threshold = Threshold("m", expression)
        assert threshold.aggregation is aggregation
        assert threshold.comparison == comparison
        assert threshold.bound == bound

    def test_parse_with_tag(self) -> None:
        threshold = Threshold.parse("http_req_failed{/get}:rate<0.05")
        assert threshold.metric == "http_req_failed"
        assert threshold.tag == "/get"
        assert threshold.expression == "rate<0.05"
        assert threshold.name == "http_req_failed{/get} rate<0.05"

    def test_parse_without_tag(self) -> None:
        threshold = Threshold.parse("errors:rate<0.1")
        assert threshold == Threshold("errors", "rate<0.1")

    @pytest.mark.parametrize(
        "text",
        ["errors", "errors:rate", "errors:rate<<0.1", "errors:p(101)<1", ":rate<0.1", "a b:rate<1"],
    )
    def test_parse_invalid(self, text: str) -> None:
        with pytest.raises(ConfigError):
            Threshold.parse(text)


# =========================================================================
# Evaluation
# =========================================================================


class TestThresholdEvaluation:
    def test_p95_under_bound_passes(self) -> None:
        aggregator = _aggregator_with_durations([50.0] * 100)
        result = ThresholdEvaluator.evaluate_one(
            Threshold("http_req_duration", "p(95)<500"), aggregator
        )
        assert result.passed
        assert result.observed == pytest.approx(50.0, rel=0.01)
        assert result.margin is not None
        assert result.margin < 0

    def test_p95_over_bound_fails_with_margin(self) -> None:
        aggregator = _aggregator_with_durations([600.0] * 100)
        result = ThresholdEvaluator.evaluate_one(
            Threshold("http_req_duration", "p(95)<500"), aggregator
        )
        assert not result.passed
        assert result.margin == pytest.approx(100.0, abs=5.0)
        assert "past the bound" in result.message

    def test_rate_threshold(self) -> None:
        aggregator = MetricsAggregator()
        shard = aggregator.shard(0)
        for i in range(100):
            shard.add(MetricSample.rate(ERRORS, i < 7))

        assert ThresholdEvaluator.evaluate_one(Threshold("errors", "rate<0.1"), aggregator).passed
        assert not ThresholdEvaluator.evaluate_one(
            Threshold("errors", "rate<0.05"), aggregator
        ).passed

    def test_count_of_counter_uses_sum(self) -> None:
        aggregator = MetricsAggregator()
        aggregator.add(MetricSample.counter(HTTP_REQS, 5.0))
        aggregator.add(MetricSample.counter(HTTP_REQS, 5.0))
        result = ThresholdEvaluator.evaluate_one(Threshold(HTTP_REQS, "count>=10"), aggregator)
        assert result.observed == 10.0
        assert result.passed

    def test_tagged_threshold(self) -> None:
        aggregator = _aggregator_with_durations([900.0] * 10, tag="/slow")
        aggregator.shard(1).add(MetricSample.trend(HTTP_REQ_DURATION, 10.0, tag="/fast"))

        slow = Threshold.parse("http_req_duration{/slow}:max<500")
        fast = Threshold.parse("http_req_duration{/fast}:max<500")
        assert not ThresholdEvaluator.evaluate_one(slow, aggregator).passed
        assert ThresholdEvaluator.evaluate_one(fast, aggregator).passed

    def test_no_data_passes(self) -> None:
        result = ThresholdEvaluator.evaluate_one(
            Threshold("http_req_duration", "p(95)<500"), MetricsAggregator()
        )
        assert result.passed
        assert result.observed is None
        assert "no data" in result.message

    def test_kind_mismatch_fails(self) -> None:
        aggregator = MetricsAggregator()
        aggregator.add(MetricSample.rate(ERRORS, True))
        result = ThresholdEvaluator.evaluate_one(Threshold("errors", "p(95)<1"), aggregator)
        assert not result.passed
        assert "trend" in result.message

    def test_report_aggregates_results(self) -> None:
        aggregator = _aggregator_with_durations([50.0] * 20)
        shard = aggregator.shard(1)
        for _ in range(20):
            shard.add(MetricSample.rate(HTTP_REQ_FAILED, True))
            shard.add(MetricSample.rate(ERRORS, False))

        evaluator = ThresholdEvaluator(DEFAULT_THRESHOLDS)
        report = evaluator.evaluate(aggregator)

        assert len(report.results) == 3
        assert not report.passed
        assert [f.threshold.metric for f in report.failures] == [HTTP_REQ_FAILED]

    def test_evaluation_is_repeatable(self) -> None:
        aggregator = _aggregator_with_durations([10.0, 20.0, 30.0])
        evaluator = ThresholdEvaluator([Threshold("http_req_duration", "avg<25")])
        assert evaluator.evaluate(aggregator) == evaluator.evaluate(aggregator)
