"""Tests for the JSON report writer."""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING

from loadstage.cli.report import result_to_dict, write_json_report
from loadstage.metrics.aggregator import MetricsAggregator
from loadstage.metrics.models import (
    ERRORS,
    HTTP_REQ_DURATION,
    MetricSample,
    MetricSnapshot,
    TestResult,
    Verdict,
)
from loadstage.metrics.thresholds import Threshold, ThresholdEvaluator

if TYPE_CHECKING:
    from pathlib import Path


def _make_result() -> TestResult:
    aggregator = MetricsAggregator()
    aggregator.add(MetricSample.trend(HTTP_REQ_DURATION, 40.0, tag="/get"))
    aggregator.add(MetricSample.rate(ERRORS, True))
    report = ThresholdEvaluator(
        [Threshold("http_req_duration", "p(95)<500"), Threshold("errors", "rate<0.1")]
    ).evaluate(aggregator)
    summary = aggregator.summary(elapsed_seconds=2.0)
    summary.errors_by_status = {500: 3}
    return TestResult(
        base_url="http://localhost",
        verdict=Verdict.FAILED,
        start_time=0.0,
        end_time=2.0,
        duration_seconds=2.0,
        pattern_description="Stages: 1 stages",
        snapshots=[MetricSnapshot(timestamp=time.monotonic(), elapsed_seconds=1.0, active_users=1)],
        final_summary=summary,
        threshold_report=report,
    )


class TestJsonReport:
    def test_result_to_dict(self):
        data = result_to_dict(_make_result())

        assert data["verdict"] == "failed"
        assert data["exit_code"] == 1
        assert data["summary"]["errors_by_status"] == {"500": 3}
        assert data["summary"]["endpoints"]["/get"]["request_count"] == 1
        assert [t["passed"] for t in data["thresholds"]] == [True, False]
        assert len(data["snapshots"]) == 1

    def test_write_json_report(self, tmp_path: Path):
        path = write_json_report(_make_result(), tmp_path / "out" / "report.json")

        loaded = json.loads(path.read_text(encoding="utf-8"))
        assert loaded["base_url"] == "http://localhost"
        assert loaded["thresholds"][1]["name"] == "errors rate<0.1"

    def test_aborted_result(self):
        result = TestResult(
            base_url="http://localhost",
            verdict=Verdict.ABORTED,
            start_time=0.0,
            end_time=0.1,
            duration_seconds=0.1,
            pattern_description="",
            error="Health check failed: status 503",
        )
        data = result_to_dict(result)
        assert data["exit_code"] == 2
        assert data["summary"] is None
        assert data["thresholds"] == []
        json.dumps(data)
