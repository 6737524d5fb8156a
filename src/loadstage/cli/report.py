"""JSON report writer for completed test runs."""

from __future__ import annotations

import json
from dataclasses import asdict
from typing import TYPE_CHECKING, Any

from loadstage import __version__

if TYPE_CHECKING:
    from pathlib import Path

    from loadstage.metrics.models import MetricSnapshot, TestResult
    from loadstage.metrics.thresholds import ThresholdReport


def _snapshot_to_dict(snapshot: MetricSnapshot) -> dict[str, Any]:
    data = asdict(snapshot)
    # JSON object keys must be strings
    data["errors_by_status"] = {str(k): v for k, v in snapshot.errors_by_status.items()}
    return data


def _thresholds_to_list(report: ThresholdReport | None) -> list[dict[str, Any]]:
    if report is None:
        return []
    return [
        {
            "name": item.threshold.name,
            "metric": item.threshold.metric,
            "tag": item.threshold.tag,
            "expression": item.threshold.expression,
            "observed": item.observed,
            "passed": item.passed,
            "margin": item.margin,
            "message": item.message,
        }
        for item in report.results
    ]


def result_to_dict(result: TestResult) -> dict[str, Any]:
    """Convert a test result into a JSON-serialisable dict.

    Args:
        result: Completed test result.

    Returns:
        Nested dict with the verdict, summary, thresholds and every interval
        snapshot.
    """
    return {
        "tool": "loadstage",
        "version": __version__,
        "base_url": result.base_url,
        "verdict": result.verdict.value,
        "exit_code": result.exit_code,
        "duration_seconds": result.duration_seconds,
        "pattern": result.pattern_description,
        "anomalies": result.anomalies,
        "error": result.error,
        "summary": (
            _snapshot_to_dict(result.final_summary) if result.final_summary is not None else None
        ),
        "thresholds": _thresholds_to_list(result.threshold_report),
        "snapshots": [_snapshot_to_dict(s) for s in result.snapshots],
    }


def write_json_report(result: TestResult, path: Path) -> Path:
    """Write *result* as pretty-printed JSON, creating parent directories.

    Args:
        result: Completed test result.
        path: Destination file.

    Returns:
        The path written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(result_to_dict(result), indent=2) + "\n", encoding="utf-8")
    return path
