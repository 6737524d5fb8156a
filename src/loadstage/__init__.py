"""loadstage - staged-concurrency HTTP load generation with k6-style thresholds."""

from __future__ import annotations

__version__ = "0.1.0"

from loadstage._internal.config import DEFAULT_THRESHOLDS, LoadTestConfig, load_config  # noqa: E402
from loadstage._internal.logging import setup_logging  # noqa: E402
from loadstage.engine.executor import AiohttpExecutor, RequestExecutor, RequestResult  # noqa: E402
from loadstage.engine.orchestrator import LoadTestOrchestrator, RunState, SetupData  # noqa: E402
from loadstage.metrics.models import TestResult, Verdict  # noqa: E402
from loadstage.metrics.thresholds import Threshold  # noqa: E402
from loadstage.patterns.base import LoadPattern  # noqa: E402
from loadstage.patterns.stages import Stage, StagedPattern  # noqa: E402

__all__ = [
    "DEFAULT_THRESHOLDS",
    "AiohttpExecutor",
    "LoadPattern",
    "LoadTestConfig",
    "LoadTestOrchestrator",
    "RequestExecutor",
    "RequestResult",
    "RunState",
    "SetupData",
    "Stage",
    "StagedPattern",
    "TestResult",
    "Threshold",
    "Verdict",
    "load_config",
    "setup_logging",
]
