"""Top-level test lifecycle: setup, load generation, teardown and verdict."""

from __future__ import annotations

import asyncio
import random
import signal
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from loadstage._internal.errors import EngineError, SetupError
from loadstage._internal.logging import get_logger
from loadstage.engine.clock import SystemClock
from loadstage.engine.executor import AiohttpExecutor
from loadstage.engine.session import LoadSession
from loadstage.metrics.aggregator import MetricsAggregator
from loadstage.metrics.models import TestResult, Verdict
from loadstage.metrics.store import MetricStore
from loadstage.metrics.thresholds import ThresholdEvaluator

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from loadstage._internal.config import LoadTestConfig
    from loadstage.engine.clock import Clock
    from loadstage.engine.executor import RequestExecutor
    from loadstage.metrics.models import MetricSnapshot
    from loadstage.metrics.thresholds import ThresholdReport

logger = get_logger("engine.orchestrator")


class RunState(Enum):
    """Lifecycle of a single test run."""

    IDLE = auto()
    SETUP = auto()
    RUNNING = auto()
    TEARING_DOWN = auto()
    COMPLETED = auto()


@dataclass(frozen=True)
class SetupData:
    """Data produced by setup and handed to teardown hooks.

    Attributes:
        base_url: Base URL under test.
        aborted: True when the run ended before any load was generated.
    """

    base_url: str
    aborted: bool = False


class LoadTestOrchestrator:
    """Runs one load test from pre-flight check to verdict.

    State machine::

        IDLE -> SETUP -> RUNNING -> TEARING_DOWN -> COMPLETED(passed|failed)
                     \\-> TEARING_DOWN -> COMPLETED(aborted)   (health check failed
                                                              or aborted in setup)

    Teardown runs exactly once on every path.  The executor is created
    here unless one is injected, and is closed during teardown.

    Example::

        orchestrator = LoadTestOrchestrator(load_config())
        result = asyncio.run(orchestrator.run())
        sys.exit(result.exit_code)
    """

    def __init__(
        self,
        config: LoadTestConfig,
        *,
        executor: RequestExecutor | None = None,
        clock: Clock | None = None,
        rng: random.Random | None = None,
        teardown_hooks: Iterable[Callable[[SetupData], None]] = (),
        on_snapshot: Callable[[MetricSnapshot], None] | None = None,
        handle_signals: bool = False,
    ) -> None:
        self._config = config
        self._clock: Clock = clock or SystemClock()
        self._owns_executor = executor is None
        self._executor: RequestExecutor = executor or AiohttpExecutor(
            timeout=config.request_timeout,
            pool_size=config.connection_pool_size,
            clock=self._clock,
        )
        self._rng = rng or random.Random(config.seed)  # noqa: S311
        self._teardown_hooks = tuple(teardown_hooks)
        self._on_snapshot = on_snapshot
        self._handle_signals = handle_signals

        self._aggregator = MetricsAggregator(self._clock)
        self._store = MetricStore()
        self._evaluator = ThresholdEvaluator(config.thresholds)
        self._session: LoadSession | None = None
        self._abort_reason: str | None = None
        self._state = RunState.IDLE
        self._history: list[RunState] = [RunState.IDLE]

    @property
    def state(self) -> RunState:
        """Return the current lifecycle state."""
        return self._state

    @property
    def history(self) -> list[RunState]:
        """Return every state entered so far, in order."""
        return list(self._history)

    @property
    def aggregator(self) -> MetricsAggregator:
        """Return the aggregator holding this run's samples."""
        return self._aggregator

    @property
    def store(self) -> MetricStore:
        """Return the time series of interval snapshots."""
        return self._store

    @property
    def session(self) -> LoadSession | None:
        """Return the load session once RUNNING has been entered."""
        return self._session

    def evaluate_thresholds(self) -> ThresholdReport:
        """Evaluate the configured thresholds against the current metrics.

        Safe to call at any time, including while the test is running.
        """
        return self._evaluator.evaluate(self._aggregator)

    def abort(self, reason: str = "aborted") -> None:
        """Abort the run; it still tears down and reports.

        Before load generation starts, the run skips RUNNING and ends with
        an ABORTED verdict.  Once running, the session stops spawning users
        and drains the ones it has.
        """
        if self._abort_reason is None:
            self._abort_reason = reason
        if self._session is not None:
            self._session.abort(reason)
        else:
            logger.warning("Abort requested before load generation: %s", reason)

    async def run(self) -> TestResult:
        """Execute the full lifecycle.

        Returns:
            The test result.  ``result.exit_code`` is 0 when every threshold
            passed, 1 when any failed, and 2 when the run was aborted before
            generating load.

        Raises:
            EngineError: If load generation failed unexpectedly.  Teardown
                has already run when this is raised.
            RuntimeError: If the orchestrator has already been run.
        """
        if self._state is not RunState.IDLE:
            msg = "LoadTestOrchestrator.run() can only be called once"
            raise RuntimeError(msg)

        start_time = self._clock.monotonic()
        abort_message: str | None = None
        engine_error: BaseException | None = None

        if self._handle_signals:
            self._install_signal_handlers()
        try:
            try:
                await self._setup()
            except SetupError as exc:
                abort_message = str(exc)
                logger.error(
                    "Setup failed, aborting before generating load: %s",
                    exc,
                    extra={"status_code": exc.status_code},
                )
            else:
                if self._abort_reason is not None:
                    abort_message = f"Aborted before load generation: {self._abort_reason}"
                    logger.error(abort_message)

            if abort_message is None:
                self._transition(RunState.RUNNING)
                await self._run_load()
        except Exception as exc:
            engine_error = exc
            logger.exception("Load generation failed")
        finally:
            try:
                await self._teardown(
                    SetupData(self._config.base_url, aborted=abort_message is not None)
                )
            finally:
                if self._handle_signals:
                    self._remove_signal_handlers()

        end_time = self._clock.monotonic()
        duration = end_time - start_time

        if engine_error is not None:
            self._transition(RunState.COMPLETED)
            msg = f"Load test failed: {engine_error}"
            raise EngineError(msg) from engine_error

        if abort_message is not None:
            result = TestResult(
                base_url=self._config.base_url,
                verdict=Verdict.ABORTED,
                start_time=start_time,
                end_time=end_time,
                duration_seconds=duration,
                pattern_description=self._config.pattern.describe(),
                error=abort_message,
            )
        else:
            result = self._build_result(start_time, end_time)

        self._transition(RunState.COMPLETED)
        self._report(result)
        return result

    async def _setup(self) -> None:
        """Announce the target and run the pre-flight health check.

        Raises:
            SetupError: If the readiness endpoint does not answer 200.
        """
        self._transition(RunState.SETUP)
        logger.info("Starting load test...")
        logger.info("Target URL: %s", self._config.base_url)

        response = await self._executor.execute(
            self._config.readiness_url,
            self._config.headers,
            endpoint=self._config.readiness_path,
        )
        if response.status_code != 200:
            if response.error is not None:
                detail = f"{response.error.value} error ({response.error_message})"
            else:
                detail = f"status {response.status_code}"
            msg = f"Health check failed: {detail} from {self._config.readiness_url}"
            raise SetupError(msg, status_code=response.status_code)

        logger.debug("Health check passed: %s", self._config.readiness_url)

    async def _run_load(self) -> None:
        self._session = LoadSession(
            self._config,
            self._config.pattern,
            self._executor,
            self._aggregator,
            store=self._store,
            clock=self._clock,
            rng=self._rng,
            on_snapshot=self._on_snapshot,
        )
        await self._session.run()

    async def _teardown(self, data: SetupData) -> None:
        """Run user hooks, announce completion and release the executor."""
        self._transition(RunState.TEARING_DOWN)
        try:
            for hook in self._teardown_hooks:
                try:
                    hook(data)
                except Exception:
                    logger.warning("Teardown hook %r failed", hook, exc_info=True)
            logger.info("Load test completed")
            logger.info("Tested URL: %s", data.base_url)
        finally:
            if self._owns_executor:
                await self._executor.close()

    def _build_result(self, start_time: float, end_time: float) -> TestResult:
        duration = end_time - start_time
        report = self._evaluator.evaluate(self._aggregator)
        summary = self._aggregator.summary(elapsed_seconds=duration)
        return TestResult(
            base_url=self._config.base_url,
            verdict=Verdict.PASSED if report.passed else Verdict.FAILED,
            start_time=start_time,
            end_time=end_time,
            duration_seconds=duration,
            pattern_description=self._config.pattern.describe(),
            snapshots=self._store.get_all(),
            final_summary=summary,
            threshold_report=report,
            anomalies=self._session.anomalies if self._session is not None else 0,
        )

    def _report(self, result: TestResult) -> None:
        if result.verdict is Verdict.ABORTED:
            logger.error("Verdict: ABORTED (%s)", result.error)
            return

        summary = result.final_summary
        if summary is not None:
            logger.info(
                "Completed in %.1fs: requests=%d, iterations=%d, avg_rps=%.1f, p95=%.1fms, "
                "http_req_failed=%.2f%%, errors=%.2f%%",
                result.duration_seconds,
                summary.total_requests,
                summary.iterations,
                summary.requests_per_second,
                summary.latency_p95,
                summary.error_rate * 100,
                summary.iteration_error_rate * 100,
            )
        if result.anomalies:
            logger.warning("%d virtual users had to be force-terminated", result.anomalies)

        if result.threshold_report is not None:
            for failure in result.threshold_report.failures:
                logger.error(
                    "Threshold failed: %s",
                    failure.message,
                    extra={"threshold": failure.threshold.name},
                )
        logger.info("Verdict: %s", result.verdict.value.upper())

    def _transition(self, state: RunState) -> None:
        logger.debug("Run state: %s -> %s", self._state.name, state.name)
        self._state = state
        self._history.append(state)

    def _install_signal_handlers(self) -> None:
        """Abort the run on SIGINT/SIGTERM, during setup as well as load generation."""
        loop = asyncio.get_running_loop()

        def _signal_handler() -> None:
            logger.info("Signal received, initiating graceful shutdown")
            self.abort("signal received")

        if sys.platform != "win32":
            loop.add_signal_handler(signal.SIGINT, _signal_handler)
            loop.add_signal_handler(signal.SIGTERM, _signal_handler)
        else:
            # Windows doesn't support add_signal_handler
            signal.signal(signal.SIGINT, lambda _s, _f: loop.call_soon_threadsafe(_signal_handler))
            signal.signal(signal.SIGTERM, lambda _s, _f: loop.call_soon_threadsafe(_signal_handler))

    def _remove_signal_handlers(self) -> None:
        """Restore default signal handling."""
        if sys.platform != "win32":
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
        else:
            signal.signal(signal.SIGINT, signal.default_int_handler)
            signal.signal(signal.SIGTERM, signal.SIG_DFL)
