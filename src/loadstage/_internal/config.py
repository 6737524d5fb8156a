"""Test configuration and environment loading for loadstage."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from loadstage._internal.errors import ConfigError
from loadstage.metrics.thresholds import Threshold
from loadstage.patterns.stages import Stage, StagedPattern

if TYPE_CHECKING:
    from loadstage._internal.types import Headers, ThinkTime

__all__ = [
    "DEFAULT_BASE_URL",
    "DEFAULT_ENDPOINTS",
    "DEFAULT_STAGES",
    "DEFAULT_THRESHOLDS",
    "LoadTestConfig",
    "default_headers",
    "load_config",
]

DEFAULT_BASE_URL = "http://demo.dev.local"

DEFAULT_ENDPOINTS: tuple[str, ...] = (
    "/status/200",
    "/get",
    "/post",
    "/headers",
    "/user-agent",
)

DEFAULT_STAGES: tuple[Stage, ...] = (
    Stage(duration=120.0, target=10),
    Stage(duration=300.0, target=10),
    Stage(duration=120.0, target=50),
    Stage(duration=300.0, target=50),
    Stage(duration=120.0, target=100),
    Stage(duration=300.0, target=100),
    Stage(duration=120.0, target=0),
)

DEFAULT_THRESHOLDS: tuple[Threshold, ...] = (
    Threshold("http_req_duration", "p(95)<500"),
    Threshold("http_req_failed", "rate<0.1"),
    Threshold("errors", "rate<0.1"),
)


def default_headers() -> Headers:
    """Return the fixed headers sent with every iteration request."""
    from loadstage import __version__

    return {
        "User-Agent": f"loadstage/{__version__}",
        "Accept": "application/json",
    }


@dataclass(frozen=True)
class LoadTestConfig:
    """Immutable configuration for one test run.

    Passed explicitly to the orchestrator; nothing here is read from global
    state once the run starts.

    Attributes:
        base_url: Target base URL; endpoint paths are appended to it.
        stages: Ordered ramp stages.
        endpoints: Paths picked uniformly at random on every iteration.
        thresholds: Pass/fail conditions evaluated at the end of the run.
        headers: Headers sent with every iteration request.
        think_time: Think time range (min, max) in seconds.
        request_timeout: Per-request timeout in seconds.
        tick_interval: Seconds between scheduler reconciliations.
        stop_grace_period: Seconds a stopping user may take to finish its
            iteration before it is force-terminated.
        readiness_path: Path of the pre-flight health check.
        seed: Seed for endpoint selection and think time; None for a random run.
        connection_pool_size: Maximum concurrent connections of the executor.
    """

    base_url: str = DEFAULT_BASE_URL
    stages: tuple[Stage, ...] = DEFAULT_STAGES
    endpoints: tuple[str, ...] = DEFAULT_ENDPOINTS
    thresholds: tuple[Threshold, ...] = DEFAULT_THRESHOLDS
    headers: Headers = field(default_factory=default_headers)
    think_time: ThinkTime = (1.0, 3.0)
    request_timeout: float = 5.0
    tick_interval: float = 0.5
    stop_grace_period: float = 10.0
    readiness_path: str = "/status/200"
    seed: int | None = None
    connection_pool_size: int = 100

    def __post_init__(self) -> None:
        # Accept lists from callers but store tuples
        object.__setattr__(self, "stages", tuple(self.stages))
        object.__setattr__(self, "endpoints", tuple(self.endpoints))
        object.__setattr__(self, "thresholds", tuple(self.thresholds))
        object.__setattr__(self, "think_time", tuple(self.think_time))
        self._validate()

    def _validate(self) -> None:
        if not self.base_url.startswith(("http://", "https://")):
            msg = f"base_url must be an http(s) URL, got: {self.base_url!r}"
            raise ConfigError(msg)
        if not self.stages:
            msg = "at least one stage is required"
            raise ConfigError(msg)
        if not self.endpoints:
            msg = "at least one endpoint is required"
            raise ConfigError(msg)
        for endpoint in (*self.endpoints, self.readiness_path):
            if not endpoint.startswith("/"):
                msg = f"endpoint paths must start with '/', got: {endpoint!r}"
                raise ConfigError(msg)

        low, high = self.think_time
        if low < 0 or high < low:
            msg = f"think_time must satisfy 0 <= min <= max, got: {self.think_time}"
            raise ConfigError(msg)

        for name in ("request_timeout", "tick_interval", "stop_grace_period"):
            value = getattr(self, name)
            if value <= 0:
                msg = f"{name} must be positive, got: {value}"
                raise ConfigError(msg)
        if self.connection_pool_size < 1:
            msg = f"connection_pool_size must be >= 1, got: {self.connection_pool_size}"
            raise ConfigError(msg)

    @property
    def pattern(self) -> StagedPattern:
        """Return the stage profile as a concurrency pattern."""
        return StagedPattern(self.stages)

    @property
    def readiness_url(self) -> str:
        """Return the absolute URL of the pre-flight health check."""
        return f"{self.base_url.rstrip('/')}{self.readiness_path}"

    def with_overrides(self, **overrides: object) -> LoadTestConfig:
        """Return a copy with *overrides* applied (None values are ignored)."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes)  # type: ignore[arg-type]


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError:
        msg = f"{name} must be a number, got: {raw!r}"
        raise ConfigError(msg) from None


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        msg = f"{name} must be an integer, got: {raw!r}"
        raise ConfigError(msg) from None


def load_config(**overrides: object) -> LoadTestConfig:
    """Build a configuration from defaults, the environment and *overrides*.

    Environment variables:
        BASE_URL: Target base URL (default: ``http://demo.dev.local``).
        LOADSTAGE_TIMEOUT: Request timeout in seconds (default: 5.0).
        LOADSTAGE_TICK_INTERVAL: Scheduler tick in seconds (default: 0.5).
        LOADSTAGE_SEED: Integer seed for a reproducible run.

    Keyword overrides take precedence over the environment; ``None``
    values are ignored so CLI options can be passed straight through.

    Returns:
        Populated LoadTestConfig instance.

    Raises:
        ConfigError: If an environment variable or override is invalid.
    """
    from_env: dict[str, object] = {
        "base_url": os.environ.get("BASE_URL") or None,
        "request_timeout": _env_float("LOADSTAGE_TIMEOUT"),
        "tick_interval": _env_float("LOADSTAGE_TICK_INTERVAL"),
        "seed": _env_int("LOADSTAGE_SEED"),
    }
    merged = {key: value for key, value in from_env.items() if value is not None}
    merged.update({key: value for key, value in overrides.items() if value is not None})

    unknown = set(merged) - set(LoadTestConfig.__dataclass_fields__)
    if unknown:
        msg = f"unknown configuration option(s): {', '.join(sorted(unknown))}"
        raise ConfigError(msg)

    return LoadTestConfig(**merged)  # type: ignore[arg-type]
