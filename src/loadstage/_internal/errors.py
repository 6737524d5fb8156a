"""Custom exception hierarchy for loadstage."""

from __future__ import annotations


class LoadStageError(Exception):
    """Base exception for all loadstage errors.

    Every error raised on purpose by the engine inherits from this class,
    so callers can catch any loadstage-specific failure with a single
    except clause.
    """


class ConfigError(LoadStageError):
    """Raised when configuration is invalid or missing.

    Examples:
        - A stage has a non-positive duration or a negative target.
        - A threshold expression cannot be parsed.
        - An environment variable has an invalid value.
    """


class SetupError(LoadStageError):
    """Raised when the pre-flight health check fails.

    The run is aborted before any load is generated.

    Attributes:
        status_code: HTTP status observed on the readiness endpoint
            (0 when the request never produced a response).
    """

    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.status_code = status_code


class EngineError(LoadStageError):
    """Raised when the engine hits an unrecoverable internal failure."""
