"""Structured logging setup for loadstage."""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime

_ROOT_LOGGER = "loadstage"

# Extra attributes copied into JSON log lines when a call site passes them
# through ``extra=``.
_CONTEXT_FIELDS = ("vu_id", "stage", "threshold", "anomaly", "status_code")


class _JsonFormatter(logging.Formatter):
    """One-line JSON log formatter.

    Emits objects with keys: timestamp, level, logger, message, plus any
    known context fields attached to the record.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Format a log record as a JSON string.

        Args:
            record: The log record to format.

        Returns:
            A single-line JSON string.
        """
        log_entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in _CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def setup_logging(
    level: int = logging.INFO,
    *,
    json_format: bool = False,
) -> logging.Logger:
    """Configure and return the root loadstage logger.

    Installs a single stderr handler on the ``loadstage`` namespace.
    Calling it again only updates the level, unless the requested format
    differs from the installed one, in which case the formatter is swapped.

    Args:
        level: Logging level (e.g., ``logging.DEBUG``). Defaults to INFO.
        json_format: If True, emit structured JSON logs. If False, emit
            human-readable logs.

    Returns:
        The configured ``loadstage`` root logger.
    """
    logger = logging.getLogger(_ROOT_LOGGER)
    logger.setLevel(level)

    formatter = _build_formatter(json_format=json_format)

    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
            if isinstance(handler.formatter, _JsonFormatter) != json_format:
                handler.setFormatter(formatter)
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Keep output off the root logger so it is not printed twice
    logger.propagate = False

    return logger


def _build_formatter(*, json_format: bool) -> logging.Formatter:
    if json_format:
        return _JsonFormatter()
    return logging.Formatter(
        "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the ``loadstage`` namespace.

    Args:
        name: Logger name, appended to ``loadstage.`` prefix.
            Example: ``get_logger("engine.session")`` returns
            ``logging.getLogger("loadstage.engine.session")``.

    Returns:
        A child logger.
    """
    return logging.getLogger(f"{_ROOT_LOGGER}.{name}")
