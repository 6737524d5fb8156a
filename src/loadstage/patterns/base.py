"""Abstract base class for concurrency patterns."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from loadstage._internal.errors import ConfigError

if TYPE_CHECKING:
    from collections.abc import Iterator


class LoadPattern(ABC):
    """Abstract base for all concurrency patterns.

    A pattern defines how the target number of virtual users changes over
    the lifetime of a test.  Subclasses implement :meth:`target_at` and
    :attr:`total_duration`; the tick iterator is shared.

    Example::

        pattern = StagedPattern([Stage(60.0, 100), Stage(60.0, 0)])
        for elapsed, users in pattern.iter_concurrency(tick_interval=1.0):
            print(f"t={elapsed:.1f}s -> {users} users")
    """

    @property
    @abstractmethod
    def total_duration(self) -> float:
        """Return the total duration of the pattern in seconds."""

    @abstractmethod
    def target_at(self, elapsed_seconds: float) -> int:
        """Return the target concurrency at *elapsed_seconds* into the test."""

    @abstractmethod
    def describe(self) -> str:
        """Return a human-readable description of this pattern.

        Returns:
            A short string summarising the pattern configuration, suitable for
            logs and report headers.
        """

    def iter_concurrency(
        self,
        duration_seconds: float | None = None,
        tick_interval: float = 1.0,
    ) -> Iterator[tuple[float, int]]:
        """Yield ``(elapsed_seconds, target_concurrency)`` at each tick.

        Ticks fall on exact multiples of *tick_interval*, and a final tick
        is always emitted at exactly *duration_seconds*, so the last target
        of the pattern is never skipped.

        Args:
            duration_seconds: Duration to generate ticks for.  Defaults to
                :attr:`total_duration`.
            tick_interval: Seconds between each yielded tick.  Defaults to 1.0.

        Yields:
            A tuple of ``(elapsed_seconds, target_concurrency)``.
        """
        duration = self.total_duration if duration_seconds is None else duration_seconds
        _validate_positive(duration, "duration_seconds")
        _validate_positive(tick_interval, "tick_interval")

        index = 0
        elapsed = 0.0
        # Multiplying instead of accumulating keeps tick times free of float drift
        while elapsed < duration:
            yield (elapsed, self.target_at(elapsed))
            index += 1
            elapsed = index * tick_interval
        yield (duration, self.target_at(duration))


def _validate_positive(value: float, name: str) -> None:
    """Raise :class:`ConfigError` if *value* is not strictly positive.

    Args:
        value: The numeric value to validate.
        name: Parameter name used in the error message.

    Raises:
        ConfigError: If *value* is not > 0.
    """
    if value <= 0:
        msg = f"{name} must be positive, got {value}"
        raise ConfigError(msg)


def _validate_non_negative(value: float, name: str) -> None:
    """Raise :class:`ConfigError` if *value* is negative.

    Args:
        value: The numeric value to validate.
        name: Parameter name used in the error message.

    Raises:
        ConfigError: If *value* is < 0.
    """
    if value < 0:
        msg = f"{name} must be non-negative, got {value}"
        raise ConfigError(msg)
