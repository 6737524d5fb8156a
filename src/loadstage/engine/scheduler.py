"""Turns a concurrency pattern into timed scale commands."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum, auto
from typing import TYPE_CHECKING

from loadstage.patterns.base import _validate_positive

if TYPE_CHECKING:
    from collections.abc import Iterator

    from loadstage.patterns.base import LoadPattern


class ScaleDirection(Enum):
    """Direction of a concurrency change."""

    UP = auto()
    DOWN = auto()
    HOLD = auto()


@dataclass(frozen=True)
class ScaleCommand:
    """Instruction to reconcile the running user count at a point in time.

    Attributes:
        elapsed_seconds: Time offset from test start.
        target_concurrency: Desired number of running virtual users.
        direction: Whether this is scaling up, down, or holding steady.
        delta: Absolute change from the previous command's target.
        final: True for the command at the very end of the profile.
    """

    elapsed_seconds: float
    target_concurrency: int
    direction: ScaleDirection
    delta: int
    final: bool = False


class Scheduler:
    """Emits one ``ScaleCommand`` per tick of a pattern.

    Args:
        pattern: The concurrency pattern to follow.
        tick_interval: Seconds between commands.
        duration_seconds: Length of the schedule.  Defaults to the
            pattern's total duration.
    """

    def __init__(
        self,
        pattern: LoadPattern,
        tick_interval: float = 1.0,
        duration_seconds: float | None = None,
    ) -> None:
        _validate_positive(tick_interval, "tick_interval")
        self._pattern = pattern
        self._tick_interval = tick_interval
        self._duration_seconds = (
            pattern.total_duration if duration_seconds is None else duration_seconds
        )

    @property
    def duration_seconds(self) -> float:
        """Return the schedule length in seconds."""
        return self._duration_seconds

    @property
    def total_ticks(self) -> int:
        """Return the number of commands :meth:`iter_commands` yields."""
        return math.ceil(self._duration_seconds / self._tick_interval) + 1

    def iter_commands(self) -> Iterator[ScaleCommand]:
        """Yield a ScaleCommand for each tick, tracking deltas between ticks.

        Yields:
            Commands in time order; the last one has ``final=True`` and sits
            exactly at the end of the schedule.
        """
        prev_concurrency = 0
        ticks = self._pattern.iter_concurrency(self._duration_seconds, self._tick_interval)
        for elapsed, target in ticks:
            delta = target - prev_concurrency
            if delta > 0:
                direction = ScaleDirection.UP
            elif delta < 0:
                direction = ScaleDirection.DOWN
            else:
                direction = ScaleDirection.HOLD

            yield ScaleCommand(
                elapsed_seconds=elapsed,
                target_concurrency=target,
                direction=direction,
                delta=abs(delta),
                final=elapsed >= self._duration_seconds,
            )
            prev_concurrency = target
