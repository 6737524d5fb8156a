"""Staged ramp profile: piecewise-linear concurrency over ordered stages."""

from __future__ import annotations

import math
import re
from bisect import bisect_right
from dataclasses import dataclass
from itertools import accumulate
from typing import TYPE_CHECKING

from loadstage._internal.errors import ConfigError
from loadstage.patterns.base import LoadPattern, _validate_non_negative, _validate_positive

if TYPE_CHECKING:
    from collections.abc import Iterable

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(text: str | float) -> float:
    """Parse a duration such as ``"2m"``, ``"1m30s"`` or ``"500ms"`` into seconds.

    Bare numbers (or numeric strings) are taken as seconds.

    Args:
        text: Duration string or number.

    Returns:
        Duration in seconds.

    Raises:
        ConfigError: If the string is not a valid duration.
    """
    if isinstance(text, int | float):
        return float(text)

    raw = text.strip().lower()
    if not raw:
        msg = "duration must not be empty"
        raise ConfigError(msg)

    try:
        return float(raw)
    except ValueError:
        pass

    total = 0.0
    position = 0
    for match in _DURATION_PART.finditer(raw):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position != len(raw) or position == 0:
        msg = f"invalid duration {text!r}; expected e.g. '30s', '2m', '1m30s', '500ms'"
        raise ConfigError(msg)
    return total


def format_duration(seconds: float) -> str:
    """Render seconds compactly, e.g. ``120.0 -> "2m"`` and ``90.0 -> "1m30s"``."""
    if seconds < 1:
        return f"{seconds * 1000:g}ms"
    minutes, secs = divmod(seconds, 60.0)
    if minutes and secs:
        return f"{int(minutes)}m{secs:g}s"
    if minutes:
        return f"{int(minutes)}m"
    return f"{secs:g}s"


@dataclass(frozen=True)
class Stage:
    """One ramp stage: move linearly to *target* users over *duration* seconds.

    A stage whose target equals the previous stage's target is a flat hold.

    Attributes:
        duration: Stage length in seconds.  Must be > 0.
        target: Concurrency reached at the end of the stage.  Must be >= 0.
    """

    duration: float
    target: int

    def __post_init__(self) -> None:
        _validate_positive(self.duration, "stage duration")
        _validate_non_negative(self.target, "stage target")
        if int(self.target) != self.target:
            msg = f"stage target must be a whole number, got {self.target}"
            raise ConfigError(msg)

    @classmethod
    def parse(cls, text: str) -> Stage:
        """Build a stage from ``"DURATION:TARGET"``, e.g. ``"2m:10"``.

        Raises:
            ConfigError: If the text is malformed.
        """
        duration_text, sep, target_text = text.partition(":")
        if not sep:
            msg = f"invalid stage {text!r}; expected DURATION:TARGET, e.g. '2m:10'"
            raise ConfigError(msg)
        try:
            target = int(target_text.strip())
        except ValueError:
            msg = f"invalid stage target in {text!r}; expected a whole number"
            raise ConfigError(msg) from None
        return cls(duration=parse_duration(duration_text), target=target)


class StagedPattern(LoadPattern):
    """Concurrency that follows an ordered list of ramp stages.

    The target is a continuous piecewise-linear function of elapsed time:
    during stage *i* it moves from the previous stage's target (or
    *start_target* for the first stage) to stage *i*'s target, reaching it
    exactly at the stage's end boundary.

    Args:
        stages: Ordered stages.  Must contain at least one stage.
        start_target: Concurrency at ``t = 0``.  Defaults to 0.

    Raises:
        ConfigError: If *stages* is empty or *start_target* is negative.

    Example::

        pattern = StagedPattern([Stage(120.0, 10), Stage(300.0, 10), Stage(120.0, 0)])
        pattern.target_at(60.0)   # 5, halfway up the first ramp
        pattern.target_at(200.0)  # 10, holding
    """

    def __init__(self, stages: Iterable[Stage], start_target: int = 0) -> None:
        self._stages = tuple(stages)
        if not self._stages:
            msg = "stages must contain at least one stage"
            raise ConfigError(msg)
        _validate_non_negative(start_target, "start_target")
        self._start_target = start_target
        self._boundaries = tuple(accumulate(stage.duration for stage in self._stages))

    @property
    def stages(self) -> tuple[Stage, ...]:
        """Return the configured stages."""
        return self._stages

    @property
    def start_target(self) -> int:
        """Return the concurrency at the start of the test."""
        return self._start_target

    @property
    def total_duration(self) -> float:
        """Return the sum of all stage durations in seconds."""
        return self._boundaries[-1]

    @property
    def max_target(self) -> int:
        """Return the peak concurrency reached anywhere in the profile."""
        return max(self._start_target, *(stage.target for stage in self._stages))

    def boundaries(self) -> tuple[float, ...]:
        """Return the cumulative end time of each stage."""
        return self._boundaries

    def stage_index_at(self, elapsed_seconds: float) -> int:
        """Return the index of the stage active at *elapsed_seconds*.

        Boundary instants belong to the stage that ends there.  Times past
        the end map to the last stage.
        """
        if elapsed_seconds <= 0:
            return 0
        index = bisect_right(self._boundaries, elapsed_seconds)
        if index > 0 and self._boundaries[index - 1] == elapsed_seconds:
            index -= 1
        return min(index, len(self._stages) - 1)

    def target_value(self, elapsed_seconds: float) -> float:
        """Return the exact (unrounded) interpolated target at *elapsed_seconds*."""
        if elapsed_seconds <= 0:
            return float(self._start_target)
        if elapsed_seconds >= self.total_duration:
            return float(self._stages[-1].target)

        index = self.stage_index_at(elapsed_seconds)
        stage = self._stages[index]
        stage_start = self._boundaries[index] - stage.duration
        from_target = self._start_target if index == 0 else self._stages[index - 1].target
        fraction = (elapsed_seconds - stage_start) / stage.duration
        return from_target + (stage.target - from_target) * fraction

    def target_at(self, elapsed_seconds: float) -> int:
        """Return the whole-user target at *elapsed_seconds*, rounding halves up."""
        return max(math.floor(self.target_value(elapsed_seconds) + 0.5), 0)

    def describe(self) -> str:
        """Return a human-readable description.

        Returns:
            One line per stage, headed by the stage count and total length.
        """
        lines = [
            f"Stages: {len(self._stages)} stages, {format_duration(self.total_duration)} total, "
            f"peak {self.max_target} users"
        ]
        previous = self._start_target
        for i, stage in enumerate(self._stages):
            lines.append(
                f"  {i + 1}. {previous} -> {stage.target} users over "
                f"{format_duration(stage.duration)}"
            )
            previous = stage.target
        return "\n".join(lines)
