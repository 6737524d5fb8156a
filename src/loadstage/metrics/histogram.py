"""HDR histogram wrapper for streaming trend percentiles.

Trend samples arrive in milliseconds as floats; the underlying
``hdrh.histogram.HdrHistogram`` only stores integers, so values are kept
internally as whole microseconds.  Inserts are O(1) and memory is bounded
by the trackable range, regardless of how many samples are recorded.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hdrh.histogram import HdrHistogram  # type: ignore[import-untyped]

if TYPE_CHECKING:
    from collections.abc import Iterable

# Range: 1 microsecond to 60 seconds (in microseconds), 1% value resolution.
# One histogram is about 20 KB, and every virtual user holds several.
_LOWEST_TRACKABLE_US = 1
_HIGHEST_TRACKABLE_US = 60_000_000
_SIGNIFICANT_DIGITS = 2


class LatencyHistogram:
    """Millisecond-facing wrapper around an HDR histogram.

    Values outside ``[lowest_us, highest_us]`` are clamped into range, so a
    60 s timeout and a sub-microsecond mock response are both recorded.

    Attributes:
        lowest_us: Lowest trackable value in microseconds.
        highest_us: Highest trackable value in microseconds.
    """

    def __init__(
        self,
        lowest_us: int = _LOWEST_TRACKABLE_US,
        highest_us: int = _HIGHEST_TRACKABLE_US,
        significant_digits: int = _SIGNIFICANT_DIGITS,
    ) -> None:
        self.lowest_us = lowest_us
        self.highest_us = highest_us
        self._significant_digits = significant_digits
        self._histogram: HdrHistogram = HdrHistogram(  # type: ignore[no-any-unimported]
            lowest_us, highest_us, significant_digits
        )

    @classmethod
    def from_values(cls, values_ms: Iterable[float]) -> LatencyHistogram:
        """Build a histogram pre-filled with *values_ms*."""
        histogram = cls()
        for value in values_ms:
            histogram.record(value)
        return histogram

    @property
    def count(self) -> int:
        """Return the number of recorded values."""
        return int(self._histogram.total_count)

    def record(self, value_ms: float) -> bool:
        """Record a value in milliseconds.

        Returns:
            True if the value was recorded.
        """
        value_us = int(value_ms * 1000)
        value_us = max(self.lowest_us, min(value_us, self.highest_us))
        return bool(self._histogram.record_value(value_us))

    def percentile(self, percentile: float) -> float:
        """Return the value at *percentile* (0-100) in milliseconds, 0.0 if empty."""
        if self.count == 0:
            return 0.0
        return float(self._histogram.get_value_at_percentile(percentile)) / 1000.0

    def min(self) -> float:
        """Return the smallest recorded value in milliseconds, 0.0 if empty."""
        if self.count == 0:
            return 0.0
        return float(self._histogram.get_min_value()) / 1000.0

    def max(self) -> float:
        """Return the largest recorded value in milliseconds, 0.0 if empty."""
        if self.count == 0:
            return 0.0
        return float(self._histogram.get_max_value()) / 1000.0

    def mean(self) -> float:
        """Return the mean of recorded values in milliseconds, 0.0 if empty."""
        if self.count == 0:
            return 0.0
        return float(self._histogram.get_mean_value()) / 1000.0

    def merge(self, other: LatencyHistogram) -> None:
        """Add every value recorded in *other* into this histogram."""
        self._histogram.add(other._histogram)

    def copy(self) -> LatencyHistogram:
        """Return an independent histogram holding the same values."""
        duplicate = LatencyHistogram(self.lowest_us, self.highest_us, self._significant_digits)
        duplicate.merge(self)
        return duplicate

    def reset(self) -> None:
        """Clear all recorded values."""
        self._histogram.reset()
