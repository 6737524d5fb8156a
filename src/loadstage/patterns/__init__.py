"""Concurrency patterns for loadstage.

A pattern defines how the target number of virtual users changes over the
lifetime of a test.  The staged ramp profile is the one the engine drives:
an ordered list of ``(duration, target)`` stages interpolated linearly.
"""

from __future__ import annotations

from loadstage.patterns.base import LoadPattern
from loadstage.patterns.stages import Stage, StagedPattern, format_duration, parse_duration

__all__ = [
    "LoadPattern",
    "Stage",
    "StagedPattern",
    "format_duration",
    "parse_duration",
]
