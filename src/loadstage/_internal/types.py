"""Shared type aliases for loadstage."""

from __future__ import annotations

# HTTP headers dictionary.
Headers = dict[str, str]

# Think time range (min_seconds, max_seconds).
ThinkTime = tuple[float, float]

# Shard owner key: a virtual user id, or a thread identifier for ad-hoc writers.
ShardKey = int | str
