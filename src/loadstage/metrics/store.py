"""Thread-safe in-memory time series of interval snapshots."""

from __future__ import annotations

import threading
from collections import deque
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loadstage.metrics.models import MetricSnapshot


class MetricStore:
    """Bounded time series of per-tick ``MetricSnapshot`` objects.

    The session appends one snapshot per tick; the CLI and the final result
    read them.  When *max_snapshots* is set the oldest snapshots are
    dropped first, which keeps memory flat on very long profiles.
    """

    def __init__(self, max_snapshots: int | None = None) -> None:
        self._snapshots: deque[MetricSnapshot] = deque(maxlen=max_snapshots)
        self._lock = threading.Lock()

    def append(self, snapshot: MetricSnapshot) -> None:
        """Append a snapshot to the series."""
        with self._lock:
            self._snapshots.append(snapshot)

    def get_all(self) -> list[MetricSnapshot]:
        """Return a copy of all stored snapshots in chronological order."""
        with self._lock:
            return list(self._snapshots)

    def get_latest(self) -> MetricSnapshot | None:
        """Return the most recent snapshot, or None if the store is empty."""
        with self._lock:
            if not self._snapshots:
                return None
            return self._snapshots[-1]

    def since(self, elapsed_seconds: float) -> list[MetricSnapshot]:
        """Return snapshots taken at or after *elapsed_seconds* into the run."""
        with self._lock:
            return [s for s in self._snapshots if s.elapsed_seconds >= elapsed_seconds]

    def __len__(self) -> int:
        """Return the number of stored snapshots."""
        with self._lock:
            return len(self._snapshots)
