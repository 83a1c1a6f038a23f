"""Time-bucketed sliding window of recently ingested traces."""

from __future__ import annotations

import threading
from collections import OrderedDict
from datetime import datetime, timedelta, timezone

from calltrace.models.trace import StoredTrace


class SlidingWindow:
    """Ring of time buckets holding the traces ingested in the last window.

    Buckets are keyed by the start of their interval and evicted by age,
    never by count, so a burst of traffic cannot push out older traces
    that are still inside the window. Insertion order is preserved across
    buckets for trend reconstruction.

    Args:
        window_seconds: How long a trace stays in the window.
        bucket_seconds: Width of one bucket.
    """

    def __init__(self, window_seconds: float, bucket_seconds: float) -> None:
        self.window = timedelta(seconds=window_seconds)
        self.bucket = timedelta(seconds=min(bucket_seconds, window_seconds))
        self._buckets: OrderedDict[datetime, list[StoredTrace]] = OrderedDict()
        self._lock = threading.Lock()
        self.last_added_at: datetime | None = None

    def _bucket_key(self, at: datetime) -> datetime:
        width = self.bucket.total_seconds()
        epoch = at.timestamp()
        return datetime.fromtimestamp(epoch - (epoch % width), tz=timezone.utc)

    def add(self, trace: StoredTrace, at: datetime) -> None:
        """Add trace to the bucket covering at.

        A timestamp older than the newest bucket lands in the newest bucket
        so that insertion order is never broken.
        """
        key = self._bucket_key(at)
        with self._lock:
            if self._buckets:
                newest = next(reversed(self._buckets))
                if key < newest:
                    key = newest
            self._buckets.setdefault(key, []).append(trace)
            if self.last_added_at is None or at > self.last_added_at:
                self.last_added_at = at

    def evict(self, now: datetime) -> int:
        """Drop buckets that ended before now - window. Returns traces evicted."""
        cutoff = now - self.window
        evicted = 0
        with self._lock:
            while self._buckets:
                oldest = next(iter(self._buckets))
                if oldest + self.bucket > cutoff:
                    break
                evicted += len(self._buckets.pop(oldest))
        return evicted

    def traces(self) -> list[StoredTrace]:
        """Every trace in the window, oldest first."""
        with self._lock:
            return [trace for bucket in self._buckets.values() for trace in bucket]

    def recent(self, count: int) -> list[StoredTrace]:
        """The count most recently added traces, newest first."""
        if count <= 0:
            return []
        return list(reversed(self.traces()[-count:]))

    def bucket_count(self) -> int:
        return len(self._buckets)

    def clear(self) -> None:
        with self._lock:
            self._buckets.clear()
            self.last_added_at = None

    def __len__(self) -> int:
        with self._lock:
            return sum(len(bucket) for bucket in self._buckets.values())
