"""
Bounded most-recent-wins buffers between producers and the detection scheduler,
and the short-TTL prediction cache keyed by modality + coarse time bucket.
"""
from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Mapping


class DropOldestBuffer:
    """Thread-safe deque with a fixed capacity; pushing at capacity discards the oldest item."""

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.capacity = int(capacity)
        self._items: deque[Any] = deque(maxlen=self.capacity)
        self._lock = threading.Lock()
        self.dropped = 0

    def push(self, item: Any) -> None:
        with self._lock:
            if len(self._items) == self.capacity:
                self.dropped += 1
            self._items.append(item)

    def peek_newest(self) -> Any | None:
        with self._lock:
            return self._items[-1] if self._items else None

    def poll_newest(self) -> Any | None:
        """Remove and return the newest item; older ones are left to age out."""
        with self._lock:
            return self._items.pop() if self._items else None

    def clear(self) -> int:
        with self._lock:
            n = len(self._items)
            self._items.clear()
            return n

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


@dataclass(frozen=True)
class CacheEntry:
    predictions: dict[str, float]
    created_at: float


class PredictionCache:
    """
    Cost-reduction layer only: identical PredictionSets within one time bucket.
    Entries are removed by sweep() once older than ttl_sec, or by clear().
    """

    def __init__(self, ttl_sec: float = 30.0, bucket_sec: float = 10.0,
                 clock: Callable[[], float] = time.time) -> None:
        self.ttl_sec = float(ttl_sec)
        self.bucket_sec = float(bucket_sec)
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def key_for(self, modality: str, now: float | None = None) -> str:
        """e.g. 'image_178300000' for the 10 s bucket containing now."""
        now = self._clock() if now is None else now
        return f"{modality}_{int(now // self.bucket_sec)}"

    def get(self, key: str) -> dict[str, float] | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            self.hits += 1
            return dict(entry.predictions)

    def put(self, key: str, predictions: Mapping[str, float]) -> None:
        with self._lock:
            self._entries[key] = CacheEntry(dict(predictions), self._clock())

    def sweep(self) -> int:
        """Drop entries older than the TTL; returns how many were removed."""
        cutoff = self._clock() - self.ttl_sec
        with self._lock:
            stale = [k for k, e in self._entries.items() if e.created_at < cutoff]
            for k in stale:
                del self._entries[k]
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
