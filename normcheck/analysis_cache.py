from __future__ import annotations

import time
from collections import OrderedDict
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from threading import Lock
from typing import Generic, TypeVar

from .keyed_locks import KeyedLocks

T = TypeVar("T")


@dataclass
class _AnalysisCacheEntry(Generic[T]):
    inserted_at: float
    revision: Hashable
    payload: T


class AnalysisCache(Generic[T]):
    """TTL + LRU cache of analysis results keyed by request hash.

    Entries remember the data revision they were computed against; a lookup
    with a different revision is a miss and drops the stale entry.
    """

    def __init__(self, *, ttl_s: int, max_entries: int, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_s = max(1, int(ttl_s))
        self._max_entries = max(1, int(max_entries))
        self._clock = clock
        self._lock = Lock()
        self._flights = KeyedLocks()
        self._items: OrderedDict[str, _AnalysisCacheEntry[T]] = OrderedDict()

        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._computations = 0

    def _is_expired(self, entry: _AnalysisCacheEntry[T]) -> bool:
        return (self._clock() - entry.inserted_at) > self._ttl_s

    def get(self, key: str, *, revision: Hashable) -> T | None:
        with self._lock:
            entry = self._items.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.revision != revision or self._is_expired(entry):
                self._items.pop(key, None)
                self._misses += 1
                return None

            self._items.move_to_end(key)
            self._hits += 1
            return entry.payload

    def set(self, key: str, value: T, *, revision: Hashable) -> None:
        with self._lock:
            if key in self._items:
                self._items.move_to_end(key)
            self._items[key] = _AnalysisCacheEntry(inserted_at=self._clock(), revision=revision, payload=value)

            while len(self._items) > self._max_entries:
                self._items.popitem(last=False)
                self._evictions += 1

    def get_or_compute(self, key: str, compute: Callable[[], T], *, revision: Hashable) -> tuple[T, bool]:
        """Return ``(value, from_cache)``; identical keys compute at most once at a time.

        An exception from ``compute`` propagates and nothing is cached.
        """
        cached = self.get(key, revision=revision)
        if cached is not None:
            return cached, True

        with self._flights.hold(key):
            with self._lock:
                entry = self._items.get(key)
                if entry is not None and entry.revision == revision and not self._is_expired(entry):
                    self._items.move_to_end(key)
                    self._hits += 1
                    return entry.payload, True

            value = compute()
            with self._lock:
                self._computations += 1
            self.set(key, value, revision=revision)
            return value, False

    def clear(self) -> int:
        with self._lock:
            cleared = len(self._items)
            self._items.clear()
            return cleared

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._items),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "computations": self._computations,
                "ttl_s": self._ttl_s,
                "max_entries": self._max_entries,
            }
