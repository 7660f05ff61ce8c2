"""
cache.py

Purpose:
    Small TTL + max-size cache shared by the rating matrix builder, the
    similarity calculator and the content lane's profile cache.

Design:
    - Entries expire `ttl_seconds` after they were written.
    - When full, the oldest entry is evicted (insertion order).
    - Invalidation is explicit: invalidate(key), invalidate_where(predicate)
      or clear(). There are no background timers.
    - Guarded by a lock because scoring lanes run in worker threads.
"""
from __future__ import annotations

import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Generic, Hashable, List, Optional, Tuple, TypeVar

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.max_size = int(max_size)
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, V]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: Hashable, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            entry = self._data.get(key, _MISSING)
            if entry is _MISSING:
                self.misses += 1
                return default
            expires_at, value = entry  # type: ignore[misc]
            if expires_at <= self._clock():
                del self._data[key]
                self.misses += 1
                return default
            self.hits += 1
            return value

    def set(self, key: Hashable, value: V) -> None:
        with self._lock:
            if key in self._data:
                del self._data[key]
            self._data[key] = (self._clock() + self.ttl_seconds, value)
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING  # type: ignore[arg-type]

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._data)

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._data.pop(key, None)

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._lock:
            doomed = [k for k in self._data if predicate(k)]
            for k in doomed:
                del self._data[k]
            return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            self._purge_expired()
            return {
                "size": len(self._data),
                "max_size": self.max_size,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }

    def _purge_expired(self) -> None:
        now = self._clock()
        for k in [k for k, (exp, _) in self._data.items() if exp <= now]:
            del self._data[k]

    def values(self) -> List[V]:
        with self._lock:
            self._purge_expired()
            return [value for _, value in self._data.values()]
