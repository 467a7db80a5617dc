"""Fixed-capacity LRU map with hit/miss statistics for in-memory result tiers."""

from __future__ import annotations

import threading
from collections import OrderedDict
from typing import Any, Dict, Generic, Hashable, Iterator, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

_MISSING = object()


class BoundedCache(Generic[K, V]):
    """Least-recently-used cache bounded to ``max_size`` keys.

    ``get`` and ``set`` both promote a key to most-recently-used. Every
    mutation runs under one lock so eviction is never observed half done.
    """

    def __init__(self, max_size: int, *, name: str = "") -> None:
        if int(max_size) < 1:
            raise ValueError("max_size must be >= 1")
        self.max_size = int(max_size)
        self.name = name
        self._data: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        with self._lock:
            value = self._data.get(key, _MISSING)
            if value is _MISSING:
                self._misses += 1
                return default
            self._data.move_to_end(key)
            self._hits += 1
            return value  # type: ignore[return-value]

    def peek(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return a value without touching recency or statistics."""
        with self._lock:
            return self._data.get(key, default)

    def has(self, key: K) -> bool:
        with self._lock:
            return key in self._data

    def set(self, key: K, value: V) -> None:
        with self._lock:
            if key in self._data:
                self._data.move_to_end(key)
            self._data[key] = value
            while len(self._data) > self.max_size:
                self._data.popitem(last=False)

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._data.pop(key, _MISSING) is not _MISSING

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = 0
            self._misses = 0

    def keys(self) -> list[K]:
        """Keys ordered from least to most recently used."""
        with self._lock:
            return list(self._data.keys())

    def values(self) -> list[V]:
        with self._lock:
            return list(self._data.values())

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "name": self.name,
                "hits": self._hits,
                "misses": self._misses,
                "hit_rate": (self._hits / total) if total else 0.0,
                "size": len(self._data),
                "max_size": self.max_size,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __iter__(self) -> Iterator[K]:
        return iter(self.keys())
