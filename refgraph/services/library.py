"""Host-library lookups consumed by enrichment: recid to local item id and relatedness."""

from __future__ import annotations

import threading
from typing import Any, Dict, Iterable, Optional, Protocol, Set, Tuple


class LocalLibrary(Protocol):
    def find_local_item(self, recid: str) -> Optional[Any]: ...

    def batch_find_local_items(self, recids: Iterable[str]) -> Dict[str, Any]: ...

    def is_related(self, item_a: Any, item_b: Any) -> bool: ...


class InMemoryLibrary:
    """Dictionary-backed library for hosts without their own item store."""

    def __init__(self, items: Optional[Dict[str, Any]] = None) -> None:
        self._lock = threading.Lock()
        self._items: Dict[str, Any] = dict(items or {})
        self._relations: Set[Tuple[Any, Any]] = set()
        self.batch_calls = 0

    def add(self, recid: str, item_id: Any) -> None:
        with self._lock:
            self._items[str(recid)] = item_id

    def remove(self, recid: str) -> None:
        with self._lock:
            self._items.pop(str(recid), None)

    def relate(self, item_a: Any, item_b: Any) -> None:
        with self._lock:
            self._relations.add((item_a, item_b))
            self._relations.add((item_b, item_a))

    def find_local_item(self, recid: str) -> Optional[Any]:
        with self._lock:
            return self._items.get(str(recid))

    def batch_find_local_items(self, recids: Iterable[str]) -> Dict[str, Any]:
        with self._lock:
            self.batch_calls += 1
            return {str(r): self._items[str(r)] for r in recids if str(r) in self._items}

    def is_related(self, item_a: Any, item_b: Any) -> bool:
        if item_a is None or item_b is None:
            return False
        with self._lock:
            return (item_a, item_b) in self._relations
