"""Thread-safe, versioned in-memory store.

Readers get deep copies. Writers hand back a modified copy together with the
version they read; the write wins only if nobody committed in between.

Unique keys map a conflict message to a key function; an item whose key is
not None may not share it with any other stored item. Keys are checked under
the same lock as the write.
"""

import threading
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from pydantic import BaseModel

from kyc_workflow.errors import ConflictError, NotFound

T = TypeVar("T", bound=BaseModel)

UniqueKeys = Mapping[str, Callable[[Any], Any]]


class VersionedStore(Generic[T]):
    def __init__(self, label: str = "Record"):
        self.label = label
        self._lock = threading.Lock()
        self._items: Dict[str, T] = {}

    def _check_unique(self, item: T, unique: Optional[UniqueKeys]) -> None:
        for message, key in (unique or {}).items():
            value = key(item)
            if value is None:
                continue
            for other in self._items.values():
                if other.id != item.id and key(other) == value:
                    raise ConflictError(message)

    def add(self, item: T, unique: Optional[UniqueKeys] = None,
            prepare: Optional[Callable[[T, List[T]], None]] = None) -> T:
        """
        Insert a new item at version 1.

        `prepare` runs under the lock with the stored items, for values such
        as sequence numbers that must not be handed out twice.
        """
        with self._lock:
            if item.id in self._items:
                raise ConflictError(f"{self.label} already exists")
            stored = item.model_copy(deep=True)
            if prepare is not None:
                prepare(stored, list(self._items.values()))
            self._check_unique(stored, unique)
            stored.version = 1
            self._items[stored.id] = stored
            return stored.model_copy(deep=True)

    def get(self, key: str) -> T:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                raise NotFound(f"{self.label} not found")
            return item.model_copy(deep=True)

    def commit(self, item: T, expected_version: int, unique: Optional[UniqueKeys] = None) -> T:
        """Replace the stored item if its version is still `expected_version`."""
        with self._lock:
            current = self._items.get(item.id)
            if current is None:
                raise NotFound(f"{self.label} not found")
            if current.version != expected_version:
                raise ConflictError(
                    f"{self.label} was modified concurrently; refresh and retry"
                )
            self._check_unique(item, unique)
            stored = item.model_copy(deep=True)
            stored.version = expected_version + 1
            self._items[item.id] = stored
            return stored.model_copy(deep=True)

    def find(self, predicate: Callable[[T], bool]) -> Optional[T]:
        with self._lock:
            for item in self._items.values():
                if predicate(item):
                    return item.model_copy(deep=True)
        return None

    def values(self) -> List[T]:
        with self._lock:
            return [item.model_copy(deep=True) for item in self._items.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def reset(self) -> None:
        with self._lock:
            self._items.clear()
