"""
Copy-on-write record table shared by the in-memory stores.

Values are immutable pydantic snapshots. Readers take whatever snapshot
is current without locking; writers are serialized by a fixed set of
striped locks chosen by key hash, so writers on the same key always
share a lock and the lock set never grows with the number of rows.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Generic, Hashable, List, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

DEFAULT_STRIPES = 64


class SnapshotTable(Generic[K, V]):
    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._rows: Dict[K, V] = {}
        self._stripes = tuple(threading.Lock() for _ in range(stripes))

    @property
    def stripe_count(self) -> int:
        return len(self._stripes)

    def lock_for(self, key: K) -> threading.Lock:
        return self._stripes[hash(key) % len(self._stripes)]

    def get(self, key: K) -> Optional[V]:
        return self._rows.get(key)

    def put(self, key: K, value: V) -> V:
        with self.lock_for(key):
            self._rows[key] = value
        return value

    def update(self, key: K, mutate: Callable[[V], V]) -> Optional[V]:
        """
        Apply ``mutate`` to the current row under its key lock.

        Returns None when the row does not exist. Exceptions raised by
        ``mutate`` leave the row untouched.
        """
        with self.lock_for(key):
            current = self._rows.get(key)
            if current is None:
                return None
            updated = mutate(current)
            self._rows[key] = updated
            return updated

    def values(self) -> List[V]:
        return list(self._rows.values())

    def delete(self, key: K) -> bool:
        with self.lock_for(key):
            return self._rows.pop(key, None) is not None

    def __len__(self) -> int:
        return len(self._rows)
