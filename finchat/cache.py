from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Generic, TypeVar

T = TypeVar("T")


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evictions: int = 0


class BoundedCache(Generic[T]):
    """LRU cache without expiry. Entries live until evicted by size or cleared with the owner."""

    def __init__(self, *, max_size: int) -> None:
        self.max_size = max(1, int(max_size))
        self._store: OrderedDict[str, T] = OrderedDict()
        self._lock = Lock()
        self.stats = CacheStats()

    def __len__(self) -> int:
        return len(self._store)

    def get(self, key: str) -> T | None:
        with self._lock:
            if key not in self._store:
                self.stats.misses += 1
                return None
            self._store.move_to_end(key)
            self.stats.hits += 1
            return self._store[key]

    def set(self, key: str, value: T) -> None:
        with self._lock:
            self._store[key] = value
            self._store.move_to_end(key)
            while len(self._store) > self.max_size:
                self._store.popitem(last=False)
                self.stats.evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._store.clear()
