"""
Bounded LRU Cache

O(1) get/set via a hash map over a doubly linked list of entries. The head
of the list is the most recently used entry, the tail the least.

Two instances sit in front of the retrieval layer: one for document reads,
one for search results.

Usage:
    cache = LRUCache[str, dict](capacity=500)
    cache.set("doc-1", {"content": "..."})
    cache.get("doc-1")       # promotes doc-1 to most recently used
    cache.get_stats()        # hits, misses, hit_rate, utilization
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Generic, Hashable, Iterator, List, Optional, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(eq=False)
class CacheEntry(Generic[K, V]):
    """Linked list node backing the LRU structure."""
    key: K
    value: V
    prev: Optional["CacheEntry[K, V]"] = None
    next: Optional["CacheEntry[K, V]"] = None
    access_count: int = 0


class LRUCache(Generic[K, V]):
    """
    Least-recently-used cache with a fixed capacity.

    Size never exceeds capacity; inserting past capacity evicts the tail.
    All operations take the cache's lock so the observable semantics hold
    when shared across threads.
    """

    def __init__(self, capacity: int, name: str = "lru"):
        if capacity <= 0:
            raise ValueError("LRU cache capacity must be positive")
        self.capacity = capacity
        self.name = name
        self._map: Dict[K, CacheEntry[K, V]] = {}
        self._head: Optional[CacheEntry[K, V]] = None
        self._tail: Optional[CacheEntry[K, V]] = None
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._lock = threading.RLock()

    # ----- linked list maintenance -----

    def _unlink(self, entry: CacheEntry[K, V]):
        if entry.prev is not None:
            entry.prev.next = entry.next
        else:
            self._head = entry.next
        if entry.next is not None:
            entry.next.prev = entry.prev
        else:
            self._tail = entry.prev
        entry.prev = None
        entry.next = None

    def _push_front(self, entry: CacheEntry[K, V]):
        entry.prev = None
        entry.next = self._head
        if self._head is not None:
            self._head.prev = entry
        self._head = entry
        if self._tail is None:
            self._tail = entry

    def _move_to_front(self, entry: CacheEntry[K, V]):
        if entry is self._head:
            return
        self._unlink(entry)
        self._push_front(entry)

    def _evict_tail(self):
        entry = self._tail
        if entry is None:
            return
        self._unlink(entry)
        del self._map[entry.key]
        self._evictions += 1
        logger.debug(f"LRU '{self.name}' evicted key={entry.key!r}")

    # ----- public API -----

    def get(self, key: K) -> Optional[V]:
        """Return the value and promote it, or None on a miss."""
        with self._lock:
            entry = self._map.get(key)
            if entry is None:
                self._misses += 1
                return None
            self._hits += 1
            entry.access_count += 1
            self._move_to_front(entry)
            return entry.value

    def set(self, key: K, value: V):
        """Insert or update, evicting the least recently used entry on overflow."""
        with self._lock:
            entry = self._map.get(key)
            if entry is not None:
                entry.value = value
                self._move_to_front(entry)
                return

            entry = CacheEntry(key=key, value=value)
            self._map[key] = entry
            self._push_front(entry)
            if len(self._map) > self.capacity:
                self._evict_tail()

    def has(self, key: K) -> bool:
        """Membership test; does not affect recency or hit counters."""
        with self._lock:
            return key in self._map

    def __contains__(self, key: object) -> bool:
        return self.has(key)  # type: ignore[arg-type]

    def delete(self, key: K) -> bool:
        with self._lock:
            entry = self._map.pop(key, None)
            if entry is None:
                return False
            self._unlink(entry)
            return True

    def clear(self):
        with self._lock:
            self._map.clear()
            self._head = None
            self._tail = None

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._map)

    def __len__(self) -> int:
        return self.size

    def keys(self) -> List[K]:
        """Keys from most to least recently used."""
        with self._lock:
            return [entry.key for entry in self._iter_entries()]

    def values(self) -> List[V]:
        """Values from most to least recently used."""
        with self._lock:
            return [entry.value for entry in self._iter_entries()]

    def _iter_entries(self) -> Iterator[CacheEntry[K, V]]:
        node = self._head
        while node is not None:
            yield node
            node = node.next

    def get_stats(self) -> Dict[str, Any]:
        """Hit/miss counters and utilization, as percentages."""
        with self._lock:
            total = self._hits + self._misses
            size = len(self._map)
            return {
                "name": self.name,
                "size": size,
                "capacity": self.capacity,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": round(self._hits / total * 100, 2) if total else 0.0,
                "utilization": round(size / self.capacity * 100, 2),
            }

    def reset_stats(self):
        with self._lock:
            self._hits = 0
            self._misses = 0
            self._evictions = 0
