# secmon/bounded.py
"""
Bounded containers used by the event store.

Every container here evicts explicitly: the call that causes an eviction
returns what was evicted and bumps an ``evicted`` counter, so the policy can
be checked in tests instead of trusted.
"""
import threading
from collections import OrderedDict, deque
from typing import Any, Callable, Deque, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


def bounded_append(items: List[Any], item: Any, cap: int) -> List[Any]:
    """
    Append item and evict from the front until len(items) <= cap.

    Returns the evicted entries, oldest first.
    """
    items.append(item)
    overflow = len(items) - cap
    if overflow <= 0:
        return []
    evicted = items[:overflow]
    del items[:overflow]
    return evicted


class EventLog(Generic[V]):
    """Append-only log capped at max_size, oldest entries evicted first."""

    def __init__(self, max_size: int, timestamp_of: Callable[[V], float]):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.evicted = 0
        self._timestamp_of = timestamp_of
        self._items: Deque[V] = deque()
        self._lock = threading.Lock()

    def append(self, item: V) -> Optional[V]:
        with self._lock:
            self._items.append(item)
            if len(self._items) > self.max_size:
                self.evicted += 1
                return self._items.popleft()
        return None

    def purge_before(self, cutoff: float) -> int:
        """
        Pop entries from the front while the oldest is at or before cutoff.
        The lock is taken per entry so appends interleave with a long purge.
        Returns how many went.
        """
        removed = 0
        while True:
            with self._lock:
                if not self._items or self._timestamp_of(self._items[0]) > cutoff:
                    return removed
                self._items.popleft()
            removed += 1

    def snapshot(self) -> List[V]:
        with self._lock:
            return list(self._items)

    def tail(self, n: int) -> List[V]:
        if n <= 0:
            return []
        with self._lock:
            start = max(0, len(self._items) - n)
            return [self._items[i] for i in range(start, len(self._items))]

    def replace(self, items: List[V]) -> None:
        with self._lock:
            self._items = deque(items[-self.max_size:])

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[V]:
        return iter(self.snapshot())


class LRURegistry(Generic[K, V]):
    """
    Keyed table capped at max_entries.

    Eviction policy: the least recently touched entry for which ``pinned``
    is False goes first. When every entry is pinned, the least recently
    touched entry goes anyway so the cap always holds.
    """

    def __init__(self, max_entries: int, pinned: Optional[Callable[[V], bool]] = None):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self.evicted = 0
        self._pinned = pinned or (lambda value: False)
        self._data: "OrderedDict[K, V]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._data.get(key)

    def get_or_create(self, key: K, factory: Callable[[], V]) -> Tuple[V, List[Tuple[K, V]]]:
        """
        Return the entry for key (creating it when missing) and mark it as
        most recently used. The second element lists evicted (key, value) pairs.
        """
        with self._lock:
            value = self._data.get(key)
            if value is not None:
                self._data.move_to_end(key)
                return value, []
            value = factory()
            self._data[key] = value
            return value, self._evict_overflow()

    def put(self, key: K, value: V) -> List[Tuple[K, V]]:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            return self._evict_overflow()

    def _evict_overflow(self) -> List[Tuple[K, V]]:
        evicted: List[Tuple[K, V]] = []
        while len(self._data) > self.max_entries:
            victim = None
            for candidate, value in self._data.items():
                if not self._pinned(value):
                    victim = candidate
                    break
            if victim is None:
                victim = next(iter(self._data))
            evicted.append((victim, self._data.pop(victim)))
        self.evicted += len(evicted)
        return evicted

    def values(self) -> List[V]:
        with self._lock:
            return list(self._data.values())

    def as_dict(self) -> Dict[K, V]:
        with self._lock:
            return dict(self._data)

    def replace(self, items: Dict[K, V]) -> None:
        with self._lock:
            self._data = OrderedDict(items)
            self._evict_overflow()

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __len__(self) -> int:
        return len(self._data)
