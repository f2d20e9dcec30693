# secmon/locks.py
import threading
import zlib
from typing import List


class StripedLock:
    """
    Fixed pool of re-entrant locks, one picked per key by hash.

    Two keys may share a stripe, which only costs some parallelism. The pool
    never grows, however many IPs or users show up.
    """

    def __init__(self, stripes: int = 64):
        if stripes <= 0:
            raise ValueError("stripes must be positive")
        self._locks: List[threading.RLock] = [threading.RLock() for _ in range(stripes)]

    def for_key(self, key: str) -> threading.RLock:
        index = zlib.crc32(key.encode("utf-8")) % len(self._locks)
        return self._locks[index]

    def __len__(self) -> int:
        return len(self._locks)
