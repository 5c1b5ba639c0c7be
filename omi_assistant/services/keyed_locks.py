import threading
import zlib


class KeyedLocks:
    """Fixed pool of re-entrant locks selected by a hash of the key."""

    def __init__(self, stripes: int = 64):
        if stripes < 1:
            raise ValueError("stripes must be >= 1")
        self._locks = [threading.RLock() for _ in range(stripes)]

    def _index(self, key: str) -> int:
        return zlib.crc32(str(key).encode("utf-8")) % len(self._locks)

    def for_key(self, key: str) -> threading.RLock:
        return self._locks[self._index(key)]

    def __len__(self) -> int:
        return len(self._locks)
