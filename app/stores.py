"""In-memory ordered partitions for tests and ephemeral servers."""

from __future__ import annotations

import bisect
import threading
from typing import Dict, List

from xhub.ordered import Entry, prefix_successor


class MemoryBucket:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._values: Dict[bytes, bytes] = {}
        self._keys: List[bytes] = []

    def put(self, key: bytes, value: bytes) -> None:
        key = bytes(key)
        with self._lock:
            if key not in self._values:
                bisect.insort(self._keys, key)
            self._values[key] = bytes(value)

    def get(self, key: bytes) -> bytes | None:
        with self._lock:
            return self._values.get(bytes(key))

    def delete(self, key: bytes) -> None:
        key = bytes(key)
        with self._lock:
            if key not in self._values:
                return
            del self._values[key]
            idx = bisect.bisect_left(self._keys, key)
            del self._keys[idx]

    def scan_prefix(self, prefix: bytes) -> List[Entry]:
        prefix = bytes(prefix)
        upper = prefix_successor(prefix)
        with self._lock:
            start = bisect.bisect_left(self._keys, prefix)
            end = bisect.bisect_left(self._keys, upper) if upper is not None else len(self._keys)
            return [(key, self._values[key]) for key in self._keys[start:end]]

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)


class MemoryEngine:
    """Named buckets held in process memory; contents vanish on close."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._buckets: Dict[str, MemoryBucket] = {}

    def bucket(self, name: str) -> MemoryBucket:
        with self._lock:
            found = self._buckets.get(name)
            if found is None:
                found = MemoryBucket()
                self._buckets[name] = found
            return found

    def close(self) -> None:
        with self._lock:
            self._buckets.clear()
