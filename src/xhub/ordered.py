"""Contract for the ordered key-value partitions the resource store runs on."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

Entry = Tuple[bytes, bytes]


@dataclass
class StoreError(Exception):
    message: str
    key: str | None = None
    detail: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (key={self.key!r})" if self.key else self.message


class StorageFailure(StoreError):
    """An engine call failed; the current request cannot complete."""


class DataInconsistency(StoreError):
    """Persisted partitions disagree with each other."""


def key_text(key: bytes | None) -> str | None:
    if key is None:
        return None
    return bytes(key).decode("utf-8", errors="replace")


class OrderedStore(Protocol):
    """One byte-ordered partition of an engine.

    ``put`` upserts, ``delete`` is a no-op for absent keys and ``scan_prefix``
    returns entries in ascending key order whose key starts with ``prefix``.
    Each call is its own transaction.
    """

    def put(self, key: bytes, value: bytes) -> None: ...

    def get(self, key: bytes) -> Optional[bytes]: ...

    def delete(self, key: bytes) -> None: ...

    def scan_prefix(self, prefix: bytes) -> List[Entry]: ...


class Engine(Protocol):
    def bucket(self, name: str) -> OrderedStore: ...

    def close(self) -> None: ...


def prefix_successor(prefix: bytes) -> Optional[bytes]:
    """Smallest key greater than every key starting with ``prefix``.

    Returns None when no upper bound exists (empty prefix or all 0xff bytes).
    """
    data = bytearray(prefix)
    while data and data[-1] == 0xFF:
        data.pop()
    if not data:
        return None
    data[-1] += 1
    return bytes(data)
