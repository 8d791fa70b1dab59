"""Ordered registry of top-level resources and their creation times."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Tuple

from xhub.ordered import DataInconsistency, OrderedStore, key_text


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class ResourceIndex:
    """Study key -> recorded creation time, kept in its own partition.

    Listing reads this partition only, so it costs one entry per study no
    matter how many trials and files live under each study.
    """

    def __init__(self, bucket: OrderedStore) -> None:
        self._bucket = bucket

    def record(self, key: bytes, created: datetime) -> str:
        stamp = format_timestamp(created)
        self._bucket.put(key, stamp.encode("utf-8"))
        return stamp

    def get(self, key: bytes) -> str | None:
        value = self._bucket.get(key)
        if value is None:
            return None
        return self._stamp(key, value)

    def items(self) -> List[Tuple[bytes, str]]:
        return [(key, self._stamp(key, value)) for key, value in self._bucket.scan_prefix(b"")]

    def remove(self, key: bytes) -> None:
        self._bucket.delete(key)

    @staticmethod
    def _stamp(key: bytes, value: bytes) -> str:
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DataInconsistency("Index entry is not a timestamp", key_text(key)) from exc
