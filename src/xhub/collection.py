"""Assemble list responses from ordered (key, value) entries."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Iterable, List, Mapping

from .key_codec import InvalidKey, ResourceKind, decode
from .ordered import Entry
from .payload import decode_payload

API_VERSION = "1"


@dataclass
class AssemblyError(Exception):
    message: str
    key: str

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.message} (key={self.key!r})"


@dataclass(frozen=True)
class CollectionItem:
    resource: str
    id: str
    url: str
    data: bytes
    created: str | None = None
    version: str = API_VERSION

    def to_json(self) -> bytes:
        """Serialize the item with the stored payload bytes spliced in as ``data``.

        Raises ``PayloadError`` when the stored bytes are not JSON.
        """
        decode_payload(self.data)
        head = json.dumps(
            {"version": self.version, "resource": self.resource, "id": self.id, "url": self.url},
            ensure_ascii=False,
        )
        parts = [head[:-1].encode("utf-8"), b',"data":', self.data]
        if self.created is not None:
            parts.append(b',"created":' + json.dumps(self.created).encode("utf-8"))
        parts.append(b"}")
        return b"".join(parts)


def assemble_collection(
    base_url: str,
    entries: Iterable[Entry],
    kind: ResourceKind | None = None,
    created: Mapping[bytes, str] | None = None,
    version: str = API_VERSION,
) -> List[CollectionItem]:
    """Turn raw entries into URL-annotated items, preserving entry order.

    Every key must decode to a resource path (and to ``kind`` when given);
    anything else means the scan returned keys it should not have.
    """
    base = base_url.rstrip("/")
    items: List[CollectionItem] = []
    for key, value in entries:
        key_text = bytes(key).decode("utf-8", errors="replace")
        try:
            path = decode(key)
        except InvalidKey as exc:
            raise AssemblyError(f"Undecodable key: {exc.message}", key_text) from exc
        if kind is not None and path.kind != kind:
            raise AssemblyError(f"Expected {kind.value} key, got {path.kind.value}", key_text)
        items.append(
            CollectionItem(
                resource=path.kind.value,
                id=key_text,
                url=base + key_text,
                data=bytes(value),
                created=created.get(bytes(key)) if created is not None else None,
                version=version,
            )
        )
    return items


def render_collection(items: Iterable[CollectionItem]) -> bytes:
    return b"[" + b",".join(item.to_json() for item in items) + b"]"
