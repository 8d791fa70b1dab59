"""xhub kernel: resource paths, key codec, payload handling and list assembly."""

from .collection import AssemblyError, CollectionItem, assemble_collection, render_collection
from .key_codec import (
    InvalidKey,
    InvalidPathSegment,
    KeyCodecError,
    ResourceKind,
    ResourcePath,
    decode,
    descendant_prefixes,
    encode,
    prefix_for,
)
from .ordered import DataInconsistency, Engine, OrderedStore, StorageFailure, StoreError, prefix_successor
from .payload import PayloadError, decode_payload, split_object

__all__ = [
    "AssemblyError",
    "CollectionItem",
    "DataInconsistency",
    "Engine",
    "InvalidKey",
    "InvalidPathSegment",
    "KeyCodecError",
    "OrderedStore",
    "PayloadError",
    "ResourceKind",
    "ResourcePath",
    "StorageFailure",
    "StoreError",
    "assemble_collection",
    "decode",
    "decode_payload",
    "descendant_prefixes",
    "encode",
    "prefix_for",
    "prefix_successor",
    "render_collection",
    "split_object",
]
