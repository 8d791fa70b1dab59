"""Path-addressed resource store for studies, trials and files.

Payloads for every kind share one ordered partition keyed by canonical path.
Studies additionally get an entry in the resource index so they can be listed
without scanning the nested keyspace. Trials and files are listed with a live
prefix scan under their parent.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, List, Tuple

from resource_index import ResourceIndex
from xhub.collection import API_VERSION, CollectionItem, assemble_collection
from xhub.key_codec import (
    ResourceKind,
    ResourcePath,
    descendant_prefixes,
    encode,
    prefix_for,
)
from xhub.ordered import DataInconsistency, Engine, OrderedStore, StorageFailure, key_text

logger = logging.getLogger("xhub.store")

Clock = Callable[[], datetime]

PAYLOAD_BUCKET = "studies"
INDEX_BUCKET = "studylist"

STUDY = (ResourceKind.STUDY,)
TRIAL = (ResourceKind.STUDY, ResourceKind.TRIAL)
STUDY_FILE = (ResourceKind.STUDY, ResourceKind.FILE)
TRIAL_FILE = (ResourceKind.STUDY, ResourceKind.TRIAL, ResourceKind.FILE)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ScopedResourceTable:
    """CRUD for one resource shape, addressed by the names along its path."""

    def __init__(
        self,
        shape: Tuple[ResourceKind, ...],
        payloads: OrderedStore,
        base_url: str,
        index: ResourceIndex | None = None,
        clock: Clock = _now,
        version: str = API_VERSION,
    ) -> None:
        self.shape = shape
        self._payloads = payloads
        self._base_url = base_url
        self._index = index
        self._clock = clock
        self._version = version

    @property
    def kind(self) -> ResourceKind:
        return self.shape[-1]

    def path(self, *names: str) -> ResourcePath:
        if len(names) != len(self.shape):
            raise TypeError(f"{self.kind.value} path needs {len(self.shape)} names, got {len(names)}")
        return ResourcePath(tuple(zip(self.shape, names)))

    def scope(self, *names: str) -> ResourcePath | None:
        if len(names) != len(self.shape) - 1:
            raise TypeError(f"{self.kind.value} scope needs {len(self.shape) - 1} names, got {len(names)}")
        if not names:
            return None
        return ResourcePath(tuple(zip(self.shape[:-1], names)))

    def create(self, *names: str, payload: bytes) -> ResourcePath:
        path = self.path(*names)
        key = encode(path)
        self._payloads.put(key, bytes(payload))
        if self._index is not None:
            self._index.record(key, self._clock())
        return path

    def get(self, *names: str) -> bytes | None:
        return self._payloads.get(encode(self.path(*names)))

    def list(self, *scope_names: str) -> List[CollectionItem]:
        parent = self.scope(*scope_names)
        if self._index is not None:
            return self._list_indexed()
        entries = self._payloads.scan_prefix(prefix_for(parent, self.kind))
        return assemble_collection(self._base_url, entries, kind=self.kind, version=self._version)

    def _list_indexed(self) -> List[CollectionItem]:
        entries = []
        created = {}
        for key, stamp in self._index.items():
            value = self._payloads.get(key)
            if value is None:
                if self._index.get(key) is None:
                    # deleted since the index was read
                    continue
                raise DataInconsistency("Indexed resource has no payload", key_text(key))
            entries.append((key, value))
            created[key] = stamp
        return assemble_collection(
            self._base_url, entries, kind=self.kind, created=created, version=self._version
        )

    def delete(self, *names: str) -> int:
        """Delete a resource and everything beneath it; return keys removed.

        Children go first, so an interrupted cascade leaves the parent listed
        and readable. The index entry is removed before the resource key, so
        an indexed key always has a payload unless the partitions really
        disagree. Nothing is restored on failure.
        """
        path = self.path(*names)
        key = encode(path)
        removed = 0
        try:
            for prefix in descendant_prefixes(path):
                for child_key, _ in self._payloads.scan_prefix(prefix):
                    self._payloads.delete(child_key)
                    removed += 1
            if self._index is not None:
                self._index.remove(key)
            if self._payloads.get(key) is not None:
                removed += 1
            self._payloads.delete(key)
        except StorageFailure as exc:
            exc.detail.setdefault("deleted", removed)
            exc.detail.setdefault("resource", key_text(key))
            logger.error("delete_failed key=%s deleted=%s error=%s", key_text(key), removed, exc.message)
            raise
        if removed > 1:
            logger.info("cascade_delete key=%s removed=%s", key_text(key), removed)
        return removed


class ResourceStore:
    """Resource tables for every kind, sharing one engine."""

    def __init__(
        self,
        engine: Engine,
        base_url: str,
        clock: Clock = _now,
        version: str = API_VERSION,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        payloads = engine.bucket(PAYLOAD_BUCKET)
        self.index = ResourceIndex(engine.bucket(INDEX_BUCKET))
        self.studies = ScopedResourceTable(STUDY, payloads, self.base_url, self.index, clock, version)
        self.trials = ScopedResourceTable(TRIAL, payloads, self.base_url, clock=clock, version=version)
        self.study_files = ScopedResourceTable(STUDY_FILE, payloads, self.base_url, clock=clock, version=version)
        self.trial_files = ScopedResourceTable(TRIAL_FILE, payloads, self.base_url, clock=clock, version=version)

    def url_for(self, path: ResourcePath) -> str:
        return self.base_url + str(path)
