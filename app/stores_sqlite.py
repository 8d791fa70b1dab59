"""Embedded sqlite engine: the default durable backend."""

from __future__ import annotations

import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Iterable, List

from app.db import execute, fetch_all, fetch_one
from xhub.ordered import Entry, StorageFailure, key_text, prefix_successor

logger = logging.getLogger("xhub.db")

_SCHEMA = """
create table if not exists kv (
    bucket text not null,
    key blob not null,
    value blob not null,
    primary key (bucket, key)
) without rowid
"""


class SqliteBucket:
    def __init__(self, engine: "SqliteEngine", name: str) -> None:
        self._engine = engine
        self.name = name

    def put(self, key: bytes, value: bytes) -> None:
        self._engine.run(
            "kv.put",
            """
            insert into kv (bucket, key, value) values (?, ?, ?)
            on conflict (bucket, key) do update set value = excluded.value
            """,
            [self.name, bytes(key), bytes(value)],
            key=key,
        )

    def get(self, key: bytes) -> bytes | None:
        row = self._engine.run(
            "kv.get",
            "select value from kv where bucket = ? and key = ?",
            [self.name, bytes(key)],
            fetch="one",
            key=key,
        )
        return bytes(row["value"]) if row else None

    def delete(self, key: bytes) -> None:
        self._engine.run(
            "kv.delete",
            "delete from kv where bucket = ? and key = ?",
            [self.name, bytes(key)],
            key=key,
        )

    def scan_prefix(self, prefix: bytes) -> List[Entry]:
        upper = prefix_successor(bytes(prefix))
        if upper is None:
            sql = "select key, value from kv where bucket = ? and key >= ? order by key"
            params = [self.name, bytes(prefix)]
        else:
            sql = "select key, value from kv where bucket = ? and key >= ? and key < ? order by key"
            params = [self.name, bytes(prefix), upper]
        rows = self._engine.run("kv.scan_prefix", sql, params, fetch="all", key=prefix)
        return [(bytes(row["key"]), bytes(row["value"])) for row in rows]


class SqliteEngine:
    """One sqlite file holding every bucket in a single ``kv`` table.

    A single connection is shared behind a lock; every call runs in its own
    transaction.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            with self._conn:
                if self.path != ":memory:":
                    self._conn.execute("pragma journal_mode=wal")
                self._conn.execute(_SCHEMA)
        except sqlite3.Error as exc:
            raise StorageFailure(f"Could not open sqlite database: {exc}", detail={"path": self.path}) from exc
        logger.info("sqlite_open path=%s", self.path)

    def bucket(self, name: str) -> SqliteBucket:
        return SqliteBucket(self, name)

    def run(
        self,
        query_name: str,
        sql: str,
        params: Iterable[Any],
        fetch: str | None = None,
        key: bytes | None = None,
    ):
        with self._lock:
            try:
                with self._conn:
                    if fetch == "one":
                        return fetch_one(self._conn, sql, params, query_name=query_name)
                    if fetch == "all":
                        return fetch_all(self._conn, sql, params, query_name=query_name)
                    return execute(self._conn, sql, params, query_name=query_name)
            except sqlite3.Error as exc:
                logger.error("sqlite_error query=%s key=%s error=%s", query_name, key_text(key), exc)
                raise StorageFailure(f"{query_name} failed: {exc}", key_text(key)) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()
