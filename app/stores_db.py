"""Postgres engine for deployments that share a database server."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List

import psycopg2

from app.db import PgPool, execute, fetch_all, fetch_one
from xhub.ordered import Entry, StorageFailure, key_text, prefix_successor

logger = logging.getLogger("xhub.db")

_SCHEMA = """
create table if not exists xhub_kv (
    bucket text not null,
    key bytea not null,
    value bytea not null,
    primary key (bucket, key)
)
"""


class DbBucket:
    def __init__(self, engine: "DbEngine", name: str) -> None:
        self._engine = engine
        self.name = name

    def put(self, key: bytes, value: bytes) -> None:
        self._engine.run(
            "xhub_kv.put",
            """
            insert into xhub_kv (bucket, key, value) values (%s, %s, %s)
            on conflict (bucket, key) do update set value = excluded.value
            """,
            [self.name, psycopg2.Binary(bytes(key)), psycopg2.Binary(bytes(value))],
            key=key,
        )

    def get(self, key: bytes) -> bytes | None:
        row = self._engine.run(
            "xhub_kv.get",
            "select value from xhub_kv where bucket = %s and key = %s",
            [self.name, psycopg2.Binary(bytes(key))],
            fetch="one",
            key=key,
        )
        return bytes(row["value"]) if row else None

    def delete(self, key: bytes) -> None:
        self._engine.run(
            "xhub_kv.delete",
            "delete from xhub_kv where bucket = %s and key = %s",
            [self.name, psycopg2.Binary(bytes(key))],
            key=key,
        )

    def scan_prefix(self, prefix: bytes) -> List[Entry]:
        upper = prefix_successor(bytes(prefix))
        params = [self.name, psycopg2.Binary(bytes(prefix))]
        sql = "select key, value from xhub_kv where bucket = %s and key >= %s"
        if upper is not None:
            sql += " and key < %s"
            params.append(psycopg2.Binary(upper))
        sql += " order by key"
        rows = self._engine.run("xhub_kv.scan_prefix", sql, params, fetch="all", key=prefix)
        return [(bytes(row["key"]), bytes(row["value"])) for row in rows]


class DbEngine:
    """Buckets stored as rows of ``xhub_kv``; bytea sorts bytewise."""

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 10) -> None:
        try:
            self._pool = PgPool(dsn, minconn=minconn, maxconn=maxconn)
            with self._pool.get_conn() as conn:
                execute(conn, _SCHEMA, query_name="xhub_kv.schema")
        except psycopg2.Error as exc:
            raise StorageFailure(f"Could not open Postgres database: {exc}") from exc
        logger.info("postgres_open pool_max=%s", maxconn)

    def bucket(self, name: str) -> DbBucket:
        return DbBucket(self, name)

    def run(
        self,
        query_name: str,
        sql: str,
        params: Iterable[Any],
        fetch: str | None = None,
        key: bytes | None = None,
    ):
        try:
            with self._pool.get_conn() as conn:
                if fetch == "one":
                    return fetch_one(conn, sql, params, query_name=query_name)
                if fetch == "all":
                    return fetch_all(conn, sql, params, query_name=query_name)
                return execute(conn, sql, params, query_name=query_name)
        except psycopg2.Error as exc:
            logger.error("postgres_error query=%s key=%s error=%s", query_name, key_text(key), exc)
            raise StorageFailure(f"{query_name} failed: {exc}", key_text(key)) from exc

    def close(self) -> None:
        self._pool.close()
