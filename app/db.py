"""SQL helpers shared by the sqlite and Postgres engines."""

from __future__ import annotations

import contextvars
import logging
import time
from contextlib import contextmanager
from typing import Any, Iterable

from psycopg2.pool import ThreadedConnectionPool

_logger = logging.getLogger("xhub.db")
_query_logger = logging.getLogger("xhub.db.query")
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("xhub_db_stats", default=None)
_DB_QUERY_LOG: contextvars.ContextVar[list | None] = contextvars.ContextVar("xhub_db_query_log", default=None)

SLOW_MS = 200.0


def _empty_stats() -> dict:
    return {"queries": 0, "execute_ms": 0.0, "total_ms": 0.0}


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray, memoryview)):
            raw = bytes(val)
            if len(raw) <= 80 and raw.isascii():
                redacted.append(raw.decode("ascii"))
            else:
                redacted.append(f"<bytes:{len(raw)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}…{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(
    *,
    query_name: str | None,
    params: Iterable[Any] | None,
    elapsed_ms: float,
    rowcount: int | None,
) -> None:
    log = _DB_QUERY_LOG.get()
    if not isinstance(log, list):
        log = []
        _DB_QUERY_LOG.set(log)
    log.append(query_name or "unnamed")
    if elapsed_ms < SLOW_MS and not _query_logger.isEnabledFor(logging.DEBUG):
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.debug("db_query=%s", message)


def reset_db_stats() -> None:
    _DB_STATS.set(_empty_stats())
    _DB_QUERY_LOG.set([])


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return _empty_stats()
    return stats


def get_db_query_log() -> list:
    log = _DB_QUERY_LOG.get()
    if not isinstance(log, list):
        return []
    return log


def add_db_ms(delta: float) -> None:
    # mutate in place so worker threads running a copied context report back
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        stats = _empty_stats()
        _DB_STATS.set(stats)
    stats["total_ms"] += delta
    stats["execute_ms"] += delta
    stats["queries"] += 1


def get_db_ms() -> float:
    return get_db_stats().get("total_ms", 0.0)


def _row_dict(cur, row) -> dict:
    columns = [col[0] for col in cur.description]
    return dict(zip(columns, row))


def _run(conn, sql: str, params: Iterable[Any] | None, query_name: str | None, fetch: str | None):
    start = time.perf_counter()
    cur = conn.cursor()
    try:
        cur.execute(sql, list(params or []))
        if fetch == "one":
            row = cur.fetchone()
            result = _row_dict(cur, row) if row else None
        elif fetch == "all":
            result = [_row_dict(cur, row) for row in cur.fetchall()]
        else:
            result = cur.rowcount
        rowcount = cur.rowcount
    finally:
        cur.close()
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    _log_query(query_name=query_name, params=params, elapsed_ms=elapsed_ms, rowcount=rowcount)
    return result


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    return _run(conn, sql, params, query_name, "one")


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    return _run(conn, sql, params, query_name, "all")


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    return _run(conn, sql, params, query_name, None)


class PgPool:
    """Postgres connection pool; each borrowed connection is one transaction."""

    def __init__(self, dsn: str, minconn: int = 1, maxconn: int = 10) -> None:
        self._pool = ThreadedConnectionPool(minconn, maxconn, dsn=dsn)

    @contextmanager
    def get_conn(self):
        conn = self._pool.getconn()
        _logger.debug("db_conn borrowed")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._pool.putconn(conn)
            _logger.debug("db_conn returned")

    def close(self) -> None:
        self._pool.closeall()

