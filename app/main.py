"""FastAPI app serving the study/trial/file resource hierarchy."""

from __future__ import annotations

import functools
import logging
import sys
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import anyio
from fastapi import APIRouter, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import HTMLResponse, JSONResponse, Response

from app.config import Settings
from app.db import get_db_ms, get_db_query_log, get_db_stats, reset_db_stats
from app.stores import MemoryEngine
from app.stores_db import DbEngine
from app.stores_sqlite import SqliteEngine
from app.views import build_env, render_study_view
from resource_store import ResourceStore, ScopedResourceTable
from xhub.collection import AssemblyError, render_collection
from xhub.key_codec import InvalidKey, InvalidPathSegment, decode, validate_segment
from xhub.ordered import DataInconsistency, Engine, StorageFailure
from xhub.payload import PayloadError, split_object

logger = logging.getLogger("xhub")
router = APIRouter()


@dataclass
class RequestError(Exception):
    code: str
    message: str
    path: str | None = None
    status: int = 400

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


def open_engine(settings: Settings) -> Engine:
    if settings.backend == "memory":
        return MemoryEngine()
    if settings.backend == "postgres":
        return DbEngine(settings.database_url)
    return SqliteEngine(settings.db_path)


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _store(request: Request) -> ResourceStore:
    return request.app.state.store


async def _run(fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
    return await anyio.to_thread.run_sync(functools.partial(fn, *args, **kwargs))


Body = Dict[str, Tuple[Any, bytes]]


async def _read_body(request: Request) -> Body:
    raw = await request.body()
    try:
        return split_object(raw)
    except PayloadError as exc:
        raise RequestError("INVALID_BODY", f"Invalid request body: {exc}")


def _name_from_body(body: Body, table: ScopedResourceTable, scope_names: tuple[str, ...]) -> str:
    """Resolve the new resource's name; the route decides where it lives.

    ``id`` may be a bare name or a full resource path. A full path has to
    point at this route's kind under this route's parent.
    """
    raw_id = body["id"][0] if "id" in body else None
    if not isinstance(raw_id, str) or not raw_id:
        raise RequestError("INVALID_BODY", "id is required", "id")
    if not raw_id.startswith("/"):
        return validate_segment(raw_id, table.kind)
    try:
        path = decode(raw_id)
    except InvalidKey as exc:
        raise RequestError("INVALID_BODY", f"id is not a resource path: {exc.message}", "id")
    if path.shape != table.shape or path.parent != table.scope(*scope_names):
        raise RequestError("PATH_MISMATCH", f"id {raw_id!r} does not belong under this route", "id")
    return path.name


def _payload_from_body(body: Body) -> bytes:
    """Raw bytes of ``data`` exactly as sent; a missing member stores ``null``."""
    if "data" not in body:
        return b"null"
    return body["data"][1]


async def _create(request: Request, table: ScopedResourceTable, *scope_names: str) -> JSONResponse:
    table.scope(*scope_names)
    body = await _read_body(request)
    name = _name_from_body(body, table, scope_names)
    payload = _payload_from_body(body)
    path = await _run(table.create, *scope_names, name, payload=payload)
    return _ok_response({"id": str(path), "url": _store(request).url_for(path)}, status=201)


async def _get(table: ScopedResourceTable, *names: str) -> Response:
    table.path(*names)
    raw = await _run(table.get, *names)
    if raw is None:
        return Response(status_code=204)
    return Response(content=raw, media_type="application/json")


async def _list(table: ScopedResourceTable, *scope_names: str) -> Response:
    items = await _run(table.list, *scope_names)
    return Response(content=render_collection(items), media_type="application/json")


async def _delete(request: Request, table: ScopedResourceTable, *names: str) -> JSONResponse:
    path = table.path(*names)
    removed = await _run(table.delete, *names)
    return _ok_response({"id": str(path), "url": _store(request).url_for(path), "deleted": removed})


@router.get("/health")
async def health(request: Request) -> dict:
    return {"ok": True, "backend": request.app.state.settings.backend}


@router.post("/studies")
async def create_study(request: Request):
    return await _create(request, _store(request).studies)


@router.get("/studies")
async def list_studies(request: Request):
    return await _list(_store(request).studies)


@router.get("/studies/{study}")
async def get_study(request: Request, study: str):
    return await _get(_store(request).studies, study)


@router.delete("/studies/{study}")
async def delete_study(request: Request, study: str):
    return await _delete(request, _store(request).studies, study)


@router.get("/studies/{study}/view")
async def view_study(request: Request, study: str):
    _store(request).studies.path(study)
    html = await _run(render_study_view, request.app.state.templates, _store(request), study)
    if html is None:
        return Response(status_code=204)
    return HTMLResponse(html)


@router.post("/studies/{study}/trials")
async def create_trial(request: Request, study: str):
    return await _create(request, _store(request).trials, study)


@router.get("/studies/{study}/trials")
async def list_trials(request: Request, study: str):
    return await _list(_store(request).trials, study)


@router.get("/studies/{study}/trials/{trial}")
async def get_trial(request: Request, study: str, trial: str):
    return await _get(_store(request).trials, study, trial)


@router.delete("/studies/{study}/trials/{trial}")
async def delete_trial(request: Request, study: str, trial: str):
    return await _delete(request, _store(request).trials, study, trial)


@router.post("/studies/{study}/files")
async def create_study_file(request: Request, study: str):
    return await _create(request, _store(request).study_files, study)


@router.get("/studies/{study}/files")
async def list_study_files(request: Request, study: str):
    return await _list(_store(request).study_files, study)


@router.get("/studies/{study}/files/{file}")
async def get_study_file(request: Request, study: str, file: str):
    return await _get(_store(request).study_files, study, file)


@router.delete("/studies/{study}/files/{file}")
async def delete_study_file(request: Request, study: str, file: str):
    return await _delete(request, _store(request).study_files, study, file)


@router.post("/files/{study}/{trial}")
async def create_trial_file(request: Request, study: str, trial: str):
    return await _create(request, _store(request).trial_files, study, trial)


@router.get("/files/{study}/{trial}")
async def list_trial_files(request: Request, study: str, trial: str):
    return await _list(_store(request).trial_files, study, trial)


@router.get("/files/{study}/{trial}/{file}")
async def get_trial_file(request: Request, study: str, trial: str, file: str):
    return await _get(_store(request).trial_files, study, trial, file)


@router.delete("/files/{study}/{trial}/{file}")
async def delete_trial_file(request: Request, study: str, trial: str, file: str):
    return await _delete(request, _store(request).trial_files, study, trial, file)


def _register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestError)
    async def request_error_handler(request: Request, exc: RequestError):
        return _error_response(exc.code, exc.message, exc.path, status=exc.status)

    @app.exception_handler(InvalidPathSegment)
    async def invalid_segment_handler(request: Request, exc: InvalidPathSegment):
        return _error_response(
            "INVALID_PATH_SEGMENT",
            exc.message,
            exc.kind,
            detail={"segment": exc.segment},
            status=400,
        )

    @app.exception_handler(StorageFailure)
    async def storage_failure_handler(request: Request, exc: StorageFailure):
        logger.error("storage_failure path=%s key=%s error=%s detail=%s", request.url.path, exc.key, exc.message, exc.detail)
        return _error_response("STORAGE_FAILURE", exc.message, exc.key, detail=exc.detail or None, status=500)

    @app.exception_handler(DataInconsistency)
    async def inconsistency_handler(request: Request, exc: DataInconsistency):
        logger.error("data_inconsistency path=%s key=%s error=%s", request.url.path, exc.key, exc.message)
        return _error_response("DATA_INCONSISTENCY", exc.message, exc.key, detail=exc.detail or None, status=500)

    @app.exception_handler(AssemblyError)
    async def assembly_error_handler(request: Request, exc: AssemblyError):
        logger.error("assembly_error path=%s key=%s error=%s", request.url.path, exc.key, exc.message)
        return _error_response("ASSEMBLY_ERROR", exc.message, exc.key, status=500)

    @app.exception_handler(PayloadError)
    async def payload_error_handler(request: Request, exc: PayloadError):
        logger.error("payload_invalid path=%s error=%s", request.url.path, exc)
        return _error_response("PAYLOAD_INVALID", str(exc), status=500)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("unhandled_error path=%s", request.url.path)
        return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


def create_app(
    settings: Settings | None = None,
    engine: Engine | None = None,
    clock: Callable[[], datetime] | None = None,
) -> FastAPI:
    """Build the app; with no arguments settings come from the environment."""
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)
    owns_engine = engine is None
    engine = engine or open_engine(settings)
    store_kwargs = {"clock": clock} if clock is not None else {}
    store = ResourceStore(engine, settings.base_url, version=settings.api_version, **store_kwargs)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("xhub_start addr=%s backend=%s base_url=%s", settings.addr, settings.backend, settings.base_url)
        yield
        if owns_engine:
            engine.close()
        logger.info("xhub_stop")

    app = FastAPI(title="xhub", version=settings.api_version, lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.templates = build_env()

    @app.middleware("http")
    async def timing_middleware(request: Request, call_next):
        reset_db_stats()
        start = time.perf_counter()
        response = await call_next(request)
        total_ms = (time.perf_counter() - start) * 1000
        db_ms = get_db_ms()
        db_stats = get_db_stats()
        route = request.scope.get("route")
        route_name = getattr(route, "name", None) or "unknown"
        logger.info(
            "%s %s %s route=%s total_ms=%.1f db_ms=%.1f db_q=%s",
            request.method,
            request.url.path,
            response.status_code,
            route_name,
            total_ms,
            db_ms,
            db_stats.get("queries", 0),
        )
        if total_ms >= settings.req_slow_ms:
            logger.warning(
                "slow_request method=%s path=%s route=%s total_ms=%.1f db_ms=%.1f status=%s queries=%s",
                request.method,
                request.url.path,
                route_name,
                total_ms,
                db_ms,
                response.status_code,
                get_db_query_log(),
            )
        return response

    _register_exception_handlers(app)
    app.include_router(router)
    return app
