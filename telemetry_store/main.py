import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from threading import Event

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from telemetry_store.auth import AuthUser, require_admin_user, require_api_user
from telemetry_store.config import settings
from telemetry_store.db import SessionLocal, get_db, init_db
from telemetry_store.errors import CorruptPayload, NotFound, SessionStoreError
from telemetry_store.events import AUDIT_LOGGER, REQUEST_LOGGER, get_event_logger, log_event, trace_id
from telemetry_store.maintenance import cleanup_once
from telemetry_store.schemas import (
    BatchUploadResponse,
    ErrorResponse,
    SessionListResponse,
    SessionPayloadItem,
    SessionPayloadResponse,
    SessionPayloadsResponse,
    SessionRecordResponse,
)
from telemetry_store.service import SessionStoreService, build_service
from telemetry_store.tracing import setup_tracing

request_logger = get_event_logger(REQUEST_LOGGER)
audit_logger = get_event_logger(AUDIT_LOGGER)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        init_db()
    app.state.service.open()
    stop_event = asyncio.Event()
    tasks: list[asyncio.Task] = []

    async def _periodic_cleanup_loop() -> None:
        while not stop_event.is_set():
            try:
                with SessionLocal() as db:
                    await asyncio.to_thread(cleanup_once, db, app.state.service.storage)
            except Exception as exc:
                log_event(request_logger, {"event": "cleanup_error", "detail": str(exc), "error_class": "maintenance_error"})
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=max(1, settings.cleanup_interval_seconds))
            except asyncio.TimeoutError:
                pass

    if settings.cleanup_enabled:
        tasks.append(asyncio.create_task(_periodic_cleanup_loop()))
    yield
    stop_event.set()
    for task in tasks:
        await task
    # Waits for running chunk writes; the next startup reopens the pool.
    await asyncio.to_thread(app.state.service.close)


app = FastAPI(title=settings.app_name, lifespan=lifespan)
app.state.service = build_service()
setup_tracing(app)


def get_service(request: Request) -> SessionStoreService:
    return request.app.state.service


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def _session_id(request: Request) -> str | None:
    return request.path_params.get("session_id")


def _route_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None and hasattr(route, "path"):
        return str(route.path)
    return request.url.path


def _error_code_for_status(status_code: int) -> str:
    mapping = {
        400: "bad_request",
        401: "missing_credentials",
        403: "forbidden",
        404: "not_found",
        409: "conflict",
        422: "validation_error",
        500: "internal_error",
        503: "unavailable",
    }
    return mapping.get(status_code, f"http_{status_code}")


def _status_for_store_error(exc: SessionStoreError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, CorruptPayload):
        return 500
    return 503


def _error_response(request: Request, status_code: int, detail: str, error_code: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": detail,
            "error_code": error_code,
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "trace_id": trace_id(),
        },
        headers=headers or {},
    )


def _log_request_error(request: Request, status_code: int, error_class: str, detail: str) -> None:
    log_event(
        request_logger,
        {
            "event": "request_error",
            "request_id": _request_id(request),
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": status_code,
            "error_class": error_class,
            "detail": detail,
        },
    )


COMMON_ERROR_RESPONSES = {
    401: {"model": ErrorResponse, "description": "Missing credentials"},
    403: {"model": ErrorResponse, "description": "Forbidden"},
    500: {"model": ErrorResponse, "description": "Internal server error"},
}


@app.middleware("http")
async def request_context_and_logging(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    start = time.perf_counter()

    response = await call_next(request)
    duration_ms = round((time.perf_counter() - start) * 1000, 2)
    response.headers["X-Request-ID"] = request_id
    response.headers["X-TSS-App-Version"] = settings.app_version
    request.app.state.service.metrics.http_request_duration_seconds.labels(
        method=request.method,
        route=_route_label(request),
        status_code=str(response.status_code),
    ).observe(duration_ms / 1000.0)

    log_event(
        request_logger,
        {
            "event": "request_completed",
            "request_id": request_id,
            "session_id": _session_id(request),
            "method": request.method,
            "path": request.url.path,
            "status_code": response.status_code,
            "duration_ms": duration_ms,
        },
    )
    return response


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    error_class = "client_error" if 400 <= exc.status_code < 500 else "server_error"
    _log_request_error(request, exc.status_code, error_class, str(exc.detail))
    return _error_response(
        request, exc.status_code, str(exc.detail), _error_code_for_status(exc.status_code), headers=exc.headers
    )


@app.exception_handler(SessionStoreError)
async def store_error_handler(request: Request, exc: SessionStoreError):
    status_code = _status_for_store_error(exc)
    _log_request_error(request, status_code, exc.error_code, str(exc))
    return _error_response(request, status_code, str(exc), exc.error_code)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    _log_request_error(request, 500, "unhandled_exception", str(exc))
    return _error_response(request, 500, "internal server error", "internal_error")


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "app_name": settings.app_name,
        "app_version": settings.app_version,
        "storage_backend": settings.storage_backend,
    }


@app.get("/metrics")
def metrics(service: SessionStoreService = Depends(get_service)) -> Response:
    return service.metrics.response()


@app.post("/v1/admin/cleanup", responses={**COMMON_ERROR_RESPONSES})
def run_cleanup(
    request: Request,
    user: AuthUser = Depends(require_admin_user),
    db: Session = Depends(get_db),
    service: SessionStoreService = Depends(get_service),
) -> dict:
    stats = cleanup_once(db, service.storage)
    log_event(
        audit_logger,
        {"event": "audit", "action": "cleanup", "request_id": _request_id(request), "user_id": user.user_id, **stats},
    )
    return {"status": "ok", "requested_by": user.user_id, **stats}


async def _watch_disconnect(request: Request, cancel_event: Event) -> None:
    while not cancel_event.is_set():
        if await request.is_disconnected():
            cancel_event.set()
            return
        await asyncio.sleep(0.5)


@app.post("/v1/sessions", response_model=BatchUploadResponse, responses={**COMMON_ERROR_RESPONSES})
async def upload_sessions(
    request: Request,
    files: list[UploadFile] = File(...),
    include_document: bool = Query(default=True),
    user: AuthUser = Depends(require_api_user),
    service: SessionStoreService = Depends(get_service),
) -> BatchUploadResponse:
    items = [(upload.filename or "", await upload.read()) for upload in files]

    cancel_event = Event()
    watcher = asyncio.create_task(_watch_disconnect(request, cancel_event))
    try:
        batch = await asyncio.to_thread(service.upload_batch, items, user.user_id, cancel_event)
    finally:
        watcher.cancel()

    log_event(
        audit_logger,
        {
            "event": "audit",
            "action": "session_upload",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "session_ids": [result.session_id for result in batch.results if result.session_id],
            **batch.counts,
        },
    )
    return BatchUploadResponse.model_validate(
        {
            "results": [result.as_dict(include_document=include_document) for result in batch.results],
            "counts": batch.counts,
        }
    )


@app.get("/v1/sessions", response_model=SessionListResponse, responses={**COMMON_ERROR_RESPONSES})
def list_sessions(
    limit: int | None = Query(default=None, gt=0),
    user: AuthUser = Depends(require_api_user),
    service: SessionStoreService = Depends(get_service),
) -> SessionListResponse:
    records = service.list_sessions(user.user_id, limit=limit)
    return SessionListResponse(sessions=[SessionRecordResponse.from_record(record) for record in records])


@app.get("/v1/sessions/payloads", response_model=SessionPayloadsResponse, responses={**COMMON_ERROR_RESPONSES})
def list_session_payloads(
    request: Request,
    limit: int | None = Query(default=None, gt=0),
    user: AuthUser = Depends(require_api_user),
    service: SessionStoreService = Depends(get_service),
) -> SessionPayloadsResponse:
    results = service.fetch_all_payloads(user.user_id, limit=limit)
    items = [
        SessionPayloadItem(
            session_id=result.session_id,
            content_digest=result.content_digest,
            file_name=result.file_name,
            document=result.document,
            error=result.error,
            error_code=result.error_code,
        )
        for result in results
    ]
    loaded = sum(1 for result in results if result.ok)
    log_event(
        audit_logger,
        {
            "event": "audit",
            "action": "session_bulk_read",
            "request_id": _request_id(request),
            "user_id": user.user_id,
            "loaded": loaded,
            "failed": len(results) - loaded,
        },
    )
    return SessionPayloadsResponse(items=items, loaded=loaded, failed=len(results) - loaded)


@app.get(
    "/v1/sessions/{session_id}",
    response_model=SessionRecordResponse,
    responses={**COMMON_ERROR_RESPONSES, 404: {"model": ErrorResponse, "description": "Session not found"}},
)
def get_session(
    session_id: str,
    user: AuthUser = Depends(require_api_user),
    service: SessionStoreService = Depends(get_service),
) -> SessionRecordResponse:
    return SessionRecordResponse.from_record(service.get_session(user.user_id, session_id))


@app.get(
    "/v1/sessions/{session_id}/payload",
    response_model=SessionPayloadResponse,
    responses={
        **COMMON_ERROR_RESPONSES,
        404: {"model": ErrorResponse, "description": "Session not found"},
    },
)
def get_session_payload(
    request: Request,
    session_id: str,
    user: AuthUser = Depends(require_api_user),
    service: SessionStoreService = Depends(get_service),
) -> SessionPayloadResponse:
    document = service.fetch_session_payload(user.user_id, session_id)
    log_event(
        audit_logger,
        {
            "event": "audit",
            "action": "session_read",
            "request_id": _request_id(request),
            "session_id": session_id,
            "user_id": user.user_id,
        },
    )
    return SessionPayloadResponse(session_id=session_id, document=document)
