import asyncio
from contextlib import suppress
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from geoattend.db import engine
from geoattend.errors import ApiError, error_response
from geoattend.logging_utils import bind_tenant, request_id_var, setup_json_logging
from geoattend.routers import admin, attendance
from geoattend.services.closeout_sweep import sweep_expired_pending
from geoattend.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from geoattend.settings import get_cors_origins, get_settings, get_sweep_interval_seconds

setup_json_logging()
logger = logging.getLogger("geoattend.request")
sweep_logger = logging.getLogger("geoattend.sweep")
settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-Id") or str(uuid4())
    request.state.request_id = request_id
    request.state.actor = getattr(request.state, "actor", "system")
    request.state.actor_id = getattr(request.state, "actor_id", "system")
    request_id_token = request_id_var.set(request_id)
    bind_tenant(None)

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        latency_ms = round((time.perf_counter() - start) * 1000, 2)
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "tenant_id": getattr(request.state, "tenant_id", None),
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": latency_ms,
                "actor": getattr(request.state, "actor", "system"),
                "actor_id": getattr(request.state, "actor_id", "system"),
            },
        )
        request_id_var.reset(request_id_token)


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    status_code = exc.status_code
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        429: "TOO_MANY_ATTEMPTS",
    }
    code = code_map.get(status_code, "HTTP_ERROR")
    message = str(exc.detail) if exc.detail else "Request failed."
    return error_response(
        request,
        status_code=status_code,
        code=code,
        message=message,
    )


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    return error_response(
        request,
        status_code=422,
        code="VALIDATION_ERROR",
        message=str(exc.errors()),
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "unhandled_error",
        extra={
            "request_id": getattr(request.state, "request_id", "unknown"),
            "path": request.url.path,
            "method": request.method,
        },
    )
    return error_response(
        request,
        status_code=500,
        code="INTERNAL_ERROR",
        message="Unexpected server error.",
    )


app.include_router(attendance.router)
app.include_router(admin.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


async def _closeout_sweep_loop(stop_event: asyncio.Event) -> None:
    interval_seconds = get_sweep_interval_seconds()
    batch_size = max(1, int(settings.closeout_sweep_batch_size))
    while not stop_event.is_set():
        try:
            now_utc = datetime.now(timezone.utc)
            settled = await asyncio.to_thread(sweep_expired_pending, now_utc, limit=batch_size)
        except Exception:
            sweep_logger.exception("closeout_sweep_tick_failed")
        else:
            if settled:
                sweep_logger.info(
                    "closeout_sweep_tick",
                    extra={
                        "settled": len(settled),
                        "sessions_closed": sum(1 for item in settled if item.session_closed),
                    },
                )

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        logger.info(
            "schema_guard_ok",
            extra=result.to_dict(),
        )
        return

    logger.error(
        "schema_guard_failed",
        extra=result.to_dict(),
    )
    if settings.schema_guard_strict:
        joined_issues = "; ".join(result.issues)
        raise RuntimeError(f"Runtime schema guard failed: {joined_issues}")


@app.on_event("startup")
async def start_closeout_sweep() -> None:
    if not settings.closeout_sweep_enabled:
        return
    if getattr(app.state, "closeout_sweep_task", None) is not None:
        return

    stop_event = asyncio.Event()
    task = asyncio.create_task(_closeout_sweep_loop(stop_event))
    app.state.closeout_sweep_stop_event = stop_event
    app.state.closeout_sweep_task = task
    sweep_logger.info(
        "closeout_sweep_started",
        extra={
            "interval_seconds": get_sweep_interval_seconds(),
            "batch_size": settings.closeout_sweep_batch_size,
        },
    )


@app.on_event("shutdown")
async def stop_closeout_sweep() -> None:
    stop_event: asyncio.Event | None = getattr(app.state, "closeout_sweep_stop_event", None)
    task: asyncio.Task[None] | None = getattr(app.state, "closeout_sweep_task", None)
    if stop_event is not None:
        stop_event.set()
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    app.state.closeout_sweep_stop_event = None
    app.state.closeout_sweep_task = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "closeout_sweep": {
            "enabled": settings.closeout_sweep_enabled,
            "running": getattr(app.state, "closeout_sweep_task", None) is not None,
            "interval_seconds": get_sweep_interval_seconds(),
        },
    }
