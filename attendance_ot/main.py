import asyncio
from datetime import datetime, timezone
import logging
import time
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from attendance_ot.db import engine
from attendance_ot.dependencies import get_repository
from attendance_ot.errors import ApiError, error_response
from attendance_ot.logging_utils import setup_json_logging
from attendance_ot.routers import attendance, ot, payroll
from attendance_ot.services.reconciliation import ReconciliationScheduler
from attendance_ot.services.schema_guard import SchemaGuardResult, verify_runtime_schema
from attendance_ot.settings import get_cors_origins, get_settings

setup_json_logging(service="attendance-ot")
logger = logging.getLogger("attendance_ot.request")
lifecycle_logger = logging.getLogger("attendance_ot.lifecycle")
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

    start = time.perf_counter()
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        response.headers["X-Request-Id"] = request_id
        return response
    finally:
        logger.info(
            "request_complete",
            extra={
                "request_id": request_id,
                "path": request.url.path,
                "method": request.method,
                "status_code": status_code,
                "latency_ms": round((time.perf_counter() - start) * 1000, 2),
                "actor": getattr(request.state, "actor", "anonymous"),
                "actor_id": getattr(request.state, "actor_id", None),
                "event_id": getattr(request.state, "event_id", None),
                "location_status": getattr(request.state, "location_status", None),
            },
        )


@app.exception_handler(ApiError)
async def handle_api_error(request: Request, exc: ApiError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(
            "api_error",
            extra={"request_id": getattr(request.state, "request_id", "unknown"), "code": exc.code},
        )
    return error_response(
        request,
        status_code=exc.status_code,
        code=exc.code,
        message=exc.message,
    )


@app.exception_handler(HTTPException)
async def handle_http_exception(request: Request, exc: HTTPException) -> JSONResponse:
    code_map = {
        401: "INVALID_TOKEN",
        403: "FORBIDDEN",
        404: "NOT_FOUND",
        405: "METHOD_NOT_ALLOWED",
    }
    return error_response(
        request,
        status_code=exc.status_code,
        code=code_map.get(exc.status_code, "HTTP_ERROR"),
        message=str(exc.detail) if exc.detail else "Request failed.",
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
app.include_router(ot.router)
app.include_router(payroll.router)


def _default_schema_guard_result() -> SchemaGuardResult:
    return SchemaGuardResult(
        ok=False,
        checked_at_utc=datetime.now(timezone.utc),
        issues=["SCHEMA_GUARD_NOT_RUN"],
        warnings=[],
    )


@app.on_event("startup")
async def run_schema_guard() -> None:
    result = await asyncio.to_thread(verify_runtime_schema, engine)
    app.state.schema_guard_result = result
    if result.ok:
        lifecycle_logger.info("schema_guard_ok", extra=result.to_dict())
        return

    lifecycle_logger.error("schema_guard_failed", extra=result.to_dict())
    if settings.schema_guard_strict:
        raise RuntimeError(f"Runtime schema guard failed: {'; '.join(result.issues)}")


@app.on_event("startup")
async def start_reconciliation_scheduler() -> None:
    if not settings.reconciliation_enabled:
        lifecycle_logger.info("reconciliation_scheduler_disabled")
        return
    if getattr(app.state, "reconciliation_scheduler", None) is not None:
        return

    scheduler = ReconciliationScheduler(get_repository())
    app.state.reconciliation_scheduler = scheduler
    await scheduler.start()


@app.on_event("shutdown")
async def stop_reconciliation_scheduler() -> None:
    scheduler: ReconciliationScheduler | None = getattr(app.state, "reconciliation_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()
    app.state.reconciliation_scheduler = None


@app.get("/health")
def health() -> dict[str, Any]:
    schema_guard_result: SchemaGuardResult = getattr(app.state, "schema_guard_result", _default_schema_guard_result())
    scheduler: ReconciliationScheduler | None = getattr(app.state, "reconciliation_scheduler", None)
    return {
        "status": "ok",
        "schema_guard": schema_guard_result.to_dict(),
        "reconciliation": scheduler.status() if scheduler is not None else {"running": False},
    }
