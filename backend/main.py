# main.py - Compliance Engine API
# Wires the engine modules to HTTP:
# - X-Request-ID / X-Correlation-ID propagation, per-request timing log
# - Domain errors mapped to 404 / 409 / 422 / 503 (+ Retry-After)
# - Health check bounded by the store timeout

import os
import json
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

import database
from database import engine, init_db, close_db, get_db_session, bounded
from errors import ComplianceError, TransientError
from routers import (
    standards, requirements, tasks, risks, documents, users,
    campaigns, task_instances, audit_logs,
)
from telemetry import setup_telemetry

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("compliance-engine")

VERSION = "1.0.0"
SERVICE_NAME = "Compliance Engine"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"{SERVICE_NAME} v{VERSION} starting (store timeout {database.STORE_TIMEOUT_SECONDS}s)")
    await init_db()
    setup_telemetry(app, engine)
    yield
    logger.info(f"{SERVICE_NAME} shutting down")
    await close_db()


app = FastAPI(
    title=SERVICE_NAME,
    description="Standards, requirements, task templates and audit campaigns with exactly-once task instantiation",
    version=VERSION,
    lifespan=lifespan,
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    # Acting user and retry key travel as headers
    allow_headers=["Content-Type", "X-Request-ID", "X-Correlation-ID", "X-User-ID", "Idempotency-Key"],
    expose_headers=["X-Request-ID", "X-Correlation-ID", "Retry-After"],
)


# ============================================================
# MIDDLEWARE
# ============================================================

@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """Request/correlation ids end up in OperationContext, audit rows and error bodies."""
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    request.state.correlation_id = request.headers.get("X-Correlation-ID") or request_id

    start = time.perf_counter()
    response = await call_next(request)
    elapsed = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = request.state.correlation_id
    response.headers["X-Response-Time"] = f"{elapsed:.4f}s"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Cache-Control"] = "no-store"

    actor = request.headers.get("X-User-ID") or "-"
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"({elapsed:.3f}s) [rid={request_id[:8]} user={actor}]"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, content: dict, headers: dict = None) -> JSONResponse:
    content["request_id"] = getattr(request.state, "request_id", None)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(ComplianceError)
async def compliance_error_handler(request: Request, exc: ComplianceError):
    headers = None
    if isinstance(exc, TransientError):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
        logger.warning(f"Transient failure on {request.method} {request.url.path}: {exc.code} {exc.message}")
    elif exc.http_status == 409:
        logger.info(f"Conflict on {request.method} {request.url.path}: {exc.code} {exc.message}")
    return _error_response(request, exc.http_status, exc.to_dict(), headers)


def _json_safe(value):
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        item = {"type": str(err.get("type", "unknown")), "loc": list(err.get("loc", [])), "msg": str(err.get("msg", ""))}
        if "input" in err:
            item["input"] = _json_safe(err["input"])
        errors.append(item)
    return _error_response(request, 422, {"detail": errors, "code": "CE-STORE-003"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)
    return _error_response(request, 500, {"detail": "Internal server error"})


# ============================================================
# ROUTERS
# ============================================================

for module in (standards, requirements, tasks, risks, documents, users, campaigns, task_instances, audit_logs):
    app.include_router(module.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    """Liveness plus a bounded round trip to the store"""
    try:
        await bounded(db.execute(text("SELECT 1")), "health check")
        db_status = "connected"
    except TransientError as e:
        db_status = f"unavailable: {e.message[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
        "store_timeout_seconds": database.STORE_TIMEOUT_SECONDS,
    }


@app.get("/")
async def root():
    return {
        "name": SERVICE_NAME,
        "version": VERSION,
        "description": "Compliance standards, task templates and audit campaigns",
        "docs": "/docs",
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") != "production",
        workers=int(os.getenv("WORKERS", 1)),
    )
