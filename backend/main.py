# main.py — Incident Ledger API Gateway
# Features:
# - Request correlation IDs
# - Security headers
# - Domain error mapping (NotFound and Forbidden look identical to callers)
# - Verification tokens redacted from request logs
# - Health check with DB verification

import os
import re
import uuid
import time
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from sqlalchemy import text

from database import init_db, close_db, get_db_session
from exceptions import (
    IncidentLedgerError, IncidentNotFoundError, IncidentAccessDeniedError,
    ConflictRetryError, ContentValidationError, PUBLIC_NOT_FOUND,
)

# Logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("incident-ledger")

VERSION = "1.0.0"
_VERIFY_PATH = re.compile(r"^(/api/v1/verify/).+")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Incident Ledger...")
    await init_db()
    yield
    logger.info("Shutting down Incident Ledger...")
    await close_db()


app = FastAPI(
    title="Incident Ledger",
    description="Versioned cybersecurity incident register with public token verification",
    version=VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ============================================================
# CORS
# ============================================================

ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv(
        "CORS_ORIGINS",
        "http://localhost:3000,http://localhost:5173"
    ).split(",")
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Correlation-ID"],
    expose_headers=["X-Request-ID", "X-Correlation-ID"],
)


# ============================================================
# MIDDLEWARE: Correlation IDs + Timing
# ============================================================

def redact_path(path: str) -> str:
    """Tokens are bearer credentials; keep them out of access logs."""
    return _VERIFY_PATH.sub(r"\1[redacted]", path)


@app.middleware("http")
async def correlation_id_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    correlation_id = request.headers.get("X-Correlation-ID", request_id)
    request.state.request_id = request_id
    request.state.correlation_id = correlation_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Correlation-ID"] = correlation_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"

    logger.info(
        f"{request.method} {redact_path(request.url.path)} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# MIDDLEWARE: Security Headers
# ============================================================

@app.middleware("http")
async def security_headers_middleware(request: Request, call_next):
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Referrer-Policy"] = "no-referrer"
    response.headers["Cache-Control"] = "no-store"
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

@app.exception_handler(IncidentLedgerError)
async def incident_error_handler(request: Request, exc: IncidentLedgerError):
    request_id = getattr(request.state, "request_id", None)

    if isinstance(exc, (IncidentNotFoundError, IncidentAccessDeniedError)):
        # Same body for both so other organisations' incidents stay invisible
        return JSONResponse(status_code=404, content={"detail": PUBLIC_NOT_FOUND})

    if exc.severity == "critical":
        logger.critical(f"{exc.code} {exc.message} {exc.log_context()} [rid={request_id}]")
    else:
        logger.warning(f"{exc.code} {exc.message} {exc.log_context()} [rid={request_id}]")

    headers = {"Retry-After": "1"} if isinstance(exc, ConflictRetryError) else None
    return JSONResponse(
        status_code=exc.http_status,
        content={"detail": exc.public_detail, "code": exc.code, "request_id": request_id},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = []
    for err in exc.errors():
        errors.append({
            "type": str(err.get("type", "unknown")),
            "loc": list(err.get("loc", [])),
            "msg": str(err.get("msg", "")),
        })

    return JSONResponse(
        status_code=422,
        content={
            "detail": errors,
            "code": ContentValidationError.code,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "request_id": getattr(request.state, "request_id", None),
        },
    )


# ============================================================
# ROUTERS
# ============================================================

from routers import incidents, verify

app.include_router(incidents.router)
app.include_router(verify.router)


# ============================================================
# HEALTH & ROOT
# ============================================================

@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    db_status = "unknown"
    try:
        async for db in get_db_session():
            await db.execute(text("SELECT 1"))
            db_status = "connected"
            break
    except Exception as e:
        logger.warning(f"Health check database probe failed: {e.__class__.__name__}")
        db_status = "error"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "environment": os.getenv("ENVIRONMENT", "development"),
        "database": db_status,
    }


@app.get("/")
async def root():
    return {
        "name": "Incident Ledger",
        "version": VERSION,
        "docs": "/docs",
        "health": "/health",
        "verify": "/api/v1/verify/{token}",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=os.getenv("ENVIRONMENT") == "development",
        workers=int(os.getenv("WORKERS", 1)),
    )
