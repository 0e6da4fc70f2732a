# main.py — PulseStage API
# - Tenant resolution per request (header / subdomain / default)
# - Team-scoped authorization with structured deny bodies
# - Request ids, timing and security headers
# - Health check with DB verification

import os
import uuid
import time
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from database import init_db, close_db, get_db_context
from errors import AuthorizationError, TenantNotFound
from telemetry import setup_telemetry
from tenancy import MULTI_TENANT_MODE, ensure_default_tenant

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("pulsestage")

VERSION = "1.0.0"


def _check_startup_config():
    """Log configuration problems once at startup."""
    jwt_key = os.getenv("JWT_SECRET_KEY", "")
    if len(jwt_key) < 32:
        logger.warning("JWT_SECRET_KEY is not set or shorter than 32 characters")
    if os.getenv("ADMIN_KEY"):
        logger.info("Bootstrap admin key is enabled (X-Admin-Key)")
    if MULTI_TENANT_MODE and not os.getenv("BASE_DOMAIN"):
        logger.warning("MULTI_TENANT_MODE=true but BASE_DOMAIN not set; only the tenant header can resolve tenants")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting PulseStage API v{VERSION}...")
    await init_db()
    if not MULTI_TENANT_MODE:
        async with get_db_context() as db:
            await ensure_default_tenant(db)
    _check_startup_config()
    setup_telemetry(app)
    yield
    logger.info("Shutting down PulseStage API...")
    await close_db()


app = FastAPI(
    title="PulseStage",
    description="Multi-tenant internal Q&A with team-scoped moderation",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000,http://localhost:5173").split(",")
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID", "X-Tenant-Id", "X-Admin-Key"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_middleware(request: Request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    start = time.perf_counter()
    response = await call_next(request)
    duration = time.perf_counter() - start

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.4f}s"
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"

    logger.info(
        f"{request.method} {request.url.path} → {response.status_code} "
        f"({duration:.3f}s) [rid={request_id[:8]}]"
    )
    return response


# ============================================================
# EXCEPTION HANDLERS
# ============================================================

def _error_response(request: Request, status_code: int, error: str, message: Optional[str]) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": error,
            "message": message,
            "request_id": getattr(request.state, "request_id", None),
        },
    )


@app.exception_handler(AuthorizationError)
async def authorization_exception_handler(request: Request, exc: AuthorizationError):
    return _error_response(request, exc.status_code, exc.reason.value, exc.message)


@app.exception_handler(TenantNotFound)
async def tenant_not_found_handler(request: Request, exc: TenantNotFound):
    return _error_response(request, exc.status_code, "Tenant not found", exc.message)


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return _error_response(request, 500, "Internal server error", None)


# ============================================================
# ROUTERS
# ============================================================

from routers import admin, auth, moderation, questions, tags, teams, users

app.include_router(auth.router)
app.include_router(questions.router)
app.include_router(tags.router)
app.include_router(teams.router)
app.include_router(moderation.router)
app.include_router(admin.router)
app.include_router(users.router)


@app.get("/health")
async def health_check():
    """Health check with database connectivity verification"""
    try:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception as e:
        db_status = f"error: {str(e)[:100]}"

    return {
        "status": "healthy" if db_status == "connected" else "degraded",
        "version": VERSION,
        "database": db_status,
    }


@app.get("/")
async def root():
    return {"name": "PulseStage", "version": VERSION, "docs": "/docs", "health": "/health"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
