"""
Capability Gate - FastAPI Backend
Entitlement claims, single-use capability tokens, rate limits and usage quotas.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from config import is_production, settings, validate_security_settings
from database import engine, missing_tables
import models  # noqa: F401
from routers import (
    capability,
    dev_grants,
    entitlements,
    health,
    messages,
    premium,
    usage,
)
from services.errors import GateError


logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)


async def verify_schema() -> None:
    """Refuse to serve in production when bootstrap has not been run."""
    try:
        missing = await missing_tables(engine)
    except Exception as exc:
        if is_production():
            raise RuntimeError(f"Database unreachable at startup: {exc}") from exc
        logger.error("Schema check skipped, database unreachable: %s", exc)
        return
    if not missing:
        logger.info("Database schema verified.")
        return
    message = (
        f"Missing tables: {', '.join(missing)}. "
        "Run `alembic upgrade head` or `python scripts/bootstrap_schema.py` first."
    )
    if is_production():
        raise RuntimeError(message)
    logger.error(message)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    logger.info("Starting Capability Gate API (environment=%s)", settings.ENVIRONMENT)
    validate_security_settings()
    await verify_schema()
    if settings.LEDGER_MEMORY_FALLBACK_ENABLED:
        logger.warning("Ledger memory fallback is ENABLED: degraded tokens are single-process only.")
    yield
    logger.info("Shutting down API...")


app = FastAPI(
    title="Capability Gate API",
    description="Entitlement claims exchanged for single-use, operation-bound capability tokens",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(GateError)
async def gate_error_handler(request: Request, exc: GateError):
    headers = {"Cache-Control": "no-store", **exc.headers}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(entitlements.router, tags=["Entitlements"])
app.include_router(capability.router, tags=["Capability"])
app.include_router(messages.router, prefix="/messages", tags=["Messages"])
app.include_router(premium.router, tags=["Premium"])
app.include_router(usage.router, prefix="/usage", tags=["Usage"])
app.include_router(dev_grants.router, prefix="/dev", tags=["Development"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Capability Gate API",
        "version": "0.1.0",
        "status": "running"
    }
