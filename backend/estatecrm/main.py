"""
EstateCRM API
Multi-tenant real estate CRM: subscriptions, listings and client messaging
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from estatecrm.api.v1 import router as api_v1_router
from estatecrm.config import settings
from estatecrm.database import check_db_health, init_db
from estatecrm.exceptions import register_exception_handlers

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    logger.info("Starting EstateCRM API", version=settings.VERSION)

    # Fails fast when the database is unreachable
    await init_db()

    yield

    logger.info("Shutting down EstateCRM API")


app = FastAPI(
    title="EstateCRM API",
    description="Multi-tenant real estate CRM",
    version=settings.VERSION,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
    lifespan=lifespan,
)

register_exception_handlers(app)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(api_v1_router, prefix="/api/v1")


@app.get("/health")
async def health_check() -> dict[str, Any]:
    """Health check endpoint with dependency status."""
    database = await check_db_health()
    return {
        "status": "healthy" if database["status"] == "healthy" else "degraded",
        "version": settings.VERSION,
        "checks": {"database": database},
    }


@app.get("/health/live")
async def liveness() -> dict[str, str]:
    """Liveness check. Succeeds whenever the process is serving."""
    return {"status": "alive"}


@app.get("/health/ready")
async def readiness():
    """Readiness check. 503 until the database answers."""
    database = await check_db_health()
    if database["status"] != "healthy":
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "not_ready", "database": database},
        )
    return {"status": "ready", "database": database}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint."""
    return {
        "message": "EstateCRM API",
        "docs": "/api/docs",
        "version": settings.VERSION,
    }
