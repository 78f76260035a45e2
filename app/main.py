from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from app.config import settings
from app.api.v1.router import api_router
from app.core.exceptions import (
    CommissionEngineError,
    AffiliateNotFoundError,
    PlanNotFoundError,
    CommissionEventNotFoundError,
    ReferralCodeNotFoundError,
    ClawbackNotPermittedError,
    InvalidStatusTransitionError,
    PlanAssignmentError,
    PlanConfigurationError,
    TransientDatabaseError,
)
from app.database import init_db, async_session_factory


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
    - Create tables when CREATE_TABLES_ON_STARTUP is set (local development)

    Maintenance jobs are not scheduled here; see app.jobs.commission_jobs.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    if settings.CREATE_TABLES_ON_STARTUP:
        await init_db()
        logger.info("Database tables created")

    yield

    logger.info("Shutting down...")


OPENAPI_TAGS = [
    {"name": "Affiliate Commissions", "description": "Attribution, commission ledger, tiers and suppressed reports"},
    {"name": "Health", "description": "Service and database health"},
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Internal API for affiliate attribution and commission accounting.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=OPENAPI_TAGS,
)

app.include_router(api_router)


# ==================== Exception handlers ====================

NOT_FOUND_ERRORS = (
    AffiliateNotFoundError,
    PlanNotFoundError,
    CommissionEventNotFoundError,
    ReferralCodeNotFoundError,
)
CONFLICT_ERRORS = (
    ClawbackNotPermittedError,
    InvalidStatusTransitionError,
    PlanAssignmentError,
    PlanConfigurationError,
)


def _error_response(request: Request, exc: Exception, status_code: int) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": str(exc),
            "type": type(exc).__name__,
            "path": str(request.url.path),
            "method": request.method,
        },
    )


@app.exception_handler(CommissionEngineError)
async def commission_engine_exception_handler(request: Request, exc: CommissionEngineError):
    if isinstance(exc, NOT_FOUND_ERRORS):
        status_code = 404
    elif isinstance(exc, CONFLICT_ERRORS):
        status_code = 409
    elif isinstance(exc, TransientDatabaseError):
        logger.warning(f"{request.method} {request.url.path} gave up after {exc.attempts} attempts: {exc}")
        status_code = 503
    else:
        status_code = 400
    return _error_response(request, exc, status_code)


@app.exception_handler(ValueError)
async def value_error_exception_handler(request: Request, exc: ValueError):
    return _error_response(request, exc, 400)


@app.get("/health", tags=["Health"])
async def health_check():
    """Health check endpoint with database validation."""
    health_status = {
        "status": "healthy",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": {
            "database": "unknown"
        }
    }

    try:
        async with async_session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
            health_status["checks"]["database"] = "connected"
    except Exception as e:
        logger.error(f"Health check database probe failed: {e}")
        health_status["status"] = "unhealthy"
        health_status["checks"]["database"] = f"error: {str(e)}"

    if health_status["status"] == "unhealthy":
        return JSONResponse(status_code=503, content=health_status)

    return health_status
