"""
FastAPI Application Entry Point.

This is the main application file for the ConsultPay billing backend.
"""

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from consultpay.app.core.config import settings
from consultpay.app.api.v1.router import router as api_v1_router
from consultpay.app.core.observability import ObservabilityMiddleware, configure_logging
from consultpay.app.core.redis_client import ping_redis, close_redis
from consultpay.app.db.session import engine, Base
from consultpay.app.core.exceptions import (
    AppException,
    app_exception_handler,
    http_exception_handler,
    validation_exception_handler,
    generic_exception_handler
)
from consultpay.app.services.background_jobs import BackgroundJobs

# Import models to ensure they are registered with Base
from consultpay.app.models.user import User
from consultpay.app.models.guest import Guest
from consultpay.app.models.consultation import Consultation
from consultpay.app.models.wallet_transaction import WalletTransaction
from consultpay.app.models.billing_incident import BillingIncident
from consultpay.app.models.outbox_event import OutboxEvent
from consultpay.app.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for application startup/shutdown.

    1. Configures logging and creates database tables on startup.
    2. Starts the balance monitor and reconciliation loops (if enabled).
    3. Stops the loops and closes the Redis connection on shutdown.
    """
    configure_logging()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    jobs = BackgroundJobs()
    if settings.background_jobs_enabled:
        jobs.start()
    else:
        logger.info("Background jobs disabled")

    yield

    await jobs.stop()
    await close_redis()


# Initialize FastAPI application
app = FastAPI(
    title=settings.app_name,
    version=settings.api_version,
    debug=settings.debug,
    description="Pay-per-minute consultation billing: lifecycle, wallet ledger and reconciliation",
    lifespan=lifespan,
)

app.add_middleware(ObservabilityMiddleware)

# Register global exception handlers
app.add_exception_handler(AppException, app_exception_handler)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check endpoint.

    Returns:
        dict: Status, application information and Redis reachability
    """
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "version": settings.api_version,
        "redis": "up" if await ping_redis() else "down",
    }


# Include API v1 router
app.include_router(api_v1_router, prefix=f"/{settings.api_version}")
