"""Tidewatch FastAPI application."""

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from tidewatch.config import settings
from tidewatch.core.errors import RateLimitedError
from tidewatch.database import close_database, get_session_maker
from tidewatch.logging_config import get_logger, setup_logging
from tidewatch.middleware import CorrelationIdMiddleware
from tidewatch.middleware.rate_limit import (
    limiter,
    rate_limit_exceeded_handler,
    rate_limited_error_handler,
)
from tidewatch.routers import alerts, escalation_policies, health, webhooks
from tidewatch.services.channels import build_dispatcher_registry
from tidewatch.services.delivery_ledger import DeliveryLedger
from tidewatch.services.escalation_engine import EscalationEngine
from tidewatch.services.rate_limiter import AuthAttemptGuard, build_counter_store
from tidewatch.services.scheduler import create_scheduler, start_scheduler, stop_scheduler
from tidewatch.services.step_timer import APSchedulerStepTimer
from tidewatch.services.webhooks import build_normalizers

setup_logging(
    log_format=settings.log_format,
    log_level=settings.log_level,
    service_name=settings.service_name,
)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Schema is migrated (alembic upgrade head) before uvicorn starts
    ledger = DeliveryLedger()
    engine = EscalationEngine(
        get_session_maker(),
        build_dispatcher_registry(settings),
        APSchedulerStepTimer(create_scheduler()),
        ledger=ledger,
        public_base_url=settings.public_base_url,
        dispatch_timeout=settings.dispatch_timeout_seconds,
        default_expiry_hours=settings.alert_default_expiry_hours,
    )
    app.state.escalation_engine = engine
    app.state.webhook_normalizers = build_normalizers(settings, ledger)
    app.state.auth_guard = AuthAttemptGuard.from_settings(
        settings, build_counter_store(settings)
    )

    start_scheduler(engine)
    await engine.restore_timers()
    logger.info("Tidewatch API started")

    yield

    logger.info("Shutting down Tidewatch API...")
    stop_scheduler()
    await close_database()
    logger.info("Tidewatch API shutdown complete")


app = FastAPI(
    title="Tidewatch API",
    description="Tsunami alert escalation and delivery reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
app.add_exception_handler(RateLimitedError, rate_limited_error_handler)

# Middleware (order matters: first added = last executed)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(CorrelationIdMiddleware)

app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(alerts.router)
app.include_router(escalation_policies.router)


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint."""
    return {
        "name": "Tidewatch API",
        "version": "0.1.0",
        "docs": "/docs",
    }
