"""
POS Review Dispatcher - Main Application
FastAPI entry point: POS webhooks, queue admin API and scheduled maintenance
"""

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker
import structlog

from app.config import settings
from app.database import get_session_factory
from app.middleware import install_correlation_id
from app.routers import pos_webhook_router, queue_admin_router
from app.scheduler import start_scheduler, stop_scheduler
from app.services.monitoring import setup_logging, configure_structlog, breaker_states
from app.services.monitoring.error_tracking import init_sentry

setup_logging()
configure_structlog()
init_sentry()

logger = structlog.get_logger()

# FastAPI App
app = FastAPI(
    title="POS Review Dispatcher",
    description="Sends review request SMS for completed Square and Shopify purchases",
    version="0.1.0",
    docs_url="/docs" if settings.environment == "development" else None,
    redoc_url="/redoc" if settings.environment == "development" else None,
)

install_correlation_id(app)

# Register routers
app.include_router(pos_webhook_router)
app.include_router(queue_admin_router)


def configure_services(target: FastAPI, session_factory: sessionmaker, send_queue) -> None:
    """
    Build the webhook pipeline once and attach it to app.state.

    Args:
        target: FastAPI application
        session_factory: SQLAlchemy sessionmaker
        send_queue: SendQueue the ingestor enqueues to
    """
    from app.services.idempotency import IdempotencyLedger
    from app.services.pos_transactions import TransactionIngestor
    from app.services.shopify_webhook import ShopifyWebhookService
    from app.services.square_client import SquareClient
    from app.services.square_webhook import SquareWebhookService

    ledger = IdempotencyLedger(session_factory)
    ingestor = TransactionIngestor(
        session_factory,
        send_queue,
        window_days=settings.recent_contact_window_days
    )

    target.state.send_queue = send_queue
    target.state.square_webhooks = SquareWebhookService(session_factory, ledger, ingestor, SquareClient())
    target.state.shopify_webhooks = ShopifyWebhookService(session_factory, ledger, ingestor)


@app.on_event("startup")
async def startup_event():
    """Application Startup"""
    logger.info("startup", environment=settings.environment)

    session_factory = get_session_factory()
    if session_factory is None:
        logger.warning("webhook_pipeline_disabled", reason="database_not_configured")
    else:
        from app.actors import send_review_sms
        from app.services.send_queue import SendQueue

        send_queue = SendQueue(session_factory, send_review_sms, default_delay_ms=settings.sms_dispatch_delay_ms)
        configure_services(app, session_factory, send_queue)
        logger.info("database_initialized")

    app.state.scheduler = start_scheduler(settings.environment)


@app.on_event("shutdown")
async def shutdown_event():
    """Application Shutdown"""
    logger.info("shutdown")
    stop_scheduler(getattr(app.state, "scheduler", None))


@app.get("/")
async def root():
    """Root Endpoint"""
    return {
        "message": "POS Review Dispatcher API",
        "version": "0.1.0",
        "status": "running"
    }


@app.get("/health")
def health_check():
    """
    Health Check Endpoint

    Reports scheduler, circuit breaker and queue state. Queue counts are
    omitted when the database is not configured.
    """
    scheduler = getattr(app.state, "scheduler", None)
    health_status = {
        "status": "healthy",
        "environment": settings.environment,
        "services": {
            "api": "running",
            "scheduler": "running" if scheduler is not None and scheduler.running else "stopped",
            "database": "configured" if settings.database_url else "not_configured",
            "broker": "redis" if settings.redis_url else "stub",
        },
        "circuit_breakers": breaker_states(),
    }

    send_queue = getattr(app.state, "send_queue", None)
    if send_queue is not None:
        try:
            health_status["queue"] = send_queue.get_stats()
        except Exception as e:
            logger.error("health_queue_stats_failed", error=str(e))
            health_status["status"] = "degraded"
            health_status["services"]["database"] = "unreachable"

    if any(b["state"] == "open" for b in health_status["circuit_breakers"].values()):
        health_status["status"] = "degraded"

    return JSONResponse(
        content=health_status,
        status_code=200
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.environment == "development"
    )
