"""
Dramatiq Worker Entrypoint

This module serves as the entry point for Dramatiq workers.
It imports the actor modules to register them with the broker and installs
the SmsDispatcher the send_review_sms actor hands its messages to.

Usage:
    dramatiq app.worker --processes 2 --threads 4 --verbose

Concurrency is processes x threads. Sends are I/O-bound (provider HTTP
call, short DB transactions), so threads work well; quota correctness
does not depend on the worker count because reservations lock the
account row.
"""

import structlog

from app.actors import broker
from app.actors.sms_dispatcher import install_dispatcher
from app.database import get_session_factory
from app.services.dispatcher import SmsDispatcher
from app.services.monitoring import setup_logging, configure_structlog
from app.services.monitoring.error_tracking import init_sentry
from app.services.quota import QuotaService
from app.services.sms_client import SmsClient

setup_logging()
configure_structlog()
init_sentry(component="worker")

logger = structlog.get_logger()

session_factory = get_session_factory()
if session_factory is None:
    raise RuntimeError("DATABASE_URL must be set for SMS workers")

sms_client = SmsClient()
if not sms_client.configured:
    logger.warning("sms_provider_not_configured")

install_dispatcher(SmsDispatcher(session_factory, QuotaService(session_factory), sms_client))

# Worker health check log
logger.info("worker_ready", broker=type(broker).__name__, actors=sorted(broker.get_declared_actors()))
