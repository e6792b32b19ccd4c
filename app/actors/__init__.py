"""
Dramatiq Actors - Async Job Processing

This module sets up the Dramatiq broker and registers all actors.
The broker is configured to use:
- RedisBroker when REDIS_URL is set (production)
- StubBroker when REDIS_URL is not set (testing/development)

Usage:
    from app.actors import broker
"""

import dramatiq
import structlog
from dramatiq.middleware import CurrentMessage

from app.config import settings

logger = structlog.get_logger()


def setup_broker():
    """
    Initialize and configure Dramatiq broker.

    heartbeat_timeout is the stall timeout: messages held by a worker that
    stops heartbeating for that long are redelivered to another worker.

    Returns:
        Broker instance (RedisBroker or StubBroker)
    """
    if settings.redis_url:
        # Production mode - use Redis
        from dramatiq.brokers.redis import RedisBroker

        broker = RedisBroker(
            url=settings.redis_url,
            namespace="pos_review_dispatcher",
            max_connections=10,
            socket_timeout=5,
            socket_connect_timeout=5,
            socket_keepalive=True,
            retry_on_timeout=True,
            heartbeat_timeout=settings.queue_stall_timeout_ms,
            dead_message_ttl=86400000 * 7
        )
        logger.info("broker_configured", type="RedisBroker")
    else:
        # Testing/development mode - use StubBroker
        from dramatiq.brokers.stub import StubBroker

        broker = StubBroker()
        logger.info("broker_configured", type="StubBroker", mode="testing")

    # Lets actors read their own message id and retry count
    broker.add_middleware(CurrentMessage())
    dramatiq.set_broker(broker)
    return broker


# Initialize broker at module level
broker = setup_broker()

# Actor imports (registered with broker on import)
from app.actors import sms_dispatcher  # noqa: F401, E402

# Export specific actors for convenience
from app.actors.sms_dispatcher import send_review_sms, dead_letter_review_sms  # noqa: F401, E402
