"""
Sentry Error Tracking
Error reports from the webhook API and the SMS workers, tagged with the
transaction and send job being processed
"""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_PHONE_IN_TEXT = re.compile(r"\+?\d[\d\-\s().]{8,}\d")


def scrub_phone_numbers(event: dict, hint: dict) -> dict:
    """
    Sentry before_send hook: mask phone numbers in exception messages.

    Provider errors quote the destination number back ("The 'To' number
    +14155552671 is not a valid phone number").
    """
    for exception in (event.get("exception") or {}).get("values") or []:
        value = exception.get("value")
        if isinstance(value, str):
            exception["value"] = _PHONE_IN_TEXT.sub("[phone]", value)
    return event


def init_sentry(component: str = "api") -> None:
    """
    Initialize Sentry SDK.

    The API process gets the FastAPI integration, workers the Dramatiq one.
    If SENTRY_DSN is not configured, logs warning and returns (disabled).

    Args:
        component: "api" or "worker"
    """
    from app.config import settings

    if settings.sentry_dsn is None:
        logger.warning("Sentry DSN not configured - error tracking disabled")
        return

    try:
        import sentry_sdk

        if component == "worker":
            from sentry_sdk.integrations.dramatiq import DramatiqIntegration
            integrations = [DramatiqIntegration()]
        else:
            from sentry_sdk.integrations.fastapi import FastApiIntegration
            integrations = [FastApiIntegration()]

        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.sentry_environment or settings.environment,
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=scrub_phone_numbers,
            integrations=integrations,
        )
        sentry_sdk.set_tag("component", component)

        logger.info(
            "Sentry initialized",
            extra={"environment": settings.sentry_environment or settings.environment, "component": component}
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def set_dispatch_context(
    transaction_id: int,
    job_id: Optional[str],
    attempt: int,
    correlation_id: Optional[str] = None
) -> None:
    """
    Set Sentry context for the SMS send currently being processed.

    Args:
        transaction_id: PosTransaction being sent
        job_id: Broker message id
        attempt: 1-based attempt number
        correlation_id: Correlation ID of the webhook request that queued the job
    """
    import sentry_sdk

    sentry_sdk.set_context("dispatch", {
        "transaction_id": transaction_id,
        "job_id": job_id,
        "attempt": attempt,
        "correlation_id": correlation_id or "none"
    })
    sentry_sdk.set_tag("transaction_id", str(transaction_id))

    if correlation_id:
        sentry_sdk.set_tag("correlation_id", correlation_id)


def add_breadcrumb(
    category: str,
    message: str,
    level: str = "info",
    data: Optional[dict] = None
) -> None:
    """
    Add breadcrumb to Sentry for request/processing trail.

    Args:
        category: Breadcrumb category (e.g., "webhook", "quota", "dispatch")
        message: Human-readable message
        level: Severity level ("debug", "info", "warning", "error")
        data: Additional structured data
    """
    import sentry_sdk

    sentry_sdk.add_breadcrumb(
        category=category,
        message=message,
        level=level,
        data=data or {}
    )
