"""
SMS Dispatch Actor
Dramatiq actor that runs one review request send attempt per message, and
the callback that dead-letters a job once its retries are exhausted
"""

import re
from typing import Optional

import dramatiq
import structlog
from dramatiq.middleware import CurrentMessage

from app.config import settings
from app.services.errors import PermanentDispatchError

logger = structlog.get_logger()

_dispatcher = None


def install_dispatcher(dispatcher) -> None:
    """
    Register the SmsDispatcher this process hands messages to.

    Called once at worker start (app/worker.py) and by tests.
    """
    global _dispatcher
    _dispatcher = dispatcher
    logger.info("sms_dispatcher_installed", dispatcher=type(dispatcher).__name__)


def get_dispatcher():
    if _dispatcher is None:
        raise RuntimeError("SmsDispatcher not installed; start workers with `dramatiq app.worker`")
    return _dispatcher


_EXCEPTION_LINE = re.compile(r"^([A-Za-z_][\w.]*)(?::\s*(.*))?$")


def failure_from_traceback(traceback_text: Optional[str]) -> tuple[str, Optional[str]]:
    """
    Error message and exception class name from the traceback dramatiq
    stores on a failed message.

    The last unindented "module.ErrorType: message" line wins; frame lines
    are indented and trailing notes such as SQLAlchemy's "(Background on
    this error ...)" do not match.
    """
    for line in reversed((traceback_text or "").splitlines()):
        if not line or line[0].isspace() or line.startswith("Traceback ("):
            continue
        match = _EXCEPTION_LINE.match(line.rstrip())
        if match:
            return match.group(2) or match.group(1), match.group(1).rsplit(".", 1)[-1]
    return "Retries exhausted", None


@dramatiq.actor(
    max_retries=settings.sms_max_retries,
    min_backoff=settings.sms_retry_min_backoff_ms,
    max_backoff=settings.sms_retry_max_backoff_ms,
    queue_name=settings.sms_queue_name
)
def dead_letter_review_sms(message_data: dict, retry_data: dict) -> None:
    """
    Retries-exhausted callback of send_review_sms.

    Dramatiq sends this once, after the last attempt of a send job failed,
    whatever the error was. The job is dead-lettered and its transaction
    failed, unless the last attempt already did so itself (provider
    failures are dead-lettered inline).

    Args:
        message_data: The failed message (message_id, kwargs, options)
        retry_data: {"retries": retries before the last attempt, "max_retries": ...}
    """
    kwargs = message_data.get("kwargs") or {}
    payload = kwargs.get("payload") or {}
    job_id = message_data.get("message_id")
    attempts_made = (retry_data.get("retries") or 0) + 1
    error, error_type = failure_from_traceback((message_data.get("options") or {}).get("traceback"))

    structlog.contextvars.bind_contextvars(correlation_id=kwargs.get("correlation_id") or "none", job_id=job_id)
    try:
        logger.error(
            "send_review_sms_retries_exhausted",
            transaction_id=payload.get("transaction_id"),
            attempts_made=attempts_made,
            error=error,
            error_type=error_type
        )
        get_dispatcher().dead_letter(payload, job_id, attempts_made, error, error_type=error_type)
    finally:
        structlog.contextvars.unbind_contextvars("correlation_id", "job_id")


@dramatiq.actor(
    max_retries=settings.sms_max_retries,
    min_backoff=settings.sms_retry_min_backoff_ms,
    max_backoff=settings.sms_retry_max_backoff_ms,
    throws=(PermanentDispatchError,),
    on_retry_exhausted="dead_letter_review_sms",
    queue_name=settings.sms_queue_name
)
def send_review_sms(payload: dict, correlation_id: Optional[str] = None) -> None:
    """
    Send one review request SMS.

    Retry policy (dramatiq Retries middleware):
    - TransientDeliveryError and unexpected errors: retried with exponential
      backoff, max_retries + 1 attempts in total
    - PermanentDispatchError: never retried
    - after the last failed attempt dramatiq sends dead_letter_review_sms

    The attempt number comes from the message's retry counter, so the
    dispatcher knows when it is on the last attempt and must dead-letter.

    Args:
        payload: Job payload (transaction_id, account_id, target_phone, ...)
        correlation_id: Correlation ID of the webhook request that queued the job
    """
    message = CurrentMessage.get_current_message()
    job_id = message.message_id if message else None
    attempt = (message.options.get("retries", 0) if message else 0) + 1
    max_attempts = send_review_sms.options.get("max_retries", settings.sms_max_retries) + 1

    structlog.contextvars.bind_contextvars(correlation_id=correlation_id or "none", job_id=job_id)
    try:
        from app.services.monitoring.error_tracking import set_dispatch_context, add_breadcrumb
        set_dispatch_context(payload.get("transaction_id"), job_id, attempt, correlation_id)
        add_breadcrumb(
            category="dispatch",
            message=f"send_review_sms attempt {attempt}/{max_attempts}",
            data={"transaction_id": payload.get("transaction_id"), "job_id": job_id}
        )

        logger.info(
            "send_review_sms_start",
            transaction_id=payload.get("transaction_id"),
            attempt=attempt,
            max_attempts=max_attempts
        )
        outcome = get_dispatcher().dispatch(payload, job_id=job_id, attempt=attempt, max_attempts=max_attempts)
        logger.info("send_review_sms_done", transaction_id=payload.get("transaction_id"), outcome=outcome)
    finally:
        structlog.contextvars.unbind_contextvars("correlation_id", "job_id")
