"""
Structured JSON Logging
structlog for application events, python-json-logger for stdlib records
(uvicorn, dramatiq, apscheduler), both tagged with the request correlation ID
"""

import logging
import re
import sys

import structlog
from pythonjsonlogger import jsonlogger
from asgi_correlation_id.context import correlation_id

from app.config import settings
from app.services.phone import mask_phone

SERVICE_NAME = "pos-review-dispatcher"

# Event keys that may carry a customer phone number
PHONE_KEYS = ("phone", "customer_phone", "target_phone", "to")

_RAW_PHONE = re.compile(r"^\+?\d{8,15}$")


class CorrelationJsonFormatter(jsonlogger.JsonFormatter):
    """
    JSON formatter for stdlib log records.

    Adds correlation_id (request context, or the job context bound by the
    dispatch worker), job_id when inside a send job, service and environment.
    """

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)

        bound = structlog.contextvars.get_contextvars()
        log_record['correlation_id'] = correlation_id.get() or bound.get('correlation_id') or 'none'
        if bound.get('job_id'):
            log_record['job_id'] = bound['job_id']
        log_record['service'] = SERVICE_NAME
        log_record['environment'] = settings.environment


def redact_phone_numbers(logger, method_name, event_dict):
    """structlog processor: mask raw phone numbers that reach a log call unmasked."""
    for key in PHONE_KEYS:
        value = event_dict.get(key)
        if isinstance(value, str) and _RAW_PHONE.match(value):
            event_dict[key] = mask_phone(value)
    return event_dict


def configure_structlog():
    """
    Configure structlog for JSON output.

    Called once per process (API and worker). Context bound with
    structlog.contextvars (correlation_id, job_id) is merged into every event.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            redact_phone_numbers,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer()
        ]
    )


def setup_logging(level: int = logging.INFO):
    """
    Route stdlib logging to stdout as JSON.

    Safe to call more than once: the API and the worker both call it at
    import, and an existing JSON handler is reused.

    Returns:
        logging.Handler: The installed handler
    """
    root_logger = logging.getLogger()
    for existing in root_logger.handlers:
        if isinstance(existing.formatter, CorrelationJsonFormatter):
            return existing

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(CorrelationJsonFormatter(
        '%(timestamp)s %(level)s %(name)s %(message)s',
        rename_fields={
            'timestamp': 'asctime',
            'level': 'levelname'
        }
    ))
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    configure_structlog()

    return handler
