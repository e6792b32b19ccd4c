"""
Correlation ID Middleware
Request tracing from POS webhook delivery through the SMS send job
"""

from typing import Optional

from asgi_correlation_id import CorrelationIdMiddleware
from asgi_correlation_id.context import correlation_id
from fastapi import FastAPI

__all__ = ["CorrelationIdMiddleware", "install_correlation_id", "get_correlation_id", "accepts_request_id"]

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 128


def accepts_request_id(value: str) -> bool:
    """
    Inbound request ids are kept when printable and reasonably short.

    Square and Shopify retries carry their own delivery ids, which are not
    UUIDs, so the default UUID4 validator would discard them.
    """
    return 0 < len(value) <= MAX_REQUEST_ID_LENGTH and value.isprintable()


def install_correlation_id(app: FastAPI) -> None:
    app.add_middleware(
        CorrelationIdMiddleware,
        header_name=REQUEST_ID_HEADER,
        validator=accepts_request_id,
    )


def get_correlation_id(default: Optional[str] = "none") -> Optional[str]:
    """
    Correlation ID of the current request.

    Routers pass it into the send job so the dispatch worker can bind it
    to its own log context.
    """
    return correlation_id.get() or default
