"""
Middleware Module
"""

from app.middleware.correlation_id import (
    CorrelationIdMiddleware,
    install_correlation_id,
    get_correlation_id,
    accepts_request_id,
)

__all__ = ["CorrelationIdMiddleware", "install_correlation_id", "get_correlation_id", "accepts_request_id"]
