"""
Monitoring Module
Exports for structured logging, circuit breakers and error tracking
"""

from app.services.monitoring.logging import (
    setup_logging,
    configure_structlog,
    redact_phone_numbers,
    CorrelationJsonFormatter,
)
from app.services.monitoring.circuit_breakers import (
    get_sms_breaker,
    get_square_breaker,
    breaker_states,
    with_circuit_breaker,
    CircuitBreakerError,
    CircuitBreakerEmailListener,
)

__all__ = [
    "setup_logging",
    "configure_structlog",
    "redact_phone_numbers",
    "CorrelationJsonFormatter",
    "get_sms_breaker",
    "get_square_breaker",
    "breaker_states",
    "with_circuit_breaker",
    "CircuitBreakerError",
    "CircuitBreakerEmailListener",
]
