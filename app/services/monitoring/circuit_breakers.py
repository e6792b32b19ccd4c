"""
Circuit Breaker Implementation for External Service Dependencies

Protects against cascading failures by opening circuits after consecutive failures
and automatically attempting recovery after a timeout period.

Services protected:
- Messaging provider (Twilio SMS sends)
- Square API (customer lookups during webhook ingestion)
"""

import functools
import logging
from typing import Optional

import pybreaker

from app.config import settings

logger = logging.getLogger(__name__)

_BREAKER_NAMES = {
    "sms": "sms_provider",
    "square": "square_api",
}


class CircuitBreakerEmailListener(pybreaker.CircuitBreakerListener):
    """
    Email notification listener for circuit breaker state changes.

    Sends alert emails when a circuit breaker opens, indicating that
    an external service is experiencing failures and has been isolated.
    """

    def __init__(self, admin_email: Optional[str]):
        """
        Initialize the email listener.

        Args:
            admin_email: Email address to receive circuit breaker alerts
        """
        self.admin_email = admin_email

    def state_change(self, cb: pybreaker.CircuitBreaker, old_state: pybreaker.CircuitBreakerState, new_state: pybreaker.CircuitBreakerState):
        """
        Handle circuit breaker state changes.

        Args:
            cb: The circuit breaker instance
            old_state: Previous state
            new_state: New state
        """
        old_name = old_state.name if old_state is not None else None
        logger.warning(
            f"Circuit breaker state change: {cb.name} transitioned from {old_name} to {new_state.name}",
            extra={
                "circuit_breaker": cb.name,
                "old_state": old_name,
                "new_state": new_state.name,
                "fail_count": cb.fail_counter
            }
        )

        if new_state.name == pybreaker.STATE_OPEN:
            self._send_alert_email(cb)

    def _send_alert_email(self, cb: pybreaker.CircuitBreaker):
        """
        Send email alert for opened circuit breaker.

        Args:
            cb: The circuit breaker that opened
        """
        from app.services.alert_notifier import AlertNotifier

        body = f"""
CIRCUIT BREAKER ALERT

Service: {cb.name}
Status: OPEN (service is now isolated)
Failure Count: {cb.fail_counter}
Reset Timeout: {cb.reset_timeout} seconds

The circuit breaker has opened after {cb.fail_counter} consecutive failures.
Calls to this service fail fast until the circuit attempts recovery after
{cb.reset_timeout} seconds. SMS jobs that hit the open circuit are retried
and end up in the dead letter queue if it stays open.

Environment: {settings.environment}
        """.strip()

        AlertNotifier(recipient=self.admin_email).send(
            f"ALERT: Circuit Breaker Opened - {cb.name}",
            body
        )


def _create_breaker(name: str, listener: CircuitBreakerEmailListener) -> pybreaker.CircuitBreaker:
    """
    Create a circuit breaker with configured thresholds.

    Args:
        name: Service name for the circuit breaker
        listener: Email notification listener

    Returns:
        Configured CircuitBreaker instance
    """
    return pybreaker.CircuitBreaker(
        name=name,
        fail_max=settings.circuit_breaker_fail_max,
        reset_timeout=settings.circuit_breaker_reset_timeout,
        listeners=[listener]
    )


# Module-level instances (lazy initialization)
_email_listener: Optional[CircuitBreakerEmailListener] = None
_breakers: dict[str, pybreaker.CircuitBreaker] = {}


def get_breaker(service_name: str) -> pybreaker.CircuitBreaker:
    """
    Get circuit breaker for a specific service.

    Lazy initializes breakers on first access to avoid import-time side effects.

    Args:
        service_name: Service name ("sms" or "square")

    Returns:
        Circuit breaker instance for the service

    Raises:
        ValueError: If service_name is not recognized
    """
    global _email_listener

    if service_name not in _BREAKER_NAMES:
        raise ValueError(f"Unknown service name: {service_name}. Must be one of {sorted(_BREAKER_NAMES)}")

    if _email_listener is None:
        admin_email = settings.circuit_breaker_alert_email or settings.admin_email
        if not admin_email:
            logger.warning("Circuit breaker email alerts disabled: no admin email configured")
        _email_listener = CircuitBreakerEmailListener(admin_email)

    if service_name not in _breakers:
        _breakers[service_name] = _create_breaker(_BREAKER_NAMES[service_name], _email_listener)
        logger.info(f"Initialized {_BREAKER_NAMES[service_name]} circuit breaker")
    return _breakers[service_name]


def get_sms_breaker() -> pybreaker.CircuitBreaker:
    """Circuit breaker for the messaging provider."""
    return get_breaker("sms")


def get_square_breaker() -> pybreaker.CircuitBreaker:
    """Circuit breaker for the Square API."""
    return get_breaker("square")


def breaker_states() -> dict:
    """
    Current state of every initialized breaker, for the health endpoint.

    Returns:
        {"sms_provider": {"state": "closed", "fail_count": 0}, ...}
    """
    return {
        breaker.name: {
            "state": breaker.current_state,
            "fail_count": breaker.fail_counter,
        }
        for breaker in _breakers.values()
    }


def reset_breakers() -> None:
    """Forget all breakers (tests)."""
    global _email_listener
    _breakers.clear()
    _email_listener = None


def with_circuit_breaker(service_name: str):
    """
    Decorator to wrap function with circuit breaker protection.

    Usage:
        @with_circuit_breaker("square")
        def fetch_customer(customer_id):
            ...

    Args:
        service_name: Service name ("sms" or "square")

    Raises:
        CircuitBreakerError: If circuit is open (service unavailable)
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            breaker = get_breaker(service_name)
            return breaker.call(func, *args, **kwargs)
        return wrapper
    return decorator


# Re-export exception for caller handling
from pybreaker import CircuitBreakerError  # noqa: E402

__all__ = [
    "CircuitBreakerEmailListener",
    "get_breaker",
    "get_sms_breaker",
    "get_square_breaker",
    "breaker_states",
    "reset_breakers",
    "with_circuit_breaker",
    "CircuitBreakerError",
]
