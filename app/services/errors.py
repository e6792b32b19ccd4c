"""
Pipeline Exceptions
"""


class IdempotencyStoreUnavailable(Exception):
    """The webhook claim ledger could not be reached; callers must fail closed."""


class TransientDeliveryError(Exception):
    """
    Retryable messaging failure (timeout, rate limit, provider 5xx, open circuit).

    Raised out of the send actor so the broker schedules another attempt.
    """

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class PermanentDispatchError(Exception):
    """Bad job data or a missing transaction. Never retried."""


class DeadLetterJobNotFound(Exception):
    """Requeue was asked for a dead letter entry that does not exist."""
