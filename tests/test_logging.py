"""
Tests for structured logging: phone redaction, JSON formatting and Sentry scrubbing
"""

import json
import logging

import structlog

from app.services.monitoring.error_tracking import scrub_phone_numbers
from app.services.monitoring.logging import CorrelationJsonFormatter, redact_phone_numbers, setup_logging


class TestPhoneRedaction:

    def test_raw_numbers_are_masked(self):
        event = redact_phone_numbers(None, "info", {"event": "x", "phone": "+14155552671", "to": "4155552671"})

        assert event["phone"] == "+1***-***-2671"
        assert event["to"] == "+***-***-2671"

    def test_masked_values_pass_through(self):
        event = redact_phone_numbers(None, "info", {"event": "x", "phone": "+1***-***-2671"})

        assert event["phone"] == "+1***-***-2671"

    def test_other_keys_untouched(self):
        event = redact_phone_numbers(None, "info", {"event": "x", "transaction_id": 14155552671})

        assert event["transaction_id"] == 14155552671


class TestJsonFormatter:

    def _format(self, message="hello"):
        formatter = CorrelationJsonFormatter('%(levelname)s %(name)s %(message)s')
        record = logging.LogRecord("dramatiq", logging.INFO, __file__, 1, message, None, None)
        return json.loads(formatter.format(record))

    def test_adds_service_fields(self):
        data = self._format()

        assert data["message"] == "hello"
        assert data["service"] == "pos-review-dispatcher"
        assert data["environment"] == "testing"
        assert data["correlation_id"] == "none"

    def test_uses_bound_job_context(self):
        structlog.contextvars.bind_contextvars(correlation_id="req-9", job_id="job-1")
        try:
            data = self._format()
        finally:
            structlog.contextvars.clear_contextvars()

        assert data["correlation_id"] == "req-9"
        assert data["job_id"] == "job-1"

    def test_setup_is_idempotent(self):
        first = setup_logging()
        second = setup_logging()

        assert first is second
        assert sum(isinstance(h.formatter, CorrelationJsonFormatter) for h in logging.getLogger().handlers) == 1


class TestSentryScrubbing:

    def test_masks_numbers_in_exception_values(self):
        event = {"exception": {"values": [
            {"type": "SmsProviderError", "value": "The 'To' number +14155552671 is not a valid phone number"}
        ]}}

        scrubbed = scrub_phone_numbers(event, {})

        assert scrubbed["exception"]["values"][0]["value"] == "The 'To' number [phone] is not a valid phone number"

    def test_events_without_exceptions_pass(self):
        assert scrub_phone_numbers({"message": "hi"}, {}) == {"message": "hi"}
