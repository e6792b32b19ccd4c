"""
Tests for the SMS provider client and the Square API client

Provider HTTP is replaced with httpx.MockTransport.
"""

import httpx
import pytest

from app.services.monitoring.circuit_breakers import (
    CircuitBreakerError,
    breaker_states,
    get_sms_breaker,
    get_square_breaker,
)
from app.services.sms_client import SmsClient
from app.services.square_client import SquareClient, SquareApiError


def sms_client(handler) -> SmsClient:
    return SmsClient(
        account_sid="AC123",
        auth_token="secret",
        messaging_service_sid="MG123",
        base_url="https://api.twilio.test",
        timeout=1.0,
        http_client=httpx.Client(transport=httpx.MockTransport(handler))
    )


class TestSmsClient:

    def test_accepted_message(self):
        captured = {}

        def handler(request):
            captured["url"] = str(request.url)
            captured["body"] = request.content.decode()
            return httpx.Response(201, json={"sid": "SM123", "status": "queued"})

        result = sms_client(handler).send("+14155552671", "Hi Jane!")

        assert result.success is True
        assert result.provider_message_id == "SM123"
        assert captured["url"] == "https://api.twilio.test/2010-04-01/Accounts/AC123/Messages.json"
        assert "MessagingServiceSid=MG123" in captured["body"]

    def test_invalid_number_is_permanent(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21211, "message": "Invalid 'To' Phone Number"})

        result = sms_client(handler).send("+14155552671", "Hi")

        assert result.success is False
        assert result.retryable is False
        assert result.code == "21211"

    @pytest.mark.parametrize("status,body", [
        (429, {"code": 20429, "message": "Too Many Requests"}),
        (500, {"message": "Internal error"}),
        (503, {}),
    ])
    def test_transient_statuses_are_retryable(self, status, body):
        def handler(request):
            return httpx.Response(status, json=body)

        result = sms_client(handler).send("+14155552671", "Hi")

        assert result.success is False
        assert result.retryable is True

    def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = sms_client(handler).send("+14155552671", "Hi")

        assert result.retryable is True
        assert result.code == "timeout"

    def test_open_circuit_fails_fast(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, json={})

        client = sms_client(handler)
        breaker = get_sms_breaker()
        for _ in range(breaker.fail_max):
            client.send("+14155552671", "Hi")

        assert breaker.current_state == "open"
        calls_before = len(calls)

        result = client.send("+14155552671", "Hi")

        assert result.retryable is True
        assert result.code == "circuit_open"
        assert len(calls) == calls_before
        assert breaker_states()["sms_provider"]["state"] == "open"

    def test_rejections_do_not_open_circuit(self):
        def handler(request):
            return httpx.Response(400, json={"code": 21610, "message": "Unsubscribed recipient"})

        client = sms_client(handler)
        breaker = get_sms_breaker()
        for _ in range(breaker.fail_max + 1):
            client.send("+14155552671", "Hi")

        assert breaker.current_state == "closed"

    def test_unconfigured_client(self):
        client = SmsClient()
        client.account_sid = None

        result = client.send("+14155552671", "Hi")

        assert result.success is False
        assert result.code == "not_configured"


def square_client(handler) -> SquareClient:
    return SquareClient(
        base_url="https://connect.square.test",
        http_client=httpx.Client(transport=httpx.MockTransport(handler))
    )


class TestSquareClient:

    def test_fetch_customer(self):
        def handler(request):
            assert request.headers["authorization"] == "Bearer token-abc"
            assert request.url.path == "/v2/customers/CUST_1"
            return httpx.Response(200, json={"customer": {
                "id": "CUST_1", "given_name": "Jane", "family_name": "Doe", "phone_number": "+14155552671"
            }})

        customer = square_client(handler).fetch_customer("token-abc", "CUST_1")

        assert customer == {"given_name": "Jane", "family_name": "Doe", "phone_number": "+14155552671"}

    def test_unknown_customer(self):
        customer = square_client(lambda request: httpx.Response(404, json={})).fetch_customer("t", "CUST_X")

        assert customer is None

    def test_server_error_raises(self):
        with pytest.raises(SquareApiError):
            square_client(lambda request: httpx.Response(502, text="bad gateway")).fetch_customer("t", "CUST_1")

    def test_repeated_failures_open_square_breaker(self):
        client = square_client(lambda request: httpx.Response(500, text="oops"))
        breaker = get_square_breaker()

        for _ in range(breaker.fail_max):
            with pytest.raises((SquareApiError, CircuitBreakerError)):
                client.fetch_customer("t", "CUST_1")

        assert breaker.current_state == "open"
        with pytest.raises(CircuitBreakerError):
            client.fetch_customer("t", "CUST_1")
