"""
SMS Provider Client

Synchronous Twilio REST client used by the dispatch worker.
Every send goes through the "sms" circuit breaker with a bounded timeout.
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from app.config import settings
from app.services.errors import TransientDeliveryError
from app.services.monitoring.circuit_breakers import get_sms_breaker, CircuitBreakerError
from app.services.phone import mask_phone

logger = structlog.get_logger(__name__)

# Twilio error codes that are worth another attempt
_RETRYABLE_PROVIDER_CODES = {20429, 30001, 30008}


@dataclass
class SendResult:
    """
    Outcome of one send attempt.

    retryable is only meaningful when success is False: True for timeouts,
    rate limits, provider 5xx and an open circuit; False when the provider
    rejected the message itself (invalid or unreachable number).
    """
    success: bool
    provider_message_id: Optional[str] = None
    error: Optional[str] = None
    retryable: bool = False
    code: Optional[str] = None


class SmsClient:
    """
    Sends SMS through the Twilio Messages API.

    Transient failures are raised inside the breaker call so they count
    towards opening the circuit; permanent rejections are returned as a
    failed SendResult and do not.
    """

    def __init__(
        self,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        messaging_service_sid: Optional[str] = None,
        from_number: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_client: Optional[httpx.Client] = None
    ):
        self.account_sid = account_sid or settings.twilio_account_sid
        self.auth_token = auth_token or settings.twilio_auth_token
        self.messaging_service_sid = messaging_service_sid or settings.twilio_messaging_service_sid
        self.from_number = from_number or settings.twilio_phone_number
        self.base_url = (base_url or settings.twilio_api_base_url).rstrip("/")
        self.timeout = timeout or settings.sms_send_timeout_seconds
        self.http_client = http_client or httpx.Client(timeout=self.timeout)

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and (self.messaging_service_sid or self.from_number))

    def send(self, to: str, body: str) -> SendResult:
        """
        Send one SMS.

        Args:
            to: E.164 destination
            body: Message text

        Returns:
            SendResult. Never raises for provider or network failures.
        """
        if not self.configured:
            logger.error("sms_provider_not_configured")
            return SendResult(success=False, error="SMS provider not configured", retryable=False, code="not_configured")

        try:
            return get_sms_breaker().call(self._post_message, to, body)
        except CircuitBreakerError as e:
            logger.warning("sms_circuit_open", to=mask_phone(to), error=str(e))
            return SendResult(success=False, error="SMS provider circuit open", retryable=True, code="circuit_open")
        except TransientDeliveryError as e:
            return SendResult(success=False, error=str(e), retryable=True, code=e.code)

    def _post_message(self, to: str, body: str) -> SendResult:
        data = {"To": to, "Body": body}
        if self.messaging_service_sid:
            data["MessagingServiceSid"] = self.messaging_service_sid
        else:
            data["From"] = self.from_number

        try:
            response = self.http_client.post(
                f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json",
                data=data,
                auth=(self.account_sid, self.auth_token),
                timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            logger.warning("sms_send_timeout", to=mask_phone(to), error=str(e))
            raise TransientDeliveryError(f"SMS provider timeout: {e}", code="timeout") from e
        except httpx.HTTPError as e:
            logger.warning("sms_send_network_error", to=mask_phone(to), error=str(e))
            raise TransientDeliveryError(f"SMS provider unreachable: {e}", code="network_error") from e

        if response.status_code in (200, 201):
            message_sid = response.json().get("sid")
            logger.info("sms_sent", to=mask_phone(to), provider_message_id=message_sid)
            return SendResult(success=True, provider_message_id=message_sid)

        try:
            error_body = response.json()
        except ValueError:
            error_body = {}
        provider_code = error_body.get("code")
        message = error_body.get("message") or response.text[:500]
        error = f"Twilio {response.status_code}"
        if provider_code:
            error += f" ({provider_code})"
        error += f": {message}"

        if response.status_code == 429 or response.status_code >= 500 or provider_code in _RETRYABLE_PROVIDER_CODES:
            logger.warning("sms_send_transient_failure", to=mask_phone(to), status=response.status_code, code=provider_code)
            raise TransientDeliveryError(error, code=str(provider_code or response.status_code))

        logger.error("sms_send_rejected", to=mask_phone(to), status=response.status_code, code=provider_code, error=message)
        return SendResult(success=False, error=error, retryable=False, code=str(provider_code or response.status_code))

    def close(self):
        self.http_client.close()
