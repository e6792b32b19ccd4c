"""
Square API Client

Fetches customer contact details that Square payment and order
webhooks only reference by id.
"""

from typing import Optional

import httpx
import structlog

from app.config import settings
from app.services.monitoring.circuit_breakers import with_circuit_breaker

logger = structlog.get_logger(__name__)


class SquareApiError(Exception):
    """Square API call failed in a way a later retry may fix."""


class SquareClient:
    """
    Minimal Square Customers API client.

    Failures raise SquareApiError so the webhook handler fails, its claim is
    released and Square's own redelivery tries again later.
    """

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None, http_client: Optional[httpx.Client] = None):
        self.base_url = (base_url or settings.square_api_base_url).rstrip("/")
        self.timeout = timeout or settings.square_api_timeout_seconds
        self.http_client = http_client or httpx.Client(timeout=self.timeout)

    def fetch_customer(self, access_token: str, customer_id: str) -> Optional[dict]:
        """
        Look up a customer.

        Args:
            access_token: Merchant OAuth access token
            customer_id: Square customer id

        Returns:
            {"given_name", "family_name", "phone_number"} or None if Square
            does not know the customer

        Raises:
            SquareApiError: Network error, timeout, auth or server failure
        """
        return self._get_customer(access_token, customer_id)

    @with_circuit_breaker("square")
    def _get_customer(self, access_token: str, customer_id: str) -> Optional[dict]:
        try:
            response = self.http_client.get(
                f"{self.base_url}/v2/customers/{customer_id}",
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Square-Version": settings.square_api_version,
                    "Content-Type": "application/json"
                },
                timeout=self.timeout
            )
        except httpx.HTTPError as e:
            logger.warning("square_customer_fetch_error", customer_id=customer_id, error=str(e))
            raise SquareApiError(f"Square API unreachable: {e}") from e

        if response.status_code == 404:
            logger.info("square_customer_not_found", customer_id=customer_id)
            return None

        if response.status_code != 200:
            logger.warning(
                "square_customer_fetch_failed",
                customer_id=customer_id,
                status=response.status_code,
                response=response.text[:500]
            )
            raise SquareApiError(f"Square API returned {response.status_code}")

        customer = response.json().get("customer") or {}
        return {
            "given_name": customer.get("given_name"),
            "family_name": customer.get("family_name"),
            "phone_number": customer.get("phone_number"),
        }

    def close(self):
        self.http_client.close()
