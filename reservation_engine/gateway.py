import hashlib
import hmac
import logging
from typing import Optional, Protocol

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from reservation_engine.config import (
    PAYMENT_GATEWAY_BACKOFF_SECONDS,
    PAYMENT_GATEWAY_MAX_ATTEMPTS,
    PAYMENT_GATEWAY_URL,
    PAYMENT_WEBHOOK_SECRET,
)
from reservation_engine.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def initiate_checkout(self, payment_ref: str, amount: float, principal_id: str) -> Optional[str]:
        """Hand the order to the gateway; returns the checkout URL if it issues one."""
        ...


class GatewayBusy(Exception):
    """5xx answer from the gateway; worth another attempt."""


class HttpPaymentGateway:
    def __init__(
        self,
        base_url: str = PAYMENT_GATEWAY_URL,
        max_attempts: int = PAYMENT_GATEWAY_MAX_ATTEMPTS,
        backoff_seconds: float = PAYMENT_GATEWAY_BACKOFF_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.client = client or httpx.AsyncClient(timeout=10.0)

    async def close(self):
        await self.client.aclose()

    async def initiate_checkout(self, payment_ref: str, amount: float, principal_id: str) -> Optional[str]:
        post = retry(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
            retry=retry_if_exception_type((httpx.TransportError, GatewayBusy)),
            reraise=True,
        )(self._post_checkout)

        try:
            return await post(payment_ref, amount, principal_id)
        except (httpx.TransportError, GatewayBusy) as e:
            logger.error(f"Payment gateway unreachable for {payment_ref} after {self.max_attempts} attempts: {e}")
            raise ExternalServiceError("Payment gateway unavailable, retry the order") from e
        except httpx.HTTPStatusError as e:
            logger.error(f"Payment gateway rejected checkout {payment_ref}: {e.response.status_code}")
            raise ExternalServiceError(f"Payment gateway rejected checkout ({e.response.status_code})") from e

    async def _post_checkout(self, payment_ref: str, amount: float, principal_id: str) -> Optional[str]:
        response = await self.client.post(
            f"{self.base_url}/checkouts",
            json={"payment_ref": payment_ref, "amount": amount, "customer": principal_id},
        )
        if response.status_code >= 500:
            logger.warning(f"Payment gateway answered {response.status_code} for {payment_ref}, retrying")
            raise GatewayBusy(f"gateway status {response.status_code}")
        response.raise_for_status()
        return response.json().get("checkout_url")


class SignatureVerifier(Protocol):
    def verify(self, payment_ref: str, outcome: str, idempotency_key: str, signature: str) -> bool:
        ...


class HmacSignatureVerifier:
    """HMAC-SHA256 over ``payment_ref:outcome:idempotency_key``."""

    def __init__(self, secret: str = PAYMENT_WEBHOOK_SECRET):
        self.secret = secret.encode("utf-8")

    def sign(self, payment_ref: str, outcome: str, idempotency_key: str) -> str:
        message = f"{payment_ref}:{outcome}:{idempotency_key}".encode("utf-8")
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def verify(self, payment_ref: str, outcome: str, idempotency_key: str, signature: str) -> bool:
        expected = self.sign(payment_ref, outcome, idempotency_key)
        return hmac.compare_digest(expected, signature or "")
