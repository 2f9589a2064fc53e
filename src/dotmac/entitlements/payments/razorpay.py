"""
Razorpay gateway over its REST API.

Order creation goes through httpx with basic auth, an explicit timeout and
bounded retries on transport errors and 5xx responses. Signature checks are
local HMAC-SHA256 comparisons.
"""

from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from dotmac.entitlements.exceptions import GatewayError
from dotmac.entitlements.payments.gateway import (
    GatewayOrder,
    PaymentGateway,
    hmac_sha256_hex,
    signatures_match,
)

logger = structlog.get_logger(__name__)


class TransientGatewayError(Exception):
    """Provider failure worth retrying."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RazorpayGateway(PaymentGateway):
    """Razorpay orders API client."""

    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str = "",
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 15.0,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(webhook_secret=webhook_secret)
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.backoff_seconds = backoff_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                auth=httpx.BasicAuth(self.key_id, self.key_secret),
                headers={"Content-Type": "application/json", "Accept": "application/json"},
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _request_once(
        self, method: str, path: str, data: dict[str, Any] | None
    ) -> dict[str, Any]:
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=data)
        except httpx.TimeoutException as e:
            logger.warning("razorpay.request_timeout", path=path, error=str(e))
            raise TransientGatewayError(f"Request timeout: {path}") from e
        except httpx.TransportError as e:
            logger.warning("razorpay.transport_error", path=path, error=str(e))
            raise TransientGatewayError(f"Request failed: {e}") from e

        if response.status_code >= 500:
            raise TransientGatewayError(
                f"Provider error {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            error_detail = response.text
            try:
                error_detail = response.json().get("error", {}).get("description", error_detail)
            except ValueError:
                pass
            raise GatewayError(
                f"Payment provider rejected request: {error_detail}",
                provider_status=response.status_code,
            )
        return response.json()

    async def _request(
        self, method: str, path: str, data: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_seconds, max=10),
            retry=retry_if_exception_type(TransientGatewayError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await self._request_once(method, path, data)
        except TransientGatewayError as e:
            logger.error("razorpay.request_failed", path=path, attempts=self.max_retries)
            raise GatewayError(str(e), provider_status=e.status_code) from e
        raise GatewayError(f"No response from provider for {path}")

    async def create_order(
        self,
        amount_minor: int,
        currency: str,
        receipt: str,
        notes: dict[str, Any] | None = None,
    ) -> GatewayOrder:
        if not self.is_configured:
            raise GatewayError("Razorpay credentials are not configured")

        data = await self._request(
            "POST",
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": notes or {},
            },
        )
        order_id = data["id"]
        logger.info("razorpay.order_created", order_id=order_id, receipt=receipt)
        return GatewayOrder(
            order_id=order_id,
            amount_minor=int(data.get("amount", amount_minor)),
            currency=data.get("currency", currency),
            receipt=receipt,
            key_id=self.key_id,
            checkout_payload={
                "provider": self.name,
                "key": self.key_id,
                "order_id": order_id,
                "amount": int(data.get("amount", amount_minor)),
                "currency": data.get("currency", currency),
                "notes": notes or {},
            },
        )

    def verify_payment_signature(
        self, order_id: str, payment_id: str, signature: str | None
    ) -> bool:
        expected = hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}")
        return signatures_match(expected, signature)
