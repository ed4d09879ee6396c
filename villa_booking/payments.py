import hashlib
import hmac

import httpx

from .breaker import CircuitBreaker, CircuitBreakerOpen
from .config import (
    IS_PRODUCTION,
    PAYMENT_TIMEOUT_SECONDS,
    RAZORPAY_BASE_URL,
    RAZORPAY_KEY_ID,
    RAZORPAY_KEY_SECRET,
    RAZORPAY_WEBHOOK_SECRET,
    SERVICE_NAME,
)
from .errors import GatewayTimeout, Internal

cb_payments = CircuitBreaker("payment-gateway", failure_threshold=5, reset_timeout_seconds=30)


def to_minor_units(amount: int) -> int:
    return int(amount) * 100


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def _failure(message: str, detail: str) -> Internal:
    if IS_PRODUCTION:
        return Internal(message)
    return Internal(message, detail=detail)


class RazorpayGateway:
    """
    Razorpay REST client.

    Order and refund calls go through the payment circuit breaker with a
    hard timeout. Amounts on the wire are minor units (paise).
    """

    def __init__(
        self,
        key_id: str = RAZORPAY_KEY_ID,
        key_secret: str = RAZORPAY_KEY_SECRET,
        webhook_secret: str = RAZORPAY_WEBHOOK_SECRET,
        base_url: str = RAZORPAY_BASE_URL,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
        breaker: CircuitBreaker = cb_payments,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.breaker = breaker
        self.transport = transport

    async def _call(self, method: str, path: str, payload: dict | None = None, headers: dict | None = None) -> dict:
        try:
            await self.breaker.allow_request()
        except CircuitBreakerOpen as e:
            raise _failure("Payment gateway is unavailable", str(e))

        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                auth=(self.key_id, self.key_secret),
                transport=self.transport,
            ) as client:
                resp = await client.request(method=method, url=url, json=payload, headers=headers)
                resp.raise_for_status()
        except httpx.TimeoutException:
            await self.breaker.record_failure()
            print(f"[{SERVICE_NAME}] payment gateway timeout: {method} {path}")
            raise GatewayTimeout("Payment gateway timed out")
        except httpx.HTTPStatusError as e:
            await self.breaker.record_failure()
            print(f"[{SERVICE_NAME}] payment gateway error {e.response.status_code}: {method} {path}")
            raise _failure("Payment gateway request failed", e.response.text)
        except httpx.HTTPError as e:
            await self.breaker.record_failure()
            print(f"[{SERVICE_NAME}] payment gateway unreachable: {method} {path}: {e}")
            raise _failure("Payment gateway request failed", str(e))

        await self.breaker.record_success()
        return resp.json() if resp.content else {}

    async def create_order(self, amount_minor: int, currency: str, receipt: str, notes: dict | None = None) -> dict:
        return await self._call(
            "POST",
            "/orders",
            {
                "amount": amount_minor,
                "currency": currency,
                "receipt": receipt,
                "notes": {k: str(v) for k, v in (notes or {}).items() if v is not None},
            },
        )

    async def fetch_order(self, order_id: str) -> dict:
        return await self._call("GET", f"/orders/{order_id}")

    async def refund(
        self,
        payment_id: str,
        amount_minor: int,
        notes: dict | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Repeating a refund with the same idempotency key returns the first refund."""
        body = await self._call(
            "POST",
            f"/payments/{payment_id}/refund",
            {"amount": amount_minor, "notes": {k: str(v) for k, v in (notes or {}).items()}},
            headers={"X-Refund-Idempotency": idempotency_key} if idempotency_key else None,
        )
        refund_id = body.get("id")
        if not refund_id:
            raise Internal("Payment gateway returned no refund id")
        return refund_id

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        if not (order_id and payment_id and signature and self.key_secret):
            return False
        expected = _hmac_hex(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))
        return hmac.compare_digest(expected, signature)

    def verify_webhook_signature(self, body: bytes, signature: str | None) -> bool:
        if not (signature and self.webhook_secret):
            return False
        return hmac.compare_digest(_hmac_hex(self.webhook_secret, body), signature)


gateway = RazorpayGateway()


def get_payment_gateway() -> RazorpayGateway:
    return gateway
