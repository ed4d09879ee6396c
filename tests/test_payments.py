import json

import httpx
import pytest

from conftest import KEY_SECRET, WEBHOOK_SECRET, sign, sign_webhook
from villa_booking.breaker import CircuitBreaker
from villa_booking.errors import GatewayTimeout, Internal
from villa_booking.payments import RazorpayGateway

pytestmark = pytest.mark.anyio


def make_gateway(handler, breaker=None) -> RazorpayGateway:
    return RazorpayGateway(
        key_id="rzp_test_key",
        key_secret=KEY_SECRET,
        webhook_secret=WEBHOOK_SECRET,
        base_url="https://api.razorpay.test/v1",
        breaker=breaker or CircuitBreaker("payment-gateway-test", failure_threshold=2, reset_timeout_seconds=60),
        transport=httpx.MockTransport(handler),
    )


def test_signature_covers_order_and_payment():
    gateway = make_gateway(lambda request: httpx.Response(200))

    assert gateway.verify_signature("order_1", "pay_1", sign("order_1", "pay_1"))
    assert not gateway.verify_signature("order_1", "pay_2", sign("order_1", "pay_1"))
    assert not gateway.verify_signature("order_1", "pay_1", "")


def test_signature_fails_closed_without_secret():
    gateway = RazorpayGateway(key_secret="", webhook_secret="")

    assert not gateway.verify_signature("order_1", "pay_1", sign("order_1", "pay_1"))
    assert not gateway.verify_webhook_signature(b"{}", sign_webhook(b"{}"))


def test_webhook_signature_is_over_raw_body():
    gateway = make_gateway(lambda request: httpx.Response(200))
    body = b'{"event":"payment.captured"}'

    assert gateway.verify_webhook_signature(body, sign_webhook(body))
    assert not gateway.verify_webhook_signature(body + b" ", sign_webhook(body))
    assert not gateway.verify_webhook_signature(body, None)


async def test_create_order_posts_minor_units():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "amount": 1500000, "currency": "INR", "status": "created"})

    order = await make_gateway(handler).create_order(1500000, "INR", "bk_1", notes={"villa_id": 1, "skip": None})

    assert order["id"] == "order_abc"
    assert seen["path"] == "/v1/orders"
    assert seen["auth"].startswith("Basic ")
    assert seen["body"] == {"amount": 1500000, "currency": "INR", "receipt": "bk_1", "notes": {"villa_id": "1"}}


async def test_refund_returns_refund_id():
    def handler(request: httpx.Request):
        assert request.url.path == "/v1/payments/pay_1/refund"
        return httpx.Response(200, json={"id": "rfnd_9", "amount": 750000})

    assert await make_gateway(handler).refund("pay_1", 750000) == "rfnd_9"


async def test_refund_sends_idempotency_key():
    seen = {}

    def handler(request: httpx.Request):
        seen["key"] = request.headers.get("X-Refund-Idempotency")
        return httpx.Response(200, json={"id": "rfnd_9"})

    await make_gateway(handler).refund("pay_1", 750000, idempotency_key="cancel-bk-1")
    assert seen["key"] == "cancel-bk-1"


async def test_fetch_order_reads_the_order():
    def handler(request: httpx.Request):
        assert request.method == "GET"
        assert request.url.path == "/v1/orders/order_abc"
        return httpx.Response(200, json={"id": "order_abc", "amount": 10000, "currency": "INR", "notes": []})

    order = await make_gateway(handler).fetch_order("order_abc")
    assert order["amount"] == 10000


async def test_timeout_maps_to_gateway_timeout():
    def handler(request: httpx.Request):
        raise httpx.ReadTimeout("slow gateway", request=request)

    with pytest.raises(GatewayTimeout) as exc:
        await make_gateway(handler).create_order(100, "INR", "bk_1")
    assert exc.value.status_code == 504
    assert exc.value.kind == "timeout"


async def test_upstream_error_maps_to_internal_without_secrets():
    def handler(request: httpx.Request):
        return httpx.Response(400, json={"error": {"description": "amount too low"}})

    with pytest.raises(Internal) as exc:
        await make_gateway(handler).create_order(1, "INR", "bk_1")

    body = exc.value.to_dict()
    assert body["kind"] == "internal"
    assert "amount too low" in body["detail"]
    assert KEY_SECRET not in json.dumps(body)


async def test_breaker_opens_after_repeated_failures():
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        return httpx.Response(502)

    breaker = CircuitBreaker("payment-gateway-flaky", failure_threshold=2, reset_timeout_seconds=60)
    gateway = make_gateway(handler, breaker=breaker)

    for _ in range(2):
        with pytest.raises(Internal):
            await gateway.create_order(100, "INR", "bk_1")
    assert (await breaker.status())["state"] == "OPEN"

    with pytest.raises(Internal) as exc:
        await gateway.create_order(100, "INR", "bk_1")
    assert exc.value.message == "Payment gateway is unavailable"
    assert len(calls) == 2

    await breaker.close()
    assert (await breaker.status()) == {"name": "payment-gateway-flaky", "state": "CLOSED", "failures": 0}
