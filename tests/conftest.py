"""Shared fixtures for villa booking tests.

- Every test gets its own SQLite file database and an in-process fake Redis.
- The payment gateway and the event broker are replaced by local fakes.
- HTTP tests go through the ASGI app with httpx.AsyncClient.
"""

import hashlib
import hmac
import json
import os
import tempfile
import uuid
from datetime import date, datetime, timezone

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "villa_booking_unused.db"),
)
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("RATE_LIMIT_PER_MINUTE", "10000")

import fakeredis
import httpx
import pytest
from httpx import ASGITransport
from jose import jwt
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from villa_booking import availability, breaker, idempotency, middleware
from villa_booking.db import Base, get_db
from villa_booking.errors import Internal
from villa_booking.main import app
from villa_booking.models import Booking, Villa
from villa_booking.notifications import Notifier, get_notifier
from villa_booking.payments import RazorpayGateway, get_payment_gateway
from villa_booking.security import Actor

KEY_SECRET = "rzp_test_secret"
WEBHOOK_SECRET = "whsec_test"

GUEST = Actor(id="user-1", email="guest@example.com", role="user")
OTHER = Actor(id="user-2", email="other@example.com", role="user")
ADMIN = Actor(id="admin-1", email="admin@example.com", role="admin")

# a fixed clock for service level tests
NOW = datetime(2025, 5, 1, 9, 0, tzinfo=timezone.utc)


def sign(order_id: str, payment_id: str) -> str:
    return hmac.new(KEY_SECRET.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


def sign_webhook(body: bytes) -> str:
    return hmac.new(WEBHOOK_SECRET.encode(), body, hashlib.sha256).hexdigest()


def token_for(actor: Actor) -> str:
    claims = {"sub": actor.id, "email": actor.email, "roles": [actor.role]}
    return jwt.encode(claims, os.environ["JWT_SECRET"], algorithm="HS256")


def auth(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {token_for(actor)}"}


class FakeGateway(RazorpayGateway):
    """Real signature checks, canned orders and refunds."""

    def __init__(self):
        super().__init__(
            key_id="rzp_test_key",
            key_secret=KEY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
            base_url="http://gateway.invalid",
        )
        self.orders = []
        self.refunds = []
        self.refund_keys = {}
        self.fail_refunds = False

    async def create_order(self, amount_minor, currency, receipt, notes=None):
        order = {
            "id": f"order_{len(self.orders) + 1}",
            "amount": amount_minor,
            "currency": currency,
            "receipt": receipt,
            "status": "created",
            "notes": notes or {},
        }
        self.orders.append(order)
        return order

    async def fetch_order(self, order_id):
        for order in self.orders:
            if order["id"] == order_id:
                return order
        raise Internal("Payment gateway request failed")

    async def refund(self, payment_id, amount_minor, notes=None, idempotency_key=None):
        if self.fail_refunds:
            raise Internal("Payment gateway request failed")
        if idempotency_key in self.refund_keys:
            return self.refund_keys[idempotency_key]
        self.refunds.append((payment_id, amount_minor))
        refund_id = f"rfnd_{len(self.refunds)}"
        if idempotency_key:
            self.refund_keys[idempotency_key] = refund_id
        return refund_id


class RecordingRabbit:
    enabled = True

    def __init__(self):
        self.published = []

    async def publish(self, routing_key, message_body):
        self.published.append((routing_key, json.loads(message_body)))
        return True

    def event_types(self):
        return [rk for rk, _ in self.published]


class BrokenRabbit:
    enabled = True

    async def publish(self, routing_key, message_body):
        raise RuntimeError("broker unreachable")


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    for module in (availability, breaker, idempotency, middleware):
        monkeypatch.setattr(module, "redis_client", client)
    return client


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'villa_booking.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def villa(session_factory):
    async with session_factory() as session:
        villa = Villa(id=1, name="Sea Breeze", location="Goa", price=5000, max_guests=6, bedrooms=3, bathrooms=2)
        session.add(villa)
        await session.commit()
    return villa


@pytest.fixture
def add_booking(session_factory, villa):
    async def _add(check_in: date, check_out: date, status: str = "confirmed", **fields):
        values = dict(
            booking_id=str(uuid.uuid4()),
            villa_id=villa.id,
            villa_name=villa.name,
            user_id=GUEST.id,
            email=GUEST.email,
            guest_name="Asha Guest",
            check_in=check_in,
            check_out=check_out,
            guests=2,
            total_amount=10000,
            total_nights=(check_out - check_in).days,
            status=status,
            payment_status="paid" if fields.get("is_paid") else "unpaid",
        )
        values.update(fields)
        async with session_factory() as session:
            booking = Booking(**values)
            session.add(booking)
            await session.commit()
        return booking

    return _add


@pytest.fixture
def fetch_booking(session_factory):
    async def _fetch(booking_id: str) -> Booking:
        async with session_factory() as session:
            res = await session.execute(select(Booking).where(Booking.booking_id == booking_id))
            return res.scalar_one()

    return _fetch


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def rabbit():
    return RecordingRabbit()


@pytest.fixture
def notifier(rabbit):
    return Notifier(rabbit=rabbit)


@pytest.fixture
async def client(session_factory, gateway, notifier):
    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier

    transport = ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
