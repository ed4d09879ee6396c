import asyncio
from datetime import date

import pytest

from conftest import ADMIN, GUEST, NOW, OTHER, sign
from villa_booking import bookings
from villa_booking.bookings import (
    cancel_booking,
    confirm_payment,
    create_booking,
    create_checkout_order,
    create_paid_booking,
    create_payment_order,
    get_booking,
    list_user_bookings,
    mark_payment_failed,
)
from villa_booking.errors import BadRequest, Conflict, Forbidden, Internal, NotFound
from villa_booking.models import Booking
from villa_booking.schemas import CreateBookingRequest, PaymentProof
from villa_booking.security import Actor

pytestmark = pytest.mark.anyio


def booking_request(**overrides) -> CreateBookingRequest:
    data = dict(
        villa_id=1,
        email="Guest@Example.com",
        guest_name="Asha Guest",
        check_in=date(2025, 6, 10),
        check_out=date(2025, 6, 13),
        guests=2,
        total_amount=15000,
    )
    data.update(overrides)
    return CreateBookingRequest(**data)


def proof(order_id="order_1", payment_id="pay_1") -> PaymentProof:
    return PaymentProof(order_id=order_id, payment_id=payment_id, signature=sign(order_id, payment_id))


async def test_create_booking_starts_pending(db, villa):
    booking = await create_booking(db, booking_request(total_amount=15000.4), GUEST, now=NOW)

    assert booking.status == "pending"
    assert booking.payment_status == "unpaid"
    assert booking.is_paid is False
    assert booking.total_nights == 3
    assert booking.total_amount == 15000
    assert booking.email == "guest@example.com"
    assert booking.user_id == GUEST.id
    assert booking.check_in_time == "14:00"
    assert booking.villa_name == "Sea Breeze"
    assert booking.version == 1


async def test_amount_is_rounded_half_up_then_bounded(db, villa):
    booking = await create_booking(db, booking_request(total_amount=99.5), GUEST, now=NOW)
    assert booking.total_amount == 100

    with pytest.raises(BadRequest):
        await create_booking(db, booking_request(total_amount=99.4, check_in=date(2025, 7, 1), check_out=date(2025, 7, 2)), GUEST, now=NOW)
    with pytest.raises(BadRequest):
        await create_booking(db, booking_request(total_amount=1_000_001, check_in=date(2025, 7, 1), check_out=date(2025, 7, 2)), GUEST, now=NOW)


@pytest.mark.parametrize(
    "overrides",
    [
        {"guest_name": "   "},
        {"email": "not-an-email"},
        {"guests": 0},
        {"guests": 7},
        {"check_in": date(2025, 4, 30), "check_out": date(2025, 5, 3)},
        {"check_out": date(2025, 6, 10)},
    ],
)
async def test_invalid_input_is_bad_request(db, villa, overrides):
    with pytest.raises(BadRequest):
        await create_booking(db, booking_request(**overrides), GUEST, now=NOW)


async def test_unknown_villa_is_not_found(db, villa):
    with pytest.raises(NotFound):
        await create_booking(db, booking_request(villa_id=42), GUEST, now=NOW)


async def test_overlap_is_rejected_with_ranges(db, add_booking):
    await add_booking(date(2025, 6, 12), date(2025, 6, 15))

    with pytest.raises(Conflict) as exc:
        await create_booking(db, booking_request(), GUEST, now=NOW)
    assert [(r.check_in, r.check_out) for r in exc.value.ranges] == [(date(2025, 6, 12), date(2025, 6, 15))]


async def test_concurrent_requests_for_same_range_admit_exactly_one(session_factory, villa):
    async def attempt(actor):
        async with session_factory() as session:
            return await create_booking(session, booking_request(email=actor.email), actor, now=NOW)

    results = await asyncio.gather(attempt(GUEST), attempt(OTHER), return_exceptions=True)

    created = [r for r in results if isinstance(r, Booking)]
    conflicts = [r for r in results if isinstance(r, Conflict)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert created[0].status == "pending"

    async with session_factory() as session:
        assert len(await list_user_bookings(session, GUEST, now=NOW) + await list_user_bookings(session, OTHER, now=NOW)) == 1


async def test_paid_booking_is_created_confirmed(db, villa, gateway):
    order = await create_checkout_order(db, booking_request(), GUEST, gateway, now=NOW)
    assert order["id"] == "order_1"

    booking = await create_paid_booking(db, booking_request(), proof(), GUEST, gateway, now=NOW)

    assert booking.status == "confirmed"
    assert booking.is_paid is True
    assert booking.payment_status == "paid"
    assert booking.payment_id == "pay_1"

    again = await create_paid_booking(db, booking_request(), proof(), GUEST, gateway, now=NOW)
    assert again.booking_id == booking.booking_id


async def test_paid_booking_rejects_bad_signature(db, villa, gateway):
    bad = PaymentProof(order_id="order_1", payment_id="pay_1", signature="0" * 64)
    with pytest.raises(BadRequest):
        await create_paid_booking(db, booking_request(), bad, GUEST, gateway, now=NOW)


@pytest.mark.parametrize(
    "overrides, fields",
    [
        ({"total_amount": 1_000_000}, ["amount"]),
        ({"check_in": date(2025, 8, 1), "check_out": date(2025, 8, 20)}, ["check_in", "check_out"]),
        ({"total_amount": 1_000_000, "check_out": date(2025, 6, 30)}, ["amount", "check_out"]),
    ],
)
async def test_paid_booking_must_match_the_paid_order(db, villa, gateway, overrides, fields):
    await create_checkout_order(db, booking_request(total_amount=100), GUEST, gateway, now=NOW)

    with pytest.raises(BadRequest) as exc:
        await create_paid_booking(db, booking_request(**{"total_amount": 100, **overrides}), proof(), GUEST, gateway, now=NOW)

    assert exc.value.extra["fields"] == fields
    assert await list_user_bookings(db, GUEST, now=NOW) == []


async def test_paid_booking_rejects_order_of_another_user(db, villa, gateway):
    await create_checkout_order(db, booking_request(), OTHER, gateway, now=NOW)

    with pytest.raises(BadRequest) as exc:
        await create_paid_booking(db, booking_request(), proof(), GUEST, gateway, now=NOW)
    assert exc.value.extra["fields"] == ["user_id"]


async def test_confirm_payment_is_idempotent(db, add_booking, gateway, fetch_booking):
    pending = await add_booking(date(2025, 6, 10), date(2025, 6, 13), status="pending", order_id="order_1")

    first = await confirm_payment(db, pending.booking_id, proof(), gateway, now=NOW)
    assert first.status == "confirmed"
    assert first.payment_status == "paid"
    version = (await fetch_booking(pending.booking_id)).version

    second = await confirm_payment(db, pending.booking_id, proof(), gateway, now=NOW)
    stored = await fetch_booking(pending.booking_id)
    assert second.status == "confirmed"
    assert stored.version == version
    assert stored.payment_id == "pay_1"


async def test_confirm_payment_rejects_mismatches(db, add_booking, gateway):
    pending = await add_booking(date(2025, 6, 10), date(2025, 6, 13), status="pending", order_id="order_1")
    await confirm_payment(db, pending.booking_id, proof(), gateway, now=NOW)

    with pytest.raises(Conflict):
        await confirm_payment(db, pending.booking_id, proof(payment_id="pay_2"), gateway, now=NOW)

    with pytest.raises(BadRequest):
        bad = PaymentProof(order_id="order_1", payment_id="pay_1", signature="deadbeef")
        await confirm_payment(db, pending.booking_id, bad, gateway, now=NOW)

    cancelled = await add_booking(date(2025, 7, 10), date(2025, 7, 13), status="cancelled")
    with pytest.raises(Conflict):
        await confirm_payment(db, cancelled.booking_id, proof(order_id="order_9"), gateway, now=NOW)

    other_order = await add_booking(date(2025, 8, 10), date(2025, 8, 13), status="pending", order_id="order_5")
    with pytest.raises(BadRequest):
        await confirm_payment(db, other_order.booking_id, proof(order_id="order_6"), gateway, now=NOW)


async def test_payment_order_is_recorded_on_pending_booking(db, add_booking, gateway, fetch_booking):
    pending = await add_booking(date(2025, 6, 10), date(2025, 6, 13), status="pending")

    _, order = await create_payment_order(db, pending.booking_id, GUEST, gateway)

    assert order["amount"] == 10000 * 100
    assert (await fetch_booking(pending.booking_id)).order_id == order["id"]

    with pytest.raises(Forbidden):
        await create_payment_order(db, pending.booking_id, OTHER, gateway)

    confirmed = await add_booking(date(2025, 7, 10), date(2025, 7, 13), status="confirmed", is_paid=True)
    with pytest.raises(Conflict):
        await create_payment_order(db, confirmed.booking_id, GUEST, gateway)


async def test_failed_payment_is_recorded(db, add_booking, fetch_booking):
    pending = await add_booking(date(2025, 6, 10), date(2025, 6, 13), status="pending", order_id="order_7")

    await mark_payment_failed(db, "order_7", "Card declined")

    stored = await fetch_booking(pending.booking_id)
    assert stored.payment_status == "failed"
    assert stored.payment_failure_reason == "Card declined"
    assert stored.status == "pending"
    assert await mark_payment_failed(db, "order_unknown", "x") is None


async def test_cancel_paid_booking_31_days_out(db, add_booking, gateway, fetch_booking):
    paid = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="confirmed", is_paid=True, payment_id="pay_42")

    booking = await cancel_booking(db, paid.booking_id, GUEST, "Change of plans", gateway, now=NOW)

    assert booking.status == "cancelled"
    assert booking.refund_percentage == 75
    assert booking.refund_amount == 7500
    assert booking.payment_status == "partially_refunded"
    assert booking.refund_id == "rfnd_1"
    assert gateway.refunds == [("pay_42", 750000)]

    stored = await fetch_booking(paid.booking_id)
    assert stored.cancel_reason == "Change of plans"
    assert len(stored.cancellation_history) == 1
    entry = stored.cancellation_history[0]
    assert entry["refund_amount"] == 7500
    assert entry["refund_percentage"] == 75
    assert entry["cancelled_by"] == GUEST.email


async def test_cancel_three_days_out_refunds_nothing(db, add_booking, gateway):
    booking = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="confirmed", is_paid=True, payment_id="pay_42")
    late = NOW.replace(month=5, day=29)

    cancelled = await cancel_booking(db, booking.booking_id, GUEST, None, gateway, now=late)

    assert cancelled.refund_percentage == 0
    assert cancelled.refund_amount == 0
    assert cancelled.cancel_reason == "User initiated cancellation"
    assert cancelled.payment_status == "paid"
    assert gateway.refunds == []


async def test_cancel_authorization(db, add_booking, gateway):
    booking = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="pending")

    with pytest.raises(Forbidden):
        await cancel_booking(db, booking.booking_id, OTHER, None, gateway, now=NOW)

    # same contact email, different identity subject
    by_email = Actor(id="phone-user-9", email="GUEST@example.com", role="user")
    cancelled = await cancel_booking(db, booking.booking_id, by_email, None, gateway, now=NOW)
    assert cancelled.status == "cancelled"

    with pytest.raises(Conflict):
        await cancel_booking(db, booking.booking_id, ADMIN, None, gateway, now=NOW)


async def test_admin_can_cancel_any_booking(db, add_booking, gateway):
    booking = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="confirmed")

    cancelled = await cancel_booking(db, booking.booking_id, ADMIN, "Overbooked", gateway, now=NOW)

    assert cancelled.status == "cancelled"
    assert cancelled.cancellation_history[-1]["role"] == "admin"


async def test_failed_refund_leaves_booking_untouched(db, add_booking, gateway, fetch_booking):
    booking = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="confirmed", is_paid=True, payment_id="pay_42")
    gateway.fail_refunds = True

    with pytest.raises(Internal):
        await cancel_booking(db, booking.booking_id, GUEST, None, gateway, now=NOW)

    stored = await fetch_booking(booking.booking_id)
    assert stored.status == "confirmed"
    assert stored.payment_status == "paid"
    assert stored.cancellation_history == []


async def test_retry_after_failed_commit_reuses_the_refund(db, add_booking, gateway, fetch_booking, monkeypatch):
    booking = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="confirmed", is_paid=True, payment_id="pay_42")
    real_commit = bookings._commit
    attempts = []

    async def commit_fails_once(session):
        attempts.append(session)
        if len(attempts) == 1:
            await session.rollback()
            raise Conflict("Booking was modified by another request. Please retry.")
        await real_commit(session)

    monkeypatch.setattr(bookings, "_commit", commit_fails_once)

    with pytest.raises(Conflict):
        await cancel_booking(db, booking.booking_id, GUEST, None, gateway, now=NOW)
    assert (await fetch_booking(booking.booking_id)).status == "confirmed"

    cancelled = await cancel_booking(db, booking.booking_id, GUEST, None, gateway, now=NOW)

    assert cancelled.status == "cancelled"
    assert cancelled.refund_id == "rfnd_1"
    assert gateway.refunds == [("pay_42", 750000)]
    assert gateway.refund_keys == {f"cancel-{booking.booking_id}": "rfnd_1"}


async def test_confirm_after_concurrent_cancel_is_a_conflict(session_factory, add_booking, gateway, fetch_booking):
    booking = await add_booking(date(2025, 6, 10), date(2025, 6, 13), status="pending", order_id="order_1")

    async with session_factory() as first, session_factory() as second:
        # second session already holds the pending row
        await bookings._load(second, booking.booking_id)

        await cancel_booking(first, booking.booking_id, GUEST, None, gateway, now=NOW)
        with pytest.raises(Conflict):
            await confirm_payment(second, booking.booking_id, proof(), gateway, now=NOW)

    stored = await fetch_booking(booking.booking_id)
    assert stored.status == "cancelled"
    assert stored.is_paid is False


async def test_stale_version_write_is_a_conflict(session_factory, add_booking, gateway, fetch_booking):
    booking = await add_booking(date(2025, 6, 10), date(2025, 6, 13), status="pending", order_id="order_1")

    async with session_factory() as first, session_factory() as second:
        stale = await bookings._load(second, booking.booking_id)
        assert stale.version == 1

        await cancel_booking(first, booking.booking_id, GUEST, None, gateway, now=NOW)

        bookings._mark_paid(stale, "order_1", "pay_1", NOW)
        with pytest.raises(Conflict):
            await bookings._commit(second)

    stored = await fetch_booking(booking.booking_id)
    assert stored.status == "cancelled"
    assert stored.version == 2
    assert stored.payment_id is None


async def test_cancellation_can_require_approval(db, add_booking, gateway, monkeypatch):
    monkeypatch.setattr(bookings, "CANCELLATION_REQUIRES_APPROVAL", True)
    booking = await add_booking(date(2025, 6, 1), date(2025, 6, 5), status="confirmed")

    with pytest.raises(Forbidden):
        await cancel_booking(db, booking.booking_id, GUEST, None, gateway, now=NOW)

    cancelled = await cancel_booking(db, booking.booking_id, ADMIN, None, gateway, now=NOW)
    assert cancelled.status == "cancelled"


async def test_reads_are_owner_or_admin(db, add_booking):
    mine = await add_booking(date(2025, 6, 1), date(2025, 6, 5))
    await add_booking(date(2025, 7, 1), date(2025, 7, 5), user_id=OTHER.id, email=OTHER.email)

    assert (await get_booking(db, mine.booking_id, GUEST)).booking_id == mine.booking_id
    assert (await get_booking(db, mine.booking_id, ADMIN)).booking_id == mine.booking_id
    with pytest.raises(Forbidden):
        await get_booking(db, mine.booking_id, OTHER)
    with pytest.raises(NotFound):
        await get_booking(db, "missing", ADMIN)

    listed = await list_user_bookings(db, GUEST, now=NOW)
    assert [b.booking_id for b in listed] == [mine.booking_id]
