import uuid
from datetime import datetime
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from .availability import assert_available, expire_stale, find_conflicts, validate_range, villa_lock
from .config import CANCELLATION_REQUIRES_APPROVAL, CURRENCY, MAX_BOOKING_AMOUNT, MIN_BOOKING_AMOUNT, SERVICE_NAME
from .errors import BadRequest, Conflict, Forbidden, NotFound
from .models import Booking, TERMINAL_STATUSES, utcnow
from .payments import RazorpayGateway, to_minor_units
from .rbac import require_owner_or_admin, resolve_ownership
from .refunds import Refund, compute_refund, round_half_up
from .schemas import CreateBookingRequest, PaymentProof
from .security import Actor

DEFAULT_CANCEL_REASON = "User initiated cancellation"


def _amount(total_amount) -> int:
    try:
        amount = round_half_up(Decimal(str(total_amount)))
    except (InvalidOperation, TypeError, ValueError):
        raise BadRequest("total_amount must be a number")
    if amount < MIN_BOOKING_AMOUNT or amount > MAX_BOOKING_AMOUNT:
        raise BadRequest(f"total_amount must be between {MIN_BOOKING_AMOUNT} and {MAX_BOOKING_AMOUNT}")
    return amount


def validate_booking_input(data: CreateBookingRequest, now: datetime) -> int:
    """Checks everything that does not need the database; returns the rounded amount."""
    if not data.villa_id:
        raise BadRequest("villa_id is required")
    if not data.email or "@" not in data.email:
        raise BadRequest("A valid email is required")
    if not data.guest_name or not data.guest_name.strip():
        raise BadRequest("guest_name is required")

    validate_range(data.check_in, data.check_out)
    if data.check_in < now.date():
        raise BadRequest("Check-in date cannot be in the past")

    if data.guests is None or data.guests < 1:
        raise BadRequest("At least one guest is required")
    if data.infants is not None and data.infants < 0:
        raise BadRequest("infants cannot be negative")

    return _amount(data.total_amount)


async def _commit(db: AsyncSession):
    try:
        await db.commit()
    except StaleDataError:
        await db.rollback()
        raise Conflict("Booking was modified by another request. Please retry.")


async def _load(db: AsyncSession, booking_id: str, for_update: bool = False) -> Booking:
    q = select(Booking).where(Booking.booking_id == booking_id)
    if for_update:
        q = q.with_for_update().execution_options(populate_existing=True)
    booking = (await db.execute(q)).scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found")
    return booking


def _mark_paid(booking: Booking, order_id: str, payment_id: str, now: datetime):
    booking.status = "confirmed"
    booking.is_paid = True
    booking.payment_id = payment_id
    booking.order_id = order_id
    booking.payment_status = "paid"
    booking.payment_method = "Razorpay"
    booking.payment_failure_reason = None
    booking.updated_at = now


# -------- create --------

async def create_booking(
    db: AsyncSession,
    data: CreateBookingRequest,
    actor: Actor,
    now: datetime | None = None,
    payment: PaymentProof | None = None,
) -> Booking:
    """
    Creates a booking after an advisory availability check and a second
    check under the villa lock. `payment` must already be verified; when
    given the booking starts confirmed and paid, otherwise pending.
    """
    now = now or utcnow()
    amount = validate_booking_input(data, now)

    villa = await assert_available(db, data.villa_id, data.check_in, data.check_out, now=now)
    if data.guests > villa.max_guests:
        raise BadRequest(
            f"This villa allows a maximum of {villa.max_guests} guests. You've selected {data.guests} guests."
        )

    booking = Booking(
        booking_id=str(uuid.uuid4()),
        villa_id=villa.id,
        villa_name=villa.name,
        user_id=actor.id,
        email=data.email.strip().lower(),
        guest_name=data.guest_name.strip(),
        address=data.address.model_dump() if data.address else None,
        check_in=data.check_in,
        check_out=data.check_out,
        check_in_time=data.check_in_time or "14:00",
        check_out_time=data.check_out_time or "12:00",
        guests=data.guests,
        infants=data.infants or 0,
        total_amount=amount,
        total_nights=(data.check_out - data.check_in).days,
        currency=CURRENCY,
        status="pending",
        payment_status="unpaid",
        cancellation_history=[],
        created_at=now,
        updated_at=now,
    )
    if payment:
        _mark_paid(booking, payment.order_id, payment.payment_id, now)

    async with villa_lock(villa.id):
        conflicts = await find_conflicts(db, villa.id, data.check_in, data.check_out)
        if conflicts:
            raise Conflict("Villa is already booked for the selected dates", ranges=conflicts)

        db.add(booking)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            conflicts = await find_conflicts(db, villa.id, data.check_in, data.check_out)
            raise Conflict("Villa is already booked for the selected dates", ranges=conflicts)

    print(f"[{SERVICE_NAME}] booking {booking.booking_id} created for villa {villa.id} ({booking.status})")
    return booking


async def create_checkout_order(
    db: AsyncSession,
    data: CreateBookingRequest,
    actor: Actor,
    gateway: RazorpayGateway,
    now: datetime | None = None,
) -> dict:
    """Gateway order for a stay that is booked only once payment is verified."""
    now = now or utcnow()
    amount = validate_booking_input(data, now)

    villa = await assert_available(db, data.villa_id, data.check_in, data.check_out, now=now)
    if data.guests > villa.max_guests:
        raise BadRequest(f"This villa allows a maximum of {villa.max_guests} guests.")

    receipt = f"stay_{uuid.uuid4().hex[:24]}"
    return await gateway.create_order(
        to_minor_units(amount),
        CURRENCY,
        receipt,
        notes={
            "villa_id": villa.id,
            "villa_name": villa.name,
            "email": data.email,
            "guest_name": data.guest_name,
            "check_in": data.check_in.isoformat(),
            "check_out": data.check_out.isoformat(),
            "guests": data.guests,
            "user_id": actor.id,
        },
    )


async def create_paid_booking(
    db: AsyncSession,
    data: CreateBookingRequest,
    proof: PaymentProof,
    actor: Actor,
    gateway: RazorpayGateway,
    now: datetime | None = None,
) -> Booking:
    """
    Books the stay paid by a checkout order. The booking must describe the
    stay the order was created for, at the amount that was charged.
    """
    now = now or utcnow()
    if not gateway.verify_signature(proof.order_id, proof.payment_id, proof.signature):
        raise BadRequest("Invalid payment signature")

    existing = (
        await db.execute(select(Booking).where(Booking.payment_id == proof.payment_id))
    ).scalar_one_or_none()
    if existing:
        require_owner_or_admin(existing, actor)
        return existing

    amount = validate_booking_input(data, now)
    order = await gateway.fetch_order(proof.order_id)
    mismatched = order_mismatches(order, data, actor, amount)
    if mismatched:
        print(f"[{SERVICE_NAME}] order {proof.order_id} does not match booking request: {', '.join(mismatched)}")
        raise BadRequest("Booking details do not match the paid order", fields=mismatched)

    return await create_booking(db, data, actor, now=now, payment=proof)


def _note(notes: dict, key: str) -> str | None:
    value = notes.get(key)
    return None if value is None else str(value)


def order_mismatches(order: dict, data: CreateBookingRequest, actor: Actor, amount: int) -> list[str]:
    notes = order.get("notes")
    if not isinstance(notes, dict):
        # the gateway returns [] for an order without notes
        notes = {}

    expected = {
        "villa_id": str(data.villa_id),
        "check_in": data.check_in.isoformat(),
        "check_out": data.check_out.isoformat(),
        "user_id": actor.id,
    }
    mismatched = [key for key, value in expected.items() if _note(notes, key) != value]
    if order.get("amount") != to_minor_units(amount):
        mismatched.insert(0, "amount")
    if order.get("currency", CURRENCY) != CURRENCY:
        mismatched.append("currency")
    return mismatched


# -------- payment --------

async def create_payment_order(
    db: AsyncSession,
    booking_id: str,
    actor: Actor,
    gateway: RazorpayGateway,
) -> tuple[Booking, dict]:
    booking = await _load(db, booking_id, for_update=True)
    require_owner_or_admin(booking, actor)

    if booking.status != "pending" or booking.is_paid:
        raise Conflict(f"Cannot create a payment order for a {booking.status} booking")

    order = await gateway.create_order(
        to_minor_units(booking.total_amount),
        booking.currency,
        f"bk_{booking.booking_id.replace('-', '')}",
        notes={"booking_id": booking.booking_id, "villa_id": booking.villa_id, "email": booking.email},
    )
    booking.order_id = order.get("id")
    booking.payment_method = "Razorpay"
    await _commit(db)
    return booking, order


async def confirm_payment(
    db: AsyncSession,
    booking_id: str,
    proof: PaymentProof,
    gateway: RazorpayGateway,
    now: datetime | None = None,
    actor: Actor | None = None,
) -> Booking:
    """
    pending -> confirmed once the payment signature checks out.

    Repeating the call with the same payment id is a no-op. A different
    payment id on a paid booking, or any non-pending status, is a Conflict.
    """
    now = now or utcnow()
    if not gateway.verify_signature(proof.order_id, proof.payment_id, proof.signature):
        raise BadRequest("Invalid payment signature")

    booking = await _load(db, booking_id, for_update=True)
    if actor is not None:
        require_owner_or_admin(booking, actor)

    if booking.is_paid:
        if booking.payment_id == proof.payment_id:
            return booking
        raise Conflict("Booking is already paid with a different payment")

    if booking.status != "pending":
        raise Conflict(f"Booking cannot be confirmed from status {booking.status}")

    if booking.order_id and booking.order_id != proof.order_id:
        raise BadRequest("Payment order does not belong to this booking")

    _mark_paid(booking, proof.order_id, proof.payment_id, now)
    await _commit(db)

    print(f"[{SERVICE_NAME}] booking {booking.booking_id} confirmed with payment {proof.payment_id}")
    return booking


async def confirm_payment_by_order(
    db: AsyncSession,
    order_id: str,
    payment_id: str,
    now: datetime | None = None,
) -> Booking | None:
    """Webhook path: the webhook signature already authenticated the payment."""
    now = now or utcnow()
    q = select(Booking).where(Booking.order_id == order_id).with_for_update()
    booking = (await db.execute(q)).scalar_one_or_none()
    if not booking:
        return None

    if booking.is_paid:
        if booking.payment_id != payment_id:
            print(f"[{SERVICE_NAME}] order {order_id} already paid by {booking.payment_id}, ignoring {payment_id}")
        return booking

    if booking.status != "pending":
        print(f"[{SERVICE_NAME}] payment {payment_id} captured for {booking.status} booking {booking.booking_id}")
        return booking

    _mark_paid(booking, order_id, payment_id, now)
    await _commit(db)
    return booking


async def mark_payment_failed(db: AsyncSession, order_id: str, reason: str | None) -> Booking | None:
    q = select(Booking).where(Booking.order_id == order_id).with_for_update()
    booking = (await db.execute(q)).scalar_one_or_none()
    if not booking or booking.is_paid or booking.status != "pending":
        return None

    booking.payment_status = "failed"
    booking.payment_failure_reason = reason or "Payment failed"
    await _commit(db)

    print(f"[{SERVICE_NAME}] payment failed for booking {booking.booking_id}: {booking.payment_failure_reason}")
    return booking


# -------- cancel --------

async def apply_cancellation(
    db: AsyncSession,
    booking: Booking,
    actor: Actor,
    reason: str | None,
    refund: Refund,
    gateway: RazorpayGateway,
    now: datetime,
) -> Booking:
    """
    Issues the gateway refund for paid bookings, then records the
    cancellation. Nothing is written when the refund call fails.

    The refund is keyed by booking so a retry after a failed commit gets
    the original refund back instead of a second one.
    """
    reason = (reason or "").strip() or DEFAULT_CANCEL_REASON

    if booking.is_paid and booking.payment_id and refund.amount > 0:
        booking.refund_id = await gateway.refund(
            booking.payment_id,
            to_minor_units(refund.amount),
            notes={"booking_id": booking.booking_id, "reason": reason},
            idempotency_key=f"cancel-{booking.booking_id}",
        )
        booking.payment_status = "refunded" if refund.amount >= booking.total_amount else "partially_refunded"

    booking.status = "cancelled"
    booking.cancel_reason = reason
    booking.cancelled_at = now
    booking.refund_amount = refund.amount
    booking.refund_percentage = refund.percentage
    booking.updated_at = now
    booking.cancellation_history = list(booking.cancellation_history or []) + [
        {
            "cancelled_at": now.isoformat(),
            "reason": reason,
            "refund_amount": refund.amount,
            "refund_percentage": refund.percentage,
            "cancelled_by": actor.email or actor.id,
            "role": actor.role,
        }
    ]
    await _commit(db)

    print(
        f"[{SERVICE_NAME}] booking {booking.booking_id} cancelled by {actor.role}, "
        f"refund {refund.percentage}% = {refund.amount}"
    )
    return booking


async def cancel_booking(
    db: AsyncSession,
    booking_id: str,
    actor: Actor,
    reason: str | None,
    gateway: RazorpayGateway,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    booking = await _load(db, booking_id, for_update=True)

    if booking.status in TERMINAL_STATUSES:
        raise Conflict(f"Booking is already {booking.status}")

    if not (actor.is_admin or resolve_ownership(booking, actor)):
        raise Forbidden("You are not authorized to cancel this booking")

    if CANCELLATION_REQUIRES_APPROVAL and not actor.is_admin:
        raise Forbidden("Cancellation requires admin approval. Submit a cancel request instead.")

    refund = compute_refund(booking.total_amount, booking.check_in, now)
    try:
        return await apply_cancellation(db, booking, actor, reason, refund, gateway, now)
    except Exception:
        await db.rollback()
        raise


# -------- reads --------

async def get_booking(db: AsyncSession, booking_id: str, actor: Actor) -> Booking:
    booking = await _load(db, booking_id)
    require_owner_or_admin(booking, actor)
    return booking


async def list_user_bookings(db: AsyncSession, actor: Actor, now: datetime | None = None) -> list[Booking]:
    await expire_stale(db, now=now)

    owned = []
    if actor.id:
        owned.append(Booking.user_id == actor.id)
    if actor.email:
        owned.append(func.lower(Booking.email) == actor.email.strip().lower())
    if not owned:
        return []

    res = await db.execute(select(Booking).where(or_(*owned)).order_by(Booking.created_at.desc()))
    return list(res.scalars().all())


async def list_all_bookings(
    db: AsyncSession,
    status: str | None = None,
    villa_id: int | None = None,
    now: datetime | None = None,
) -> list[Booking]:
    await expire_stale(db, villa_id=villa_id, now=now)

    q = select(Booking)
    if status:
        q = q.where(Booking.status == status)
    if villa_id is not None:
        q = q.where(Booking.villa_id == villa_id)
    res = await db.execute(q.order_by(Booking.created_at.desc()))
    return list(res.scalars().all())
