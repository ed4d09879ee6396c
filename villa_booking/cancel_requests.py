from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .bookings import DEFAULT_CANCEL_REASON, apply_cancellation
from .config import SERVICE_NAME
from .errors import BadRequest, Conflict, Forbidden, NotFound
from .models import ACTIVE_STATUSES, Booking, CancelRequest, utcnow
from .payments import RazorpayGateway
from .rbac import require_role, resolve_ownership
from .refunds import Refund, compute_refund, days_until
from .security import Actor

DECISIONS = ("approved", "rejected")


async def submit_cancel_request(
    db: AsyncSession,
    booking_id: str,
    actor: Actor,
    reason: str | None,
    now: datetime | None = None,
) -> CancelRequest:
    """
    Records a cancellation waiting for admin approval. The refund shown
    to the guest is computed now and applied as-is on approval.
    """
    now = now or utcnow()

    booking = (await db.execute(select(Booking).where(Booking.booking_id == booking_id))).scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found")

    if booking.status not in ACTIVE_STATUSES:
        raise Conflict(f"Booking is already {booking.status}")

    if not resolve_ownership(booking, actor):
        raise Forbidden("You can only request cancellation of your own bookings")

    open_request = await db.execute(
        select(CancelRequest.id).where(CancelRequest.booking_id == booking_id, CancelRequest.status == "pending")
    )
    if open_request.first():
        raise Conflict("A cancellation request for this booking is already pending")

    refund = compute_refund(booking.total_amount, booking.check_in, now)
    request = CancelRequest(
        booking_id=booking.booking_id,
        user_id=actor.id,
        user_email=(actor.email or booking.email).lower(),
        reason=(reason or "").strip() or DEFAULT_CANCEL_REASON,
        villa_name=booking.villa_name,
        check_in=booking.check_in,
        check_out=booking.check_out,
        status="pending",
        refund_amount=refund.amount,
        refund_percentage=refund.percentage,
        created_at=now,
        updated_at=now,
    )
    db.add(request)
    await db.commit()

    print(f"[{SERVICE_NAME}] cancel request {request.id} submitted for booking {booking_id}")
    return request


async def process_cancel_request(
    db: AsyncSession,
    request_id: int,
    admin: Actor,
    decision: str,
    admin_response: str | None,
    gateway: RazorpayGateway,
    now: datetime | None = None,
) -> tuple[CancelRequest, Booking | None]:
    now = now or utcnow()
    require_role(admin, ["admin"])

    if decision not in DECISIONS:
        raise BadRequest("decision must be 'approved' or 'rejected'")

    q = select(CancelRequest).where(CancelRequest.id == request_id).with_for_update()
    request = (await db.execute(q)).scalar_one_or_none()
    if not request:
        raise NotFound("Cancel request not found")
    if request.status != "pending":
        raise Conflict(f"Cancel request has already been {request.status}")

    booking = None
    if decision == "approved":
        q = select(Booking).where(Booking.booking_id == request.booking_id).with_for_update()
        booking = (await db.execute(q)).scalar_one_or_none()
        if not booking:
            raise NotFound("Booking not found")
        if booking.status not in ACTIVE_STATUSES:
            raise Conflict(f"Booking is already {booking.status}")

    request.status = decision
    request.admin_response = admin_response
    request.admin_action_at = now
    request.updated_at = now

    if booking is None:
        await db.commit()
        print(f"[{SERVICE_NAME}] cancel request {request.id} rejected")
        return request, None

    refund = Refund(
        percentage=request.refund_percentage,
        amount=request.refund_amount,
        days_until_check_in=days_until(booking.check_in, now),
    )
    try:
        # commits the request decision together with the booking
        booking = await apply_cancellation(db, booking, admin, request.reason, refund, gateway, now)
    except Exception:
        await db.rollback()
        raise
    return request, booking


async def list_cancel_requests(db: AsyncSession, status: str | None = None) -> list[CancelRequest]:
    q = select(CancelRequest)
    if status:
        q = q.where(CancelRequest.status == status)
    res = await db.execute(q.order_by(CancelRequest.created_at.desc()))
    return list(res.scalars().all())


async def list_user_cancel_requests(db: AsyncSession, actor: Actor) -> list[CancelRequest]:
    owned = []
    if actor.id:
        owned.append(CancelRequest.user_id == actor.id)
    if actor.email:
        owned.append(func.lower(CancelRequest.user_email) == actor.email.strip().lower())
    if not owned:
        return []

    res = await db.execute(select(CancelRequest).where(or_(*owned)).order_by(CancelRequest.created_at.desc()))
    return list(res.scalars().all())
