from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import date, datetime

from redis.exceptions import LockError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .config import SERVICE_NAME, VILLA_LOCK_TIMEOUT_SECONDS, VILLA_LOCK_WAIT_SECONDS
from .errors import BadRequest, Conflict, NotFound
from .models import ACTIVE_STATUSES, BlockedDate, Booking, Villa, utcnow
from .redis_client import redis_client


@dataclass(frozen=True)
class BlockedRange:
    check_in: date
    check_out: date
    source: str  # booking/blocked
    ref: str | None = None


def overlaps(a_start: date, a_end: date, b_start: date, b_end: date) -> bool:
    # half-open ranges: a checkout on the same day as another check-in is free
    return a_start < b_end and a_end > b_start


def validate_range(check_in: date | None, check_out: date | None):
    if check_in is None or check_out is None:
        raise BadRequest("check_in and check_out are required")
    if check_out <= check_in:
        raise BadRequest("check_out must be after check_in")


def _lock_key(villa_id: int) -> str:
    return f"booking:lock:villa:{villa_id}"


@asynccontextmanager
async def villa_lock(villa_id: int):
    """
    Serializes check-then-insert for one villa across workers.
    Fails with Conflict when another request holds the lock for too long.
    """
    lock = redis_client.lock(_lock_key(villa_id), timeout=VILLA_LOCK_TIMEOUT_SECONDS)
    if not await lock.acquire(blocking_timeout=VILLA_LOCK_WAIT_SECONDS):
        raise Conflict("Another booking is being processed for this villa. Please try again.")
    try:
        yield
    finally:
        try:
            await lock.release()
        except LockError as e:
            print(f"[{SERVICE_NAME}] villa lock {villa_id} expired before release: {e}")


async def get_villa(db: AsyncSession, villa_id: int) -> Villa:
    villa = await db.get(Villa, villa_id)
    if not villa:
        raise NotFound("Villa not found")
    return villa


async def expire_stale(db: AsyncSession, villa_id: int | None = None, now: datetime | None = None) -> int:
    """
    Flips every pending or confirmed booking whose checkout date has passed
    to expired, paid or not. Expired rows stay queryable but never block dates.
    Safe to run any number of times.
    """
    now = now or utcnow()
    today = now.date()

    stale = [Booking.status.in_(ACTIVE_STATUSES), Booking.check_out < today]
    if villa_id is not None:
        stale.append(Booking.villa_id == villa_id)

    # read first so the common case takes no write lock
    ids = (await db.execute(select(Booking.id).where(*stale))).scalars().all()
    if not ids:
        return 0

    await db.execute(
        update(Booking)
        .where(Booking.id.in_(ids), Booking.status.in_(ACTIVE_STATUSES))
        .values(status="expired", expired_at=now, updated_at=now, version=Booking.version + 1)
        .execution_options(synchronize_session="fetch")
    )
    await db.commit()

    print(f"[{SERVICE_NAME}] expired {len(ids)} stale bookings")
    return len(ids)


async def find_conflicts(
    db: AsyncSession,
    villa_id: int,
    check_in: date,
    check_out: date,
    exclude_booking_id: str | None = None,
) -> list[BlockedRange]:
    booking_q = select(Booking.booking_id, Booking.check_in, Booking.check_out).where(
        Booking.villa_id == villa_id,
        Booking.status.in_(ACTIVE_STATUSES),
        Booking.check_in < check_out,
        Booking.check_out > check_in,
    )
    if exclude_booking_id:
        booking_q = booking_q.where(Booking.booking_id != exclude_booking_id)

    blocked_q = select(BlockedDate.id, BlockedDate.start_date, BlockedDate.end_date).where(
        BlockedDate.villa_id == villa_id,
        BlockedDate.is_active.is_(True),
        BlockedDate.start_date < check_out,
        BlockedDate.end_date > check_in,
    )

    ranges = [
        BlockedRange(check_in=ci, check_out=co, source="booking", ref=bid)
        for bid, ci, co in (await db.execute(booking_q)).all()
    ]
    ranges += [
        BlockedRange(check_in=start, check_out=end, source="blocked", ref=str(block_id))
        for block_id, start, end in (await db.execute(blocked_q)).all()
    ]
    ranges.sort(key=lambda r: (r.check_in, r.check_out))
    return ranges


async def is_available(
    db: AsyncSession,
    villa_id: int,
    check_in: date,
    check_out: date,
    now: datetime | None = None,
) -> bool:
    validate_range(check_in, check_out)
    await get_villa(db, villa_id)
    await expire_stale(db, villa_id=villa_id, now=now)
    conflicts = await find_conflicts(db, villa_id, check_in, check_out)
    return not conflicts


async def assert_available(
    db: AsyncSession,
    villa_id: int,
    check_in: date,
    check_out: date,
    now: datetime | None = None,
    exclude_booking_id: str | None = None,
) -> Villa:
    validate_range(check_in, check_out)
    villa = await get_villa(db, villa_id)
    await expire_stale(db, villa_id=villa_id, now=now)
    conflicts = await find_conflicts(db, villa_id, check_in, check_out, exclude_booking_id=exclude_booking_id)
    if conflicts:
        raise Conflict("Villa is already booked for the selected dates", ranges=conflicts)
    return villa


async def list_blocked_ranges(db: AsyncSession, villa_id: int, now: datetime | None = None) -> list[BlockedRange]:
    now = now or utcnow()
    await get_villa(db, villa_id)
    await expire_stale(db, villa_id=villa_id, now=now)

    bookings = await db.execute(
        select(Booking.booking_id, Booking.check_in, Booking.check_out).where(
            Booking.villa_id == villa_id,
            Booking.status.in_(ACTIVE_STATUSES),
        )
    )
    blocked = await db.execute(
        select(BlockedDate.id, BlockedDate.start_date, BlockedDate.end_date).where(
            BlockedDate.villa_id == villa_id,
            BlockedDate.is_active.is_(True),
            BlockedDate.end_date > now.date(),
        )
    )

    ranges = [BlockedRange(check_in=ci, check_out=co, source="booking", ref=bid) for bid, ci, co in bookings.all()]
    ranges += [BlockedRange(check_in=s, check_out=e, source="blocked", ref=str(i)) for i, s, e in blocked.all()]
    ranges.sort(key=lambda r: (r.check_in, r.check_out))
    return ranges
