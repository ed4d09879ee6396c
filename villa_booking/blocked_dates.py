from collections import Counter
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .availability import expire_stale, find_conflicts, get_villa, validate_range, villa_lock
from .config import SERVICE_NAME
from .errors import BadRequest, Conflict, NotFound
from .models import BlockedDate, utcnow
from .rbac import require_role
from .schemas import BlockedDateCreate, BlockedDateUpdate
from .security import Actor


def _check_window(start_date: date, end_date: date, today: date):
    validate_range(start_date, end_date)
    if start_date < today:
        raise BadRequest("Cannot block dates in the past")


async def _assert_free(db: AsyncSession, villa_id: int, start_date: date, end_date: date, exclude_id: int | None = None):
    conflicts = await find_conflicts(db, villa_id, start_date, end_date)

    exclude_ref = str(exclude_id) if exclude_id is not None else None
    blocked = [r for r in conflicts if r.source == "blocked" and r.ref != exclude_ref]
    if blocked:
        raise Conflict("This date range overlaps with an existing blocked period", ranges=blocked)

    booked = [r for r in conflicts if r.source == "booking"]
    if booked:
        raise Conflict(
            f"Cannot block these dates as there are {len(booked)} existing booking(s) in this period",
            ranges=booked,
        )


async def create_blocked_date(
    db: AsyncSession,
    data: BlockedDateCreate,
    admin: Actor,
    now: datetime | None = None,
) -> BlockedDate:
    now = now or utcnow()
    require_role(admin, ["admin"])
    _check_window(data.start_date, data.end_date, now.date())

    villa = await get_villa(db, data.villa_id)
    await expire_stale(db, villa_id=villa.id, now=now)

    async with villa_lock(villa.id):
        await _assert_free(db, villa.id, data.start_date, data.end_date)

        block = BlockedDate(
            villa_id=villa.id,
            villa_name=villa.name,
            start_date=data.start_date,
            end_date=data.end_date,
            reason=data.reason,
            description=data.description,
            is_active=True,
            created_by=admin.email or admin.id or "admin",
            created_at=now,
            updated_at=now,
        )
        db.add(block)
        await db.commit()

    print(f"[{SERVICE_NAME}] villa {villa.id} blocked {block.start_date}..{block.end_date} ({block.reason})")
    return block


async def _get_block(db: AsyncSession, block_id: int) -> BlockedDate:
    block = await db.get(BlockedDate, block_id)
    if not block:
        raise NotFound("Blocked date not found")
    return block


async def update_blocked_date(
    db: AsyncSession,
    block_id: int,
    data: BlockedDateUpdate,
    admin: Actor,
    now: datetime | None = None,
) -> BlockedDate:
    now = now or utcnow()
    require_role(admin, ["admin"])
    block = await _get_block(db, block_id)

    start_date = data.start_date or block.start_date
    end_date = data.end_date or block.end_date
    is_active = block.is_active if data.is_active is None else data.is_active
    validate_range(start_date, end_date)

    dates_changed = (start_date, end_date) != (block.start_date, block.end_date)
    reactivated = is_active and not block.is_active

    if is_active and (dates_changed or reactivated):
        if start_date != block.start_date and start_date < now.date():
            raise BadRequest("Cannot block dates in the past")
        async with villa_lock(block.villa_id):
            await _assert_free(db, block.villa_id, start_date, end_date, exclude_id=block.id)
            _apply_update(block, data, start_date, end_date, is_active, now)
            await db.commit()
    else:
        _apply_update(block, data, start_date, end_date, is_active, now)
        await db.commit()

    return block


def _apply_update(block: BlockedDate, data: BlockedDateUpdate, start_date: date, end_date: date, is_active: bool, now: datetime):
    block.start_date = start_date
    block.end_date = end_date
    block.is_active = is_active
    if data.reason is not None:
        block.reason = data.reason
    if data.description is not None:
        block.description = data.description
    block.updated_at = now


async def deactivate_blocked_date(db: AsyncSession, block_id: int, admin: Actor, now: datetime | None = None) -> BlockedDate:
    require_role(admin, ["admin"])
    block = await _get_block(db, block_id)
    block.is_active = False
    block.updated_at = now or utcnow()
    await db.commit()

    print(f"[{SERVICE_NAME}] blocked date {block.id} on villa {block.villa_id} removed")
    return block


async def list_blocked_dates(db: AsyncSession, villa_id: int | None = None, active_only: bool = True) -> list[BlockedDate]:
    q = select(BlockedDate)
    if villa_id is not None:
        q = q.where(BlockedDate.villa_id == villa_id)
    if active_only:
        q = q.where(BlockedDate.is_active.is_(True))
    res = await db.execute(q.order_by(BlockedDate.start_date, BlockedDate.end_date))
    return list(res.scalars().all())


async def blocked_dates_summary(db: AsyncSession, now: datetime | None = None) -> dict:
    today = (now or utcnow()).date()
    blocks = list((await db.execute(select(BlockedDate))).scalars().all())
    active = [b for b in blocks if b.is_active]

    return {
        "total": len(blocks),
        "active": len(active),
        "current": sum(1 for b in active if b.start_date <= today < b.end_date),
        "future": sum(1 for b in active if b.start_date > today),
        "by_reason": dict(Counter(b.reason for b in active)),
        "by_villa": dict(Counter(b.villa_name for b in active)),
    }

