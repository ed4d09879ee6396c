from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from . import availability, blocked_dates, bookings, cancel_requests
from .db import get_db
from .notifications import Notifier, get_notifier
from .payments import RazorpayGateway, cb_payments, get_payment_gateway
from .rbac import require_role
from .schemas import (
    BlockedDateCreate,
    BlockedDateListResponse,
    BlockedDateOut,
    BlockedDateResponse,
    BlockedDatesSummary,
    BlockedDatesSummaryResponse,
    BlockedDateUpdate,
    BookingListResponse,
    BookingOut,
    CancelRequestListResponse,
    CancelRequestOut,
    CancelRequestResponse,
    ExpireResponse,
    ProcessCancelRequest,
)
from .security import Actor, get_actor

router = APIRouter(prefix="/admin")


def get_admin(actor: Actor = Depends(get_actor)) -> Actor:
    require_role(actor, ["admin"])
    return actor


def _breaker_registry():
    return {cb_payments.name: cb_payments}


# -------- bookings --------

@router.get("/bookings", response_model=BookingListResponse, tags=["Admin"])
async def all_bookings(
    status: Optional[str] = None,
    villa_id: Optional[int] = None,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_admin),
):
    items = await bookings.list_all_bookings(db, status=status, villa_id=villa_id)
    return BookingListResponse(count=len(items), bookings=[BookingOut.model_validate(b) for b in items])


@router.post("/maintenance/expire", response_model=ExpireResponse, tags=["Admin"])
async def run_expiry(db: AsyncSession = Depends(get_db), admin: Actor = Depends(get_admin)):
    changed = await availability.expire_stale(db)
    return ExpireResponse(changed=changed)


# -------- blocked dates --------

@router.get("/blocked-dates", response_model=BlockedDateListResponse, tags=["Blocked Dates"])
async def list_blocked(
    villa_id: Optional[int] = None,
    include_inactive: bool = False,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_admin),
):
    items = await blocked_dates.list_blocked_dates(db, villa_id=villa_id, active_only=not include_inactive)
    return BlockedDateListResponse(count=len(items), blocked_dates=[BlockedDateOut.model_validate(b) for b in items])


@router.get("/blocked-dates/summary", response_model=BlockedDatesSummaryResponse, tags=["Blocked Dates"])
async def blocked_summary(db: AsyncSession = Depends(get_db), admin: Actor = Depends(get_admin)):
    summary = await blocked_dates.blocked_dates_summary(db)
    return BlockedDatesSummaryResponse(summary=BlockedDatesSummary(**summary))


@router.post("/blocked-dates", response_model=BlockedDateResponse, status_code=201, tags=["Blocked Dates"])
async def create_blocked(data: BlockedDateCreate, db: AsyncSession = Depends(get_db), admin: Actor = Depends(get_admin)):
    block = await blocked_dates.create_blocked_date(db, data, admin)
    return BlockedDateResponse(blocked_date=BlockedDateOut.model_validate(block))


@router.put("/blocked-dates/{block_id}", response_model=BlockedDateResponse, tags=["Blocked Dates"])
async def update_blocked(
    block_id: int,
    data: BlockedDateUpdate,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_admin),
):
    block = await blocked_dates.update_blocked_date(db, block_id, data, admin)
    return BlockedDateResponse(blocked_date=BlockedDateOut.model_validate(block))


@router.delete("/blocked-dates/{block_id}", response_model=BlockedDateResponse, tags=["Blocked Dates"])
async def delete_blocked(block_id: int, db: AsyncSession = Depends(get_db), admin: Actor = Depends(get_admin)):
    block = await blocked_dates.deactivate_blocked_date(db, block_id, admin)
    return BlockedDateResponse(blocked_date=BlockedDateOut.model_validate(block))


# -------- cancel requests --------

@router.get("/cancel-requests", response_model=CancelRequestListResponse, tags=["Cancel Requests"])
async def list_requests(
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_admin),
):
    items = await cancel_requests.list_cancel_requests(db, status=status)
    return CancelRequestListResponse(
        count=len(items),
        cancel_requests=[CancelRequestOut.model_validate(r) for r in items],
    )


@router.post("/cancel-requests/{request_id}/process", response_model=CancelRequestResponse, tags=["Cancel Requests"])
async def process_request(
    request_id: int,
    data: ProcessCancelRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    admin: Actor = Depends(get_admin),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    request, booking = await cancel_requests.process_cancel_request(
        db, request_id, admin, data.decision, data.admin_response, gateway
    )
    background.add_task(notifier.cancel_request_processed, request)
    if booking is not None:
        background.add_task(notifier.booking_cancelled, booking)
    return CancelRequestResponse(
        cancel_request=CancelRequestOut.model_validate(request),
        booking=BookingOut.model_validate(booking) if booking is not None else None,
    )


# -------- payment gateway breaker --------

@router.get("/breakers", tags=["Admin"])
async def breakers_status(admin: Actor = Depends(get_admin)):
    statuses = [await b.status() for b in _breaker_registry().values()]
    return {"success": True, "breakers": statuses}


@router.post("/breakers/{name}/close", tags=["Admin"])
async def breaker_close(name: str, admin: Actor = Depends(get_admin)):
    b = _breaker_registry().get(name)
    if not b:
        raise HTTPException(status_code=404, detail="Breaker not found")
    await b.close()
    return {"success": True, "breaker": await b.status()}
