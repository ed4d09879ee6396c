from datetime import date
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from . import availability, bookings, cancel_requests
from .config import RAZORPAY_KEY_ID, SERVICE_NAME
from .db import get_db
from .errors import BadRequest
from .idempotency import is_processed, mark_processed
from .notifications import Notifier, get_notifier
from .payments import RazorpayGateway, get_payment_gateway
from .schemas import (
    AvailabilityResponse,
    BlockedRangeOut,
    BlockedRangesResponse,
    BookingListResponse,
    BookingOut,
    BookingResponse,
    CancelBookingRequest,
    CancelRequestListResponse,
    CancelRequestOut,
    CancelRequestResponse,
    CreateBookingRequest,
    PaymentOrderOut,
    PaymentOrderResponse,
    PaymentProof,
    SubmitCancelRequest,
    VerifyPaymentRequest,
)
from .security import Actor, get_actor

router = APIRouter()

CAPTURE_EVENTS = ("payment.captured", "payment.authorized", "order.paid")


def _order_out(order: dict) -> PaymentOrderOut:
    return PaymentOrderOut(
        id=order["id"],
        amount=order.get("amount", 0),
        currency=order.get("currency", ""),
        receipt=order.get("receipt"),
        status=order.get("status"),
    )


# -------- bookings --------

@router.post("/bookings", response_model=BookingResponse, status_code=201, tags=["Bookings"])
async def create_booking(
    data: CreateBookingRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: Notifier = Depends(get_notifier),
):
    booking = await bookings.create_booking(db, data, actor)
    background.add_task(notifier.booking_created, booking)
    return BookingResponse(booking=BookingOut.model_validate(booking))


@router.get("/bookings/mine", response_model=BookingListResponse, tags=["Bookings"])
async def my_bookings(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    items = await bookings.list_user_bookings(db, actor)
    return BookingListResponse(count=len(items), bookings=[BookingOut.model_validate(b) for b in items])


@router.get("/bookings/{booking_id}", response_model=BookingResponse, tags=["Bookings"])
async def get_booking(booking_id: str, db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    booking = await bookings.get_booking(db, booking_id, actor)
    return BookingResponse(booking=BookingOut.model_validate(booking))


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, tags=["Bookings"])
async def cancel_booking(
    booking_id: str,
    background: BackgroundTasks,
    data: Optional[CancelBookingRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    reason = data.reason if data else None
    booking = await bookings.cancel_booking(db, booking_id, actor, reason, gateway)
    background.add_task(notifier.booking_cancelled, booking)
    return BookingResponse(booking=BookingOut.model_validate(booking))


@router.post("/bookings/{booking_id}/payment-order", response_model=PaymentOrderResponse, tags=["Payments"])
async def create_payment_order(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    _, order = await bookings.create_payment_order(db, booking_id, actor, gateway)
    return PaymentOrderResponse(key_id=RAZORPAY_KEY_ID, order=_order_out(order))


@router.post("/bookings/{booking_id}/confirm-payment", response_model=BookingResponse, tags=["Payments"])
async def confirm_payment(
    booking_id: str,
    proof: PaymentProof,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    booking = await bookings.confirm_payment(db, booking_id, proof, gateway, actor=actor)
    return BookingResponse(booking=BookingOut.model_validate(booking))


# -------- cancel requests --------

@router.post(
    "/bookings/{booking_id}/cancel-requests",
    response_model=CancelRequestResponse,
    status_code=201,
    tags=["Cancel Requests"],
)
async def submit_cancel_request(
    booking_id: str,
    background: BackgroundTasks,
    data: Optional[SubmitCancelRequest] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    notifier: Notifier = Depends(get_notifier),
):
    request = await cancel_requests.submit_cancel_request(db, booking_id, actor, data.reason if data else None)
    background.add_task(notifier.cancel_request_submitted, request)
    return CancelRequestResponse(cancel_request=CancelRequestOut.model_validate(request))


@router.get("/cancel-requests/mine", response_model=CancelRequestListResponse, tags=["Cancel Requests"])
async def my_cancel_requests(db: AsyncSession = Depends(get_db), actor: Actor = Depends(get_actor)):
    items = await cancel_requests.list_user_cancel_requests(db, actor)
    return CancelRequestListResponse(
        count=len(items),
        cancel_requests=[CancelRequestOut.model_validate(r) for r in items],
    )


# -------- availability --------

@router.get("/villas/{villa_id}/availability", response_model=AvailabilityResponse, tags=["Availability"])
async def villa_availability(
    villa_id: int,
    check_in: date = Query(...),
    check_out: date = Query(...),
    db: AsyncSession = Depends(get_db),
):
    available = await availability.is_available(db, villa_id, check_in, check_out)
    return AvailabilityResponse(villa_id=villa_id, check_in=check_in, check_out=check_out, available=available)


@router.get("/villas/{villa_id}/blocked-ranges", response_model=BlockedRangesResponse, tags=["Availability"])
async def villa_blocked_ranges(villa_id: int, db: AsyncSession = Depends(get_db)):
    ranges = await availability.list_blocked_ranges(db, villa_id)
    return BlockedRangesResponse(villa_id=villa_id, ranges=[BlockedRangeOut.model_validate(r) for r in ranges])


# -------- payments --------

@router.post("/payments/orders", response_model=PaymentOrderResponse, tags=["Payments"])
async def create_checkout_order(
    data: CreateBookingRequest,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    order = await bookings.create_checkout_order(db, data, actor, gateway)
    return PaymentOrderResponse(key_id=RAZORPAY_KEY_ID, order=_order_out(order))


@router.post("/payments/verify", response_model=BookingResponse, status_code=201, tags=["Payments"])
async def verify_payment(
    data: VerifyPaymentRequest,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_actor),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
    notifier: Notifier = Depends(get_notifier),
):
    booking = await bookings.create_paid_booking(db, data.booking, data.payment, actor, gateway)
    background.add_task(notifier.booking_created, booking)
    return BookingResponse(booking=BookingOut.model_validate(booking))


@router.post("/payments/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: RazorpayGateway = Depends(get_payment_gateway),
):
    body = await request.body()
    if not gateway.verify_webhook_signature(body, request.headers.get("X-Razorpay-Signature")):
        raise BadRequest("Invalid webhook signature")

    try:
        payload = await request.json()
    except ValueError:
        raise BadRequest("Webhook body is not valid JSON")

    event_id = request.headers.get("X-Razorpay-Event-Id") or payload.get("id")
    if event_id and await is_processed(event_id):
        return {"success": True, "duplicate": True}

    event = payload.get("event")
    payment = ((payload.get("payload") or {}).get("payment") or {}).get("entity") or {}
    order_id = payment.get("order_id")
    payment_id = payment.get("id")

    if order_id and event in CAPTURE_EVENTS and payment_id:
        await bookings.confirm_payment_by_order(db, order_id, payment_id)
    elif order_id and event == "payment.failed":
        await bookings.mark_payment_failed(db, order_id, payment.get("error_description"))
    else:
        print(f"[{SERVICE_NAME}] webhook {event} ignored")

    if event_id:
        await mark_processed(event_id)
    return {"success": True}
