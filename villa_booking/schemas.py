from datetime import date, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

BlockReason = Literal["Maintenance", "Private Event", "Renovation", "Owner Use", "Seasonal Closure", "Other"]


class Address(BaseModel):
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    zip_code: Optional[str] = None


class CreateBookingRequest(BaseModel):
    villa_id: int
    email: str
    guest_name: str
    check_in: date
    check_out: date
    check_in_time: str = "14:00"
    check_out_time: str = "12:00"
    guests: int
    infants: int = 0
    total_amount: float
    address: Optional[Address] = None


class PaymentProof(BaseModel):
    order_id: str
    payment_id: str
    signature: str


class VerifyPaymentRequest(BaseModel):
    booking: CreateBookingRequest
    payment: PaymentProof


class CancelBookingRequest(BaseModel):
    reason: Optional[str] = None


class SubmitCancelRequest(BaseModel):
    reason: Optional[str] = None


class ProcessCancelRequest(BaseModel):
    decision: Literal["approved", "rejected"]
    admin_response: Optional[str] = None


class BlockedDateCreate(BaseModel):
    villa_id: int
    start_date: date
    end_date: date
    reason: BlockReason = "Maintenance"
    description: Optional[str] = None


class BlockedDateUpdate(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    reason: Optional[BlockReason] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


# -------- responses --------

class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    villa_id: int
    villa_name: str
    user_id: Optional[str] = None
    email: str
    guest_name: str
    address: Optional[dict] = None
    check_in: date
    check_out: date
    check_in_time: str
    check_out_time: str
    guests: int
    infants: int
    total_amount: int
    total_nights: int
    currency: str
    status: str
    payment_method: str
    is_paid: bool
    payment_id: Optional[str] = None
    order_id: Optional[str] = None
    payment_status: str
    refund_id: Optional[str] = None
    cancel_reason: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    refund_amount: int
    refund_percentage: int
    cancellation_history: List[dict] = Field(default_factory=list)
    expired_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class BookingResponse(BaseModel):
    success: bool = True
    booking: BookingOut


class BookingListResponse(BaseModel):
    success: bool = True
    count: int
    bookings: List[BookingOut]


class BlockedRangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    check_in: date
    check_out: date
    source: str


class AvailabilityResponse(BaseModel):
    success: bool = True
    villa_id: int
    check_in: date
    check_out: date
    available: bool


class BlockedRangesResponse(BaseModel):
    success: bool = True
    villa_id: int
    ranges: List[BlockedRangeOut]


class PaymentOrderOut(BaseModel):
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None
    status: Optional[str] = None


class PaymentOrderResponse(BaseModel):
    success: bool = True
    key_id: str
    order: PaymentOrderOut


class CancelRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    booking_id: str
    user_id: Optional[str] = None
    user_email: str
    reason: str
    villa_name: Optional[str] = None
    check_in: Optional[date] = None
    check_out: Optional[date] = None
    status: str
    refund_amount: int
    refund_percentage: int
    admin_response: Optional[str] = None
    admin_action_at: Optional[datetime] = None
    created_at: datetime


class CancelRequestResponse(BaseModel):
    success: bool = True
    cancel_request: CancelRequestOut
    booking: Optional[BookingOut] = None


class CancelRequestListResponse(BaseModel):
    success: bool = True
    count: int
    cancel_requests: List[CancelRequestOut]


class BlockedDateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    villa_id: int
    villa_name: str
    start_date: date
    end_date: date
    reason: str
    description: Optional[str] = None
    is_active: bool
    created_by: str
    created_at: datetime
    updated_at: datetime


class BlockedDateResponse(BaseModel):
    success: bool = True
    blocked_date: BlockedDateOut


class BlockedDateListResponse(BaseModel):
    success: bool = True
    count: int
    blocked_dates: List[BlockedDateOut]


class BlockedDatesSummary(BaseModel):
    total: int
    active: int
    current: int
    future: int
    by_reason: dict
    by_villa: dict


class BlockedDatesSummaryResponse(BaseModel):
    success: bool = True
    summary: BlockedDatesSummary


class ExpireResponse(BaseModel):
    success: bool = True
    changed: int
