from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.ext.mutable import MutableList

from .db import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Statuses that hold a villa's dates
ACTIVE_STATUSES = ("pending", "confirmed")
TERMINAL_STATUSES = ("cancelled", "completed", "expired")

BLOCK_REASONS = ("Maintenance", "Private Event", "Renovation", "Owner Use", "Seasonal Closure", "Other")


class Villa(Base):
    __tablename__ = "villas"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    location = Column(String, nullable=True)
    price = Column(Integer, nullable=False, default=0)
    max_guests = Column(Integer, nullable=False)
    bedrooms = Column(Integer, nullable=True)
    bathrooms = Column(Integer, nullable=True)


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    villa_id = Column(Integer, ForeignKey("villas.id"), nullable=False, index=True)
    villa_name = Column(String, nullable=False)

    user_id = Column(String, nullable=True, index=True)
    email = Column(String, nullable=False, index=True)
    guest_name = Column(String, nullable=False)
    address = Column(JSON, nullable=True)

    check_in = Column(Date, nullable=False)
    check_out = Column(Date, nullable=False)
    check_in_time = Column(String, nullable=False, default="14:00")
    check_out_time = Column(String, nullable=False, default="12:00")
    guests = Column(Integer, nullable=False)
    infants = Column(Integer, nullable=False, default=0)

    total_amount = Column(Integer, nullable=False)
    total_nights = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="INR")

    status = Column(String, nullable=False, index=True)  # pending/confirmed/cancelled/completed/expired

    payment_method = Column(String, nullable=False, default="Pay at Villa")
    is_paid = Column(Boolean, nullable=False, default=False)
    payment_id = Column(String, nullable=True)
    order_id = Column(String, nullable=True, index=True)
    payment_status = Column(String, nullable=False, default="unpaid")  # unpaid/paid/failed/refunded/partially_refunded
    payment_failure_reason = Column(String, nullable=True)
    refund_id = Column(String, nullable=True)

    cancel_reason = Column(String, nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    refund_amount = Column(Integer, nullable=False, default=0)
    refund_percentage = Column(Integer, nullable=False, default=0)
    cancellation_history = Column(MutableList.as_mutable(JSON), nullable=False, default=list)

    expired_at = Column(DateTime(timezone=True), nullable=True)

    version = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_bookings_villa_dates", "villa_id", "check_in", "check_out"),
    )

    __mapper_args__ = {"version_id_col": version}


class BlockedDate(Base):
    __tablename__ = "blocked_dates"

    id = Column(Integer, primary_key=True)
    villa_id = Column(Integer, ForeignKey("villas.id"), nullable=False)
    villa_name = Column(String, nullable=False)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)  # exclusive, same as a booking's check_out

    reason = Column(String, nullable=False, default="Maintenance")
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_blocked_dates_villa_dates", "villa_id", "start_date", "end_date"),
    )


class CancelRequest(Base):
    __tablename__ = "cancel_requests"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)

    user_id = Column(String, nullable=True)
    user_email = Column(String, nullable=False, index=True)
    reason = Column(String, nullable=False, default="User initiated cancellation")

    villa_name = Column(String, nullable=True)
    check_in = Column(Date, nullable=True)
    check_out = Column(Date, nullable=True)

    status = Column(String, nullable=False, default="pending", index=True)  # pending/approved/rejected
    refund_amount = Column(Integer, nullable=False, default=0)
    refund_percentage = Column(Integer, nullable=False, default=0)

    admin_response = Column(String, nullable=True)
    admin_action_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
