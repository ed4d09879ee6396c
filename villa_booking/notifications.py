from .config import SERVICE_NAME
from .events import build_event, to_json
from .rabbitmq import RabbitPublisher, publisher


def booking_payload(booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "villa_id": booking.villa_id,
        "villa_name": booking.villa_name,
        "email": booking.email,
        "guest_name": booking.guest_name,
        "check_in": booking.check_in.isoformat(),
        "check_out": booking.check_out.isoformat(),
        "guests": booking.guests,
        "total_amount": booking.total_amount,
        "currency": booking.currency,
        "status": booking.status,
        "payment_status": booking.payment_status,
    }


class Notifier:
    """
    Hands booking changes to the notification service as domain events.

    Runs after the core transaction committed, so every failure is
    printed and swallowed.
    """

    def __init__(self, rabbit: RabbitPublisher = publisher):
        self.rabbit = rabbit

    async def _send(self, event_type: str, data: dict):
        try:
            sent = await self.rabbit.publish(event_type, to_json(build_event(event_type, data)))
            if not sent:
                print(f"[{SERVICE_NAME}] {event_type} not delivered for {data.get('booking_id')}")
        except Exception as e:
            print(f"[{SERVICE_NAME}] notification {event_type} failed: {e}")

    async def booking_created(self, booking):
        await self._send("booking.created", booking_payload(booking))

    async def booking_cancelled(self, booking):
        data = booking_payload(booking)
        data.update(
            cancel_reason=booking.cancel_reason,
            cancelled_at=booking.cancelled_at.isoformat() if booking.cancelled_at else None,
            refund_amount=booking.refund_amount,
            refund_percentage=booking.refund_percentage,
        )
        await self._send("booking.cancelled", data)

    async def cancel_request_submitted(self, request):
        await self._send(
            "cancel_request.submitted",
            {
                "request_id": request.id,
                "booking_id": request.booking_id,
                "user_email": request.user_email,
                "villa_name": request.villa_name,
                "reason": request.reason,
                "refund_amount": request.refund_amount,
                "refund_percentage": request.refund_percentage,
            },
        )

    async def cancel_request_processed(self, request):
        await self._send(
            "cancel_request.processed",
            {
                "request_id": request.id,
                "booking_id": request.booking_id,
                "user_email": request.user_email,
                "status": request.status,
                "admin_response": request.admin_response,
                "refund_amount": request.refund_amount,
                "refund_percentage": request.refund_percentage,
            },
        )


notifier = Notifier()


def get_notifier() -> Notifier:
    return notifier
