from decimal import Decimal, ROUND_HALF_UP
import logging

from sqlalchemy.orm import Session

from ticketflow.domain.exceptions import InvalidStateTransitionError, NotFoundError
from ticketflow.domain.state_machine import BookingStatus
from ticketflow.domain.webhook_events import CustomerInfo
from ticketflow.infrastructure.config import Settings
from ticketflow.infrastructure.db.models import Booking
from ticketflow.infrastructure.payments.razorpay_gateway import (
    CheckoutLineItem,
    CheckoutRequest,
    CheckoutSession,
    PaymentGateway,
)
from ticketflow.infrastructure.repositories.booking_repository import BookingRepository
from ticketflow.infrastructure.repositories.event_repository import EventRepository

logger = logging.getLogger(__name__)

_CENT = Decimal("0.01")


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CheckoutService:
    """
    Opens a hosted checkout for a pending booking.

    Line items use the unit price captured on the booking, never the live
    ticket-type price. booking_id and event_id ride along as metadata; they
    are the only way the webhook finds its booking again.
    """

    def __init__(self, db: Session, settings: Settings, gateway: PaymentGateway):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)

    def open_checkout(self, booking: Booking) -> CheckoutSession:
        if booking.status != BookingStatus.PENDING:
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state="checkout_opened",
            )

        event = self.event_repository.get_by_id(booking.event_id)
        if not event:
            raise NotFoundError(f"Event {booking.event_id} not found")

        line_items = [
            CheckoutLineItem(
                name=f"{event.title} - {item.ticket_type.name}",
                unit_amount_minor=to_minor_units(item.unit_price),
                quantity=item.quantity,
            )
            for item in booking.items
        ]

        payout_account_id = event.organizer.payout_account_id if event.organizer else None
        platform_fee_minor = 0
        if payout_account_id:
            fee = (Decimal(booking.total_price) * self.settings.platform_fee_percent / 100).quantize(
                _CENT, rounding=ROUND_HALF_UP
            )
            platform_fee_minor = to_minor_units(fee)

        request = CheckoutRequest(
            reference_id=booking.id,
            currency=self.settings.payment_currency,
            description=event.title,
            line_items=line_items,
            customer=CustomerInfo(
                name=booking.customer_name,
                email=booking.customer_email,
                phone=booking.customer_phone,
            ),
            metadata={"booking_id": booking.id, "event_id": event.id},
            payout_account_id=payout_account_id,
            platform_fee_minor=platform_fee_minor,
            callback_url=f"{self.settings.public_base_url.rstrip('/')}/bookings/{booking.id}",
        )

        session = self.gateway.create_checkout(request)
        self.booking_repository.set_payment_session(booking, session.session_id)
        logger.info(
            "Opened checkout %s for booking %s (split=%s)",
            session.session_id,
            booking.id,
            bool(payout_account_id),
        )
        return session

    def open_checkout_for(self, booking_id: str) -> tuple[Booking, CheckoutSession]:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking, self.open_checkout(booking)
