from dataclasses import dataclass
from decimal import Decimal
import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from ticketflow.application.booking_service import BookingService, PaymentRefs
from ticketflow.domain.exceptions import (
    InvalidStateTransitionError,
    NotFoundError,
    SignatureInvalidError,
    ValidationError,
)
from ticketflow.domain.organizer import resolve_verification_status
from ticketflow.domain.webhook_events import (
    AccountUpdated,
    CheckoutCompleted,
    PaymentFailed,
    UnhandledEvent,
    WebhookEvent,
)
from ticketflow.infrastructure.config import Settings
from ticketflow.infrastructure.db.models import PaymentWebhookEvent
from ticketflow.infrastructure.payments.razorpay_gateway import PaymentGateway
from ticketflow.infrastructure.repositories.event_repository import EventRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    action: str
    booking_id: str | None = None


class WebhookProcessor:
    """
    Entry point for signed payment-processor notifications.

    Every handler is safe to run repeatedly and in any order. Anything that
    is handled, or known to be a harmless no-op, is acknowledged; unexpected
    errors propagate so the processor redelivers.
    """

    def __init__(self, db: Session, settings: Settings, gateway: PaymentGateway):
        self.db = db
        self.settings = settings
        self.gateway = gateway
        self.bookings = BookingService(db, settings)
        self.event_repository = EventRepository(db)

    def handle(
        self,
        body: bytes,
        signature: str | None,
        delivery_id: str | None = None,
    ) -> WebhookOutcome:
        try:
            payload = self.gateway.verify_webhook(body, signature)
        except SignatureInvalidError as exc:
            logger.warning("Rejected %s webhook: %s", self.gateway.provider, exc)
            raise

        event = self.gateway.parse_event(payload)
        event_type = payload.get("event") or "unknown"
        logger.info("Received %s webhook %s", self.gateway.provider, event_type)

        if delivery_id and self._already_processed(delivery_id):
            logger.info("Webhook delivery %s already processed", delivery_id)
            return WebhookOutcome(event_type=event_type, action="duplicate")

        outcome = self.dispatch(event, event_type)

        if delivery_id:
            self.db.add(
                PaymentWebhookEvent(
                    provider=self.gateway.provider,
                    event_id=delivery_id,
                    event_type=event_type,
                )
            )
            self.db.flush()
        return outcome

    def dispatch(self, event: WebhookEvent, event_type: str) -> WebhookOutcome:
        if isinstance(event, CheckoutCompleted):
            return self._on_checkout_completed(event, event_type)
        if isinstance(event, PaymentFailed):
            return self._on_payment_failed(event, event_type)
        if isinstance(event, AccountUpdated):
            return self._on_account_updated(event, event_type)
        if isinstance(event, UnhandledEvent):
            logger.info("Unhandled webhook event type: %s", event.event_type)
            return WebhookOutcome(event_type=event_type, action="ignored")
        raise TypeError(f"Unknown webhook event {event!r}")

    # -----------------------------
    # Handlers
    # -----------------------------
    def _on_checkout_completed(self, event: CheckoutCompleted, event_type: str) -> WebhookOutcome:
        refs = PaymentRefs(
            payment_reference=event.payment_reference,
            payment_intent_id=event.payment_intent_id,
            session_id=event.session_id,
            amount_paid=Decimal(event.amount_paid_minor) / 100 if event.amount_paid_minor else None,
        )
        try:
            if event.booking_id:
                booking = self.bookings.confirm(
                    event.booking_id,
                    payment_reference=event.payment_reference,
                    payment_intent_id=event.payment_intent_id,
                )
            elif event.event_id and event.selections and event.customer:
                booking = self.bookings.create_from_payment(
                    event.event_id,
                    event.selections,
                    event.customer,
                    refs,
                )
            else:
                logger.error(
                    "Checkout %s carries no usable booking metadata; acknowledging",
                    event.session_id,
                )
                return WebhookOutcome(event_type=event_type, action="ignored")
        except InvalidStateTransitionError as exc:
            # Paid after the booking was cancelled; needs a manual refund.
            logger.error(
                "Payment %s received for booking %s that cannot be confirmed: %s",
                event.payment_reference,
                event.booking_id,
                exc,
            )
            return WebhookOutcome(
                event_type=event_type,
                action="refund_required",
                booking_id=event.booking_id,
            )
        except (NotFoundError, ValidationError) as exc:
            logger.error(
                "Checkout %s references unknown booking data: %s",
                event.session_id,
                exc,
            )
            return WebhookOutcome(event_type=event_type, action="ignored")

        return WebhookOutcome(event_type=event_type, action="confirmed", booking_id=booking.id)

    def _on_payment_failed(self, event: PaymentFailed, event_type: str) -> WebhookOutcome:
        booking = self.bookings.fail_payment(event.payment_intent_id, booking_id=event.booking_id)
        if booking is None:
            return WebhookOutcome(event_type=event_type, action="ignored")
        return WebhookOutcome(
            event_type=event_type,
            action=booking.status.value,
            booking_id=booking.id,
        )

    def _on_account_updated(self, event: AccountUpdated, event_type: str) -> WebhookOutcome:
        organizer = self.event_repository.get_organizer_by_payout_account(event.account_id)
        if not organizer:
            logger.info("No organizer for payout account %s", event.account_id)
            return WebhookOutcome(event_type=event_type, action="ignored")

        status = resolve_verification_status(
            charges_enabled=event.charges_enabled,
            payouts_enabled=event.payouts_enabled,
            has_pending_requirements=event.has_pending_requirements,
        )
        if organizer.verification_status == status:
            return WebhookOutcome(event_type=event_type, action="unchanged")

        organizer.verification_status = status
        self.db.flush()
        logger.info("Payout account %s status updated to %s", event.account_id, status.value)
        return WebhookOutcome(event_type=event_type, action=status.value)

    def _already_processed(self, delivery_id: str) -> bool:
        stmt = (
            select(PaymentWebhookEvent.id)
            .where(PaymentWebhookEvent.provider == self.gateway.provider)
            .where(PaymentWebhookEvent.event_id == delivery_id)
        )
        return self.db.execute(stmt).first() is not None
