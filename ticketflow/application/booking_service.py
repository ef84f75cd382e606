from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Iterable

from sqlalchemy.orm import Session

from ticketflow.application.inventory_ledger import InventoryLedger
from ticketflow.application.ticket_issuance import TicketIssuer
from ticketflow.domain.enums import EventStatus
from ticketflow.domain.exceptions import (
    AlreadyCancelledError,
    EventNotBookableError,
    ForbiddenError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from ticketflow.domain.state_machine import BookingStateMachine, BookingStatus
from ticketflow.domain.webhook_events import CustomerInfo, TicketSelection
from ticketflow.infrastructure.config import Settings
from ticketflow.infrastructure.db.models import Booking, BookingItem, Event, TicketType
from ticketflow.infrastructure.repositories.booking_repository import BookingRepository
from ticketflow.infrastructure.repositories.event_repository import EventRepository
from ticketflow.infrastructure.repositories.ticket_repository import TicketRepository
from ticketflow.infrastructure.repositories.ticket_type_repository import TicketTypeRepository

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class PaymentRefs:
    payment_reference: str | None
    payment_intent_id: str | None = None
    session_id: str | None = None
    amount_paid: Decimal | None = None


class BookingService:
    """Application service coordinating the booking lifecycle."""

    def __init__(
        self,
        db: Session,
        settings: Settings,
        clock=lambda: datetime.now(timezone.utc),
    ):
        self.db = db
        self.settings = settings
        self.clock = clock
        self.booking_repository = BookingRepository(db)
        self.event_repository = EventRepository(db)
        self.ticket_repository = TicketRepository(db)
        self.ticket_type_repository = TicketTypeRepository(db)
        self.inventory = InventoryLedger(db)
        self.issuer = TicketIssuer(db, settings)

    # -----------------------------
    # Constructors
    # -----------------------------
    def create_booking(
        self,
        event_id: str,
        line_items: Iterable[TicketSelection],
        customer: CustomerInfo,
        user_id: str | None = None,
    ) -> Booking:
        """
        Validates the request against the event and the inventory ledger
        and persists a pending booking with its line items.

        Nothing is written until every line item has passed; the booking
        and its items are flushed together, so a failure leaves no rows.
        """
        selections = _merge_selections(line_items)
        if not selections:
            raise ValidationError("At least one ticket item is required")
        _validate_customer(customer)

        event = self.event_repository.get_by_id(event_id)
        if not event:
            raise NotFoundError(f"Event {event_id} not found")
        self._ensure_bookable(event)

        now = self.clock()
        priced: list[tuple[TicketType, int]] = []
        for selection in selections:
            ticket_type = self.inventory.reserve(
                event_id,
                selection.ticket_type_id,
                selection.quantity,
            )
            if ticket_type.max_per_order is not None and selection.quantity > ticket_type.max_per_order:
                raise ValidationError(
                    f"At most {ticket_type.max_per_order} tickets of "
                    f"{ticket_type.name} per order"
                )
            _ensure_on_sale(ticket_type, now)
            priced.append((ticket_type, selection.quantity))

        booking = self._build_booking(event.id, priced, customer, user_id)
        self.booking_repository.add(booking)
        logger.info(
            "Created pending booking %s for event %s total=%s",
            booking.id,
            event.id,
            booking.total_price,
        )
        return booking

    def create_from_payment(
        self,
        event_id: str,
        selections: Iterable[TicketSelection],
        customer: CustomerInfo,
        refs: PaymentRefs,
    ) -> Booking:
        """
        Builds a booking for a payment that was taken without one, then
        drives it through the same confirm() path as pre-created bookings.

        Availability and bookability are not re-checked: the customer has
        already paid. A redelivery finds the booking by its payment
        reference or session id and is confirmed idempotently.
        """
        existing = self._find_by_refs(refs)
        if existing:
            return self.confirm(existing.id, refs.payment_reference, refs.payment_intent_id)

        merged = _merge_selections(selections)
        if not merged:
            raise ValidationError("Payment carries no ticket selections")

        event = self.event_repository.get_by_id(event_id)
        if not event:
            raise NotFoundError(f"Event {event_id} not found")

        priced: list[tuple[TicketType, int]] = []
        for selection in merged:
            ticket_type = self.ticket_type_repository.get_for_event(
                event_id,
                selection.ticket_type_id,
            )
            if not ticket_type:
                raise NotFoundError(
                    f"Ticket type {selection.ticket_type_id} not found for event {event_id}"
                )
            priced.append((ticket_type, selection.quantity))

        booking = self._build_booking(event.id, priced, customer, user_id=None)
        booking.payment_session_id = refs.session_id
        if refs.amount_paid is not None and refs.amount_paid != booking.total_price:
            logger.warning(
                "Amount paid %s differs from list total %s for payment %s",
                refs.amount_paid,
                booking.total_price,
                refs.payment_reference,
            )
            booking.amount_paid = refs.amount_paid
        self.booking_repository.add(booking)
        logger.info(
            "Created booking %s from payment %s for event %s",
            booking.id,
            refs.payment_reference,
            event.id,
        )
        return self.confirm(booking.id, refs.payment_reference, refs.payment_intent_id)

    # -----------------------------
    # Transitions
    # -----------------------------
    def confirm(
        self,
        booking_id: str,
        payment_reference: str | None,
        payment_intent_id: str | None = None,
    ) -> Booking:
        """
        pending -> confirmed, exactly once.

        The status flip is a compare-and-swap; only the caller that wins it
        commits inventory and issues tickets. Everyone else gets the booking
        back as it stands. Ticket issuance failures are logged and left for
        reconciliation rather than failing the confirmation.
        """
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")

        values = {}
        if payment_reference:
            values["payment_reference"] = payment_reference
        if payment_intent_id:
            values["payment_intent_id"] = payment_intent_id

        won = self.booking_repository.compare_and_set_status(
            booking_id,
            expected=BookingStatus.PENDING,
            new_status=BookingStatus.CONFIRMED,
            **values,
        )
        self.booking_repository.refresh(booking)

        if not won:
            if booking.status == BookingStatus.CONFIRMED:
                logger.info("Booking %s already confirmed; skipping side effects", booking_id)
                return booking
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=BookingStatus.CONFIRMED.value,
            )

        for item in booking.items:
            self.inventory.commit(item.ticket_type_id, item.quantity)

        self.issuer.issue_safely(booking)
        self.booking_repository.refresh(booking)
        logger.info("Booking %s confirmed with payment %s", booking_id, payment_reference)
        return booking

    def cancel_booking(self, booking_id: str, requester_user_id: str | None) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if not requester_user_id or booking.user_id != requester_user_id:
            raise ForbiddenError("Only the booking owner can cancel this booking")
        if booking.status == BookingStatus.CANCELLED:
            raise AlreadyCancelledError("Booking is already cancelled")

        if booking.status == BookingStatus.CONFIRMED:
            event = self.event_repository.get_by_id(booking.event_id)
            if as_utc(event.starts_at) <= self.clock():
                raise InvalidStateTransitionError(
                    from_state=booking.status.value,
                    to_state=BookingStatus.CANCELLED.value,
                )

        self._transition(booking, BookingStatus.CANCELLED)
        voided = self.ticket_repository.void_for_booking(booking.id)
        if voided:
            logger.info("Voided %s tickets for cancelled booking %s", voided, booking.id)
        logger.info("Booking %s cancelled by owner", booking.id)
        return booking

    def fail_payment(
        self,
        payment_intent_id: str | None,
        booking_id: str | None = None,
    ) -> Booking | None:
        """
        Cancels a still-pending booking whose payment failed. Confirmed
        bookings are never regressed; unknown payments are ignored.
        """
        booking = None
        if payment_intent_id:
            booking = self.booking_repository.get_by_payment_intent(payment_intent_id)
        if booking is None and booking_id:
            booking = self.booking_repository.get_by_id(booking_id)
        if booking is None:
            logger.info("No booking for failed payment %s; ignoring", payment_intent_id)
            return None

        won = self.booking_repository.compare_and_set_status(
            booking.id,
            expected=BookingStatus.PENDING,
            new_status=BookingStatus.CANCELLED,
        )
        booking = self.booking_repository.refresh(booking)
        if won:
            logger.info("Booking %s cancelled after payment failure", booking.id)
        else:
            logger.info(
                "Ignoring payment failure for booking %s in status %s",
                booking.id,
                booking.status.value,
            )
        return booking

    def get_booking_for(self, booking_id: str, requester_user_id: str) -> Booking:
        booking = self.booking_repository.get_by_id(booking_id)
        if not booking:
            raise NotFoundError(f"Booking {booking_id} not found")
        if booking.user_id == requester_user_id:
            return booking
        if self.event_repository.is_event_organizer(booking.event_id, requester_user_id):
            return booking
        raise ForbiddenError("Access denied")

    # -----------------------------
    # Helpers
    # -----------------------------
    def _ensure_bookable(self, event: Event) -> None:
        if event.status != EventStatus.PUBLISHED:
            raise EventNotBookableError("Event is not available for booking")
        if as_utc(event.starts_at) <= self.clock():
            raise EventNotBookableError("Cannot book past events")

    def _transition(self, booking: Booking, to_status: BookingStatus) -> None:
        from_status = booking.status
        BookingStateMachine.validate_transition(from_status, to_status)
        if not self.booking_repository.compare_and_set_status(
            booking.id,
            expected=from_status,
            new_status=to_status,
        ):
            # Another request moved the booking first; report what it is now.
            self.booking_repository.refresh(booking)
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state=to_status.value,
            )
        self.booking_repository.refresh(booking)

    def _find_by_refs(self, refs: PaymentRefs) -> Booking | None:
        if refs.payment_reference:
            booking = self.booking_repository.get_by_payment_reference(refs.payment_reference)
            if booking:
                return booking
        if refs.session_id:
            return self.booking_repository.get_by_session_id(refs.session_id)
        return None

    @staticmethod
    def _build_booking(
        event_id: str,
        priced: list[tuple[TicketType, int]],
        customer: CustomerInfo,
        user_id: str | None,
    ) -> Booking:
        items = []
        total = Decimal("0")
        for position, (ticket_type, quantity) in enumerate(priced):
            unit_price = Decimal(ticket_type.price)
            line_total = unit_price * quantity
            total += line_total
            items.append(
                BookingItem(
                    ticket_type_id=ticket_type.id,
                    position=position,
                    quantity=quantity,
                    unit_price=unit_price,
                    total_price=line_total,
                )
            )

        return Booking(
            event_id=event_id,
            user_id=user_id,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            total_price=total,
            status=BookingStatus.PENDING,
            items=items,
        )


def _merge_selections(line_items: Iterable[TicketSelection]) -> list[TicketSelection]:
    quantities: dict[str, int] = {}
    for item in line_items:
        if not isinstance(item.quantity, int) or isinstance(item.quantity, bool) or item.quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")
        quantities[item.ticket_type_id] = quantities.get(item.ticket_type_id, 0) + item.quantity
    return [TicketSelection(ticket_type_id=key, quantity=value) for key, value in quantities.items()]


def _validate_customer(customer: CustomerInfo) -> None:
    if not customer.name or not customer.name.strip():
        raise ValidationError("Customer name is required")
    if not customer.email or "@" not in customer.email:
        raise ValidationError("A valid customer email is required")


def _ensure_on_sale(ticket_type: TicketType, now: datetime) -> None:
    if ticket_type.sale_starts_at and as_utc(ticket_type.sale_starts_at) > now:
        raise ValidationError(f"Sales for {ticket_type.name} have not started")
    if ticket_type.sale_ends_at and as_utc(ticket_type.sale_ends_at) < now:
        raise ValidationError(f"Sales for {ticket_type.name} have ended")
