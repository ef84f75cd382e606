import logging

from sqlalchemy.orm import Session

from ticketflow.domain.exceptions import (
    InsufficientInventoryError,
    NotFoundError,
    ValidationError,
)
from ticketflow.infrastructure.db.models import TicketType
from ticketflow.infrastructure.repositories.ticket_type_repository import TicketTypeRepository

logger = logging.getLogger(__name__)


class InventoryLedger:
    """
    Two-phase view of ticket-type capacity.

    reserve() is an optimistic headroom check taken at booking time and
    writes nothing. commit() is the atomic sold-counter increment run once
    per confirmed line item. Bookings that pass reserve() concurrently can
    both commit, so quantity_sold may briefly exceed quantity_available.
    """

    def __init__(self, db: Session):
        self.db = db
        self.ticket_types = TicketTypeRepository(db)

    def reserve(self, event_id: str, ticket_type_id: str, quantity: int) -> TicketType:
        if quantity <= 0:
            raise ValidationError("Quantity must be a positive integer")

        ticket_type = self.ticket_types.get_for_event(event_id, ticket_type_id)
        if not ticket_type:
            raise NotFoundError(
                f"Ticket type {ticket_type_id} not found for event {event_id}"
            )

        if ticket_type.remaining < quantity:
            raise InsufficientInventoryError(
                ticket_type_id=ticket_type_id,
                requested=quantity,
                remaining=max(ticket_type.remaining, 0),
            )
        return ticket_type

    def commit(self, ticket_type_id: str, quantity: int) -> None:
        matched = self.ticket_types.increment_sold(ticket_type_id, quantity)
        if matched != 1:
            raise NotFoundError(f"Ticket type {ticket_type_id} not found")
        logger.debug("Committed %s sold units to ticket type %s", quantity, ticket_type_id)

    def set_capacity(self, ticket_type_id: str, quantity_available: int) -> TicketType:
        if quantity_available < 0:
            raise ValidationError("quantity_available must be non-negative")

        ticket_type = self.ticket_types.get_by_id(ticket_type_id)
        if not ticket_type:
            raise NotFoundError(f"Ticket type {ticket_type_id} not found")

        if self.ticket_types.set_capacity(ticket_type_id, quantity_available) != 1:
            self.ticket_types.refresh(ticket_type)
            raise ValidationError(
                f"Cannot lower quantity_available below quantity_sold "
                f"({ticket_type.quantity_sold})"
            )
        return self.ticket_types.refresh(ticket_type)
