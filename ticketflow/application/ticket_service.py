from datetime import datetime, timezone
import logging

from sqlalchemy.orm import Session

from ticketflow.domain.enums import TicketStatus
from ticketflow.domain.exceptions import (
    ForbiddenError,
    NotFoundError,
    TicketNotRedeemableError,
)
from ticketflow.domain.ticket_codes import ticket_code_from_verification_url
from ticketflow.infrastructure.db.models import Ticket
from ticketflow.infrastructure.repositories.event_repository import EventRepository
from ticketflow.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)


class TicketService:
    """Gate-side lookups: resolve a scanned reference and redeem it once."""

    def __init__(self, db: Session, clock=lambda: datetime.now(timezone.utc)):
        self.db = db
        self.clock = clock
        self.tickets = TicketRepository(db)
        self.events = EventRepository(db)

    def verify(self, reference: str) -> Ticket:
        ticket_code = ticket_code_from_verification_url(reference)
        ticket = self.tickets.get_by_code(ticket_code)
        if not ticket:
            raise NotFoundError(f"Ticket {ticket_code} not found")
        return ticket

    def redeem(self, ticket_code: str, requester_user_id: str) -> Ticket:
        ticket = self.verify(ticket_code)
        if not self.events.is_event_organizer(ticket.booking.event_id, requester_user_id):
            raise ForbiddenError("Only the event organizer can redeem tickets")

        if not self.tickets.mark_redeemed(ticket.ticket_code, self.clock()):
            self.db.refresh(ticket)
            raise TicketNotRedeemableError(
                f"Ticket {ticket.ticket_code} is {ticket.status.value}"
            )

        self.db.refresh(ticket)
        logger.info("Ticket %s redeemed", ticket.ticket_code)
        return ticket

    @staticmethod
    def is_valid_for_entry(ticket: Ticket) -> bool:
        return ticket.status == TicketStatus.ISSUED
