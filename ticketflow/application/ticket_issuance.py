import logging

from sqlalchemy.orm import Session

from ticketflow.domain.exceptions import InvalidStateTransitionError
from ticketflow.domain.state_machine import BookingStatus
from ticketflow.domain.ticket_codes import generate_ticket_code, verification_url
from ticketflow.infrastructure.config import Settings
from ticketflow.infrastructure.db.models import Booking, Ticket
from ticketflow.infrastructure.repositories.booking_repository import BookingRepository
from ticketflow.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)


class TicketIssuer:
    """Creates one Ticket row per purchased unit of a confirmed booking."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings
        self.tickets = TicketRepository(db)
        self.bookings = BookingRepository(db)

    def issue(self, booking: Booking) -> list[Ticket]:
        """
        Issues the tickets still owed for each line item. Items that
        already have `quantity` tickets are skipped, so re-running after a
        partial failure never double-issues.
        """
        if booking.status != BookingStatus.CONFIRMED:
            raise InvalidStateTransitionError(
                from_state=booking.status.value,
                to_state="tickets_issued",
            )

        created: list[Ticket] = []
        for item in booking.items:
            existing = self.tickets.count_for_item(booking.id, item.ticket_type_id)
            for _ in range(item.quantity - existing):
                ticket_code = generate_ticket_code()
                created.append(
                    Ticket(
                        booking_id=booking.id,
                        ticket_type_id=item.ticket_type_id,
                        ticket_code=ticket_code,
                        qr_code=verification_url(self.settings.public_base_url, ticket_code),
                    )
                )

        if created:
            self.tickets.add_all(created)
            logger.info("Issued %s tickets for booking %s", len(created), booking.id)
        return created

    def issue_safely(self, booking: Booking) -> list[Ticket]:
        """
        Runs issue() inside a SAVEPOINT. A failure rolls back only the
        ticket rows and is logged for reconciliation; the confirmed booking
        stays confirmed.
        """
        try:
            with self.db.begin_nested():
                return self.issue(booking)
        except Exception:
            logger.exception(
                "Ticket issuance failed for booking %s; left for reconciliation",
                booking.id,
            )
            return []

    def reissue_missing(self) -> dict[str, int]:
        """Fills ticket gaps on every confirmed booking. Returns counts per booking."""
        repaired: dict[str, int] = {}
        for booking in self.bookings.find_confirmed_with_missing_tickets():
            issued = self.issue_safely(booking)
            if issued:
                repaired[booking.id] = len(issued)
        return repaired
