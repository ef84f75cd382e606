# ticketflow/infrastructure/repositories/ticket_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update, func

from ticketflow.domain.enums import TicketStatus
from ticketflow.infrastructure.db.models import Ticket


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_code(self, ticket_code: str) -> Ticket | None:
        stmt = select(Ticket).where(Ticket.ticket_code == ticket_code)
        return self.db.execute(stmt).scalar_one_or_none()

    def count_for_item(self, booking_id: str, ticket_type_id: str) -> int:
        stmt = (
            select(func.count(Ticket.id))
            .where(Ticket.booking_id == booking_id)
            .where(Ticket.ticket_type_id == ticket_type_id)
        )
        return self.db.execute(stmt).scalar_one()

    def add_all(self, tickets: list[Ticket]) -> list[Ticket]:
        self.db.add_all(tickets)
        self.db.flush()
        return tickets

    def mark_redeemed(self, ticket_code: str, redeemed_at: datetime) -> bool:
        stmt = (
            update(Ticket)
            .where(Ticket.ticket_code == ticket_code)
            .where(Ticket.status == TicketStatus.ISSUED)
            .values(
                status=TicketStatus.USED,
                redeemed_at=redeemed_at,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def void_for_booking(self, booking_id: str) -> int:
        stmt = (
            update(Ticket)
            .where(Ticket.booking_id == booking_id)
            .where(Ticket.status == TicketStatus.ISSUED)
            .values(status=TicketStatus.CANCELLED, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount
