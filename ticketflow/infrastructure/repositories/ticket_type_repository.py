# ticketflow/infrastructure/repositories/ticket_type_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update, func

from ticketflow.infrastructure.db.models import TicketType


class TicketTypeRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, ticket_type_id: str) -> TicketType | None:
        stmt = (
            select(TicketType)
            .where(TicketType.id == ticket_type_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_event(
        self,
        event_id: str,
        ticket_type_id: str,
    ) -> TicketType | None:
        stmt = (
            select(TicketType)
            .where(TicketType.id == ticket_type_id)
            .where(TicketType.event_id == event_id)
            # Sold counters move via UPDATE; never trust a cached row.
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def increment_sold(
        self,
        ticket_type_id: str,
        quantity: int,
    ) -> int:
        """
        UPDATE ... SET quantity_sold = quantity_sold + :quantity

        The addition happens inside the database, so two confirmations
        landing at once both count. Returns the matched row count.
        """
        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .values(
                quantity_sold=TicketType.quantity_sold + quantity,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount

    def set_capacity(
        self,
        ticket_type_id: str,
        quantity_available: int,
    ) -> int:
        stmt = (
            update(TicketType)
            .where(TicketType.id == ticket_type_id)
            .where(TicketType.quantity_sold <= quantity_available)
            .values(
                quantity_available=quantity_available,
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount

    def refresh(self, ticket_type: TicketType) -> TicketType:
        self.db.refresh(ticket_type)
        return ticket_type
