# ticketflow/infrastructure/repositories/event_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select

from ticketflow.infrastructure.db.models import Event, Organizer


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        stmt = select(Event).where(Event.id == event_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_organizer_by_payout_account(self, account_id: str) -> Organizer | None:
        stmt = select(Organizer).where(Organizer.payout_account_id == account_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def is_event_organizer(self, event_id: str, user_id: str | None) -> bool:
        if not user_id:
            return False
        stmt = (
            select(Event.id)
            .join(Organizer, Organizer.id == Event.organizer_id)
            .where(Event.id == event_id)
            .where(Organizer.user_id == user_id)
        )
        return self.db.execute(stmt).first() is not None
