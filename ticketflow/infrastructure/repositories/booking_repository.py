# ticketflow/infrastructure/repositories/booking_repository.py

from sqlalchemy.orm import Session
from sqlalchemy import select, update, func

from ticketflow.infrastructure.db.models import Booking, BookingItem, Ticket
from ticketflow.domain.state_machine import BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(
        self,
        booking_id: str,
    ) -> Booking | None:

        stmt = (
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_payment_intent(self, payment_intent_id: str) -> Booking | None:
        stmt = select(Booking).where(Booking.payment_intent_id == payment_intent_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_payment_reference(self, payment_reference: str) -> Booking | None:
        stmt = select(Booking).where(Booking.payment_reference == payment_reference)
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_session_id(self, session_id: str) -> Booking | None:
        stmt = select(Booking).where(Booking.payment_session_id == session_id)
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, booking: Booking) -> Booking:
        self.db.add(booking)
        self.db.flush()
        return booking

    def compare_and_set_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        new_status: BookingStatus,
        **values,
    ) -> bool:
        """
        UPDATE bookings SET status = :new WHERE id = :id AND status = :expected

        Returns True only for the caller whose update matched the row.
        Concurrent callers racing on the same booking see False.
        """
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == expected)
            .values(status=new_status, updated_at=func.now(), **values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        return result.rowcount == 1

    def set_payment_session(self, booking: Booking, session_id: str) -> None:
        booking.payment_session_id = session_id
        self.db.flush()

    def refresh(self, booking: Booking) -> Booking:
        self.db.refresh(booking)
        return booking

    def find_confirmed_with_missing_tickets(self) -> list[Booking]:
        issued = (
            select(func.count(Ticket.id))
            .where(Ticket.booking_id == Booking.id)
            .correlate(Booking)
            .scalar_subquery()
        )
        ordered = (
            select(func.coalesce(func.sum(BookingItem.quantity), 0))
            .where(BookingItem.booking_id == Booking.id)
            .correlate(Booking)
            .scalar_subquery()
        )
        stmt = (
            select(Booking)
            .where(Booking.status == BookingStatus.CONFIRMED)
            .where(issued < ordered)
            .order_by(Booking.created_at)
        )
        return list(self.db.execute(stmt).scalars().all())
