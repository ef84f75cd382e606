from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import select

from ticketflow.domain.enums import EventStatus, VerificationStatus
from ticketflow.infrastructure.db.models import Event, Organizer, TicketType
from ticketflow.infrastructure.db.session import SessionLocal

DEMO_ORGANIZER_USER_ID = "demo-organizer"


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    ist = timezone(timedelta(hours=5, minutes=30))
    now_ist = datetime.now(ist)
    target = now_ist + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


def seed_organizer(db) -> Organizer:
    organizer = db.execute(
        select(Organizer).where(Organizer.user_id == DEMO_ORGANIZER_USER_ID)
    ).scalar_one_or_none()
    if organizer:
        return organizer

    organizer = Organizer(
        user_id=DEMO_ORGANIZER_USER_ID,
        business_name="Blue Room Live",
        contact_email="hello@blueroom.example.com",
        verification_status=VerificationStatus.PENDING,
    )
    db.add(organizer)
    db.flush()
    return organizer


def seed_events(db, organizer: Organizer) -> None:
    event_defs = [
        {
            "title": "Sunidhi Chauhan Live Concert",
            "starts_at": _dt(days_from_now=10, hour=19, minute=30),
            "ticket_types": [
                {"name": "Regular", "price": "1800.00", "quantity_available": 400, "max_per_order": 10},
                {"name": "VIP", "price": "4500.00", "quantity_available": 120, "max_per_order": 4},
            ],
        },
        {
            "title": "Holi Festival 2026",
            "starts_at": _dt(days_from_now=15, hour=11, minute=0),
            "ticket_types": [
                {"name": "General", "price": "1200.00", "quantity_available": 700, "max_per_order": None},
                {"name": "Premium", "price": "2800.00", "quantity_available": 180, "max_per_order": 6},
            ],
        },
    ]

    for item in event_defs:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            event = existing
            event.starts_at = item["starts_at"]
            event.status = EventStatus.PUBLISHED
        else:
            event = Event(
                organizer_id=organizer.id,
                title=item["title"],
                status=EventStatus.PUBLISHED,
                starts_at=item["starts_at"],
            )
            db.add(event)
            db.flush()

        for ticket_type in item["ticket_types"]:
            # Existing rows may already be referenced by bookings; update in place.
            row = db.execute(
                select(TicketType)
                .where(TicketType.event_id == event.id)
                .where(TicketType.name == ticket_type["name"])
            ).scalar_one_or_none()
            if row is None:
                row = TicketType(event_id=event.id, name=ticket_type["name"], quantity_sold=0)
                db.add(row)
            row.price = Decimal(ticket_type["price"])
            row.quantity_available = max(ticket_type["quantity_available"], row.quantity_sold or 0)
            row.max_per_order = ticket_type["max_per_order"]


def main() -> None:
    db = SessionLocal()
    try:
        organizer = seed_organizer(db)
        seed_events(db, organizer)
        db.commit()
        print("Seed complete: Sunidhi concert and Holi festival published with ticket types.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
