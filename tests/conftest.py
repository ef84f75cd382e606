import hashlib
import hmac
import json
import os
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal

# The app module builds its engine at import time.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import jwt
import pytest
import razorpay
from fastapi.testclient import TestClient
from sqlalchemy import StaticPool, create_engine, select
from sqlalchemy.orm import sessionmaker

from ticketflow.api.routes.routes import get_payment_gateway
from ticketflow.domain.enums import EventStatus
from ticketflow.infrastructure.config import Settings, get_settings
from ticketflow.infrastructure.db.models import Base, Event, Organizer, TicketType
from ticketflow.infrastructure.db.session import get_db
from ticketflow.infrastructure.payments.razorpay_gateway import RazorpayGateway
from ticketflow.main import app

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(bind=engine, autoflush=False)

TEST_SETTINGS = Settings(
    razorpay_key_id="rzp_test_key",
    razorpay_key_secret="rzp_test_secret",
    razorpay_webhook_secret="whsec_test",
    public_base_url="https://tickets.example.com",
    auth_jwt_secret="test-jwt-secret",
)


class FakePaymentLinks:
    """Stands in for razorpay.Client().payment_link; records every create()."""

    def __init__(self):
        self.calls = []
        self.error = None

    def create(self, data, **kwargs):
        self.calls.append((data, kwargs))
        if self.error is not None:
            raise self.error
        n = len(self.calls)
        return {
            "id": f"plink_test_{n}",
            "short_url": f"https://rzp.io/i/test{n}",
            "status": "created",
            "amount": data["amount"],
        }


@pytest.fixture(autouse=True)
def reset_database():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def settings():
    return TEST_SETTINGS


@pytest.fixture
def payment_links():
    return FakePaymentLinks()


@pytest.fixture
def gateway(payment_links, monkeypatch):
    client = razorpay.Client(
        auth=(TEST_SETTINGS.razorpay_key_id, TEST_SETTINGS.razorpay_key_secret)
    )
    monkeypatch.setattr(client, "payment_link", payment_links)
    return RazorpayGateway(TEST_SETTINGS, client=client)


@pytest.fixture
def db_session():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(gateway):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: TEST_SETTINGS
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    yield TestClient(app)
    app.dependency_overrides.clear()


# -----------------------------
# Seeding
# -----------------------------
@pytest.fixture
def seed_event():
    """
    Creates an organizer (reused per user id), an event and its ticket
    types. Returns plain ids so no ORM state leaks between sessions.
    """

    def _seed(
        ticket_types=None,
        status=EventStatus.PUBLISHED,
        starts_in=timedelta(days=10),
        organizer_user_id="organizer-1",
        payout_account_id=None,
        title="Monsoon Jazz Night",
    ):
        if ticket_types is None:
            ticket_types = [{"name": "General", "price": "500.00", "quantity_available": 100}]

        with TestingSessionLocal() as db:
            organizer = db.execute(
                select(Organizer).where(Organizer.user_id == organizer_user_id)
            ).scalar_one_or_none()
            if organizer is None:
                organizer = Organizer(
                    user_id=organizer_user_id,
                    business_name="Blue Room Live",
                    contact_email="hello@blueroom.example.com",
                    payout_account_id=payout_account_id,
                )
                db.add(organizer)
                db.flush()

            event = Event(
                organizer_id=organizer.id,
                title=title,
                status=status,
                starts_at=datetime.now(timezone.utc) + starts_in,
            )
            db.add(event)
            db.flush()

            ids = {}
            for definition in ticket_types:
                ticket_type = TicketType(
                    event_id=event.id,
                    name=definition["name"],
                    price=Decimal(definition["price"]),
                    quantity_available=definition["quantity_available"],
                    quantity_sold=definition.get("quantity_sold", 0),
                    max_per_order=definition.get("max_per_order"),
                    sale_starts_at=definition.get("sale_starts_at"),
                    sale_ends_at=definition.get("sale_ends_at"),
                )
                db.add(ticket_type)
                db.flush()
                ids[definition["name"]] = ticket_type.id

            seeded = {
                "event_id": event.id,
                "organizer_id": organizer.id,
                "organizer_user_id": organizer_user_id,
                "ticket_types": ids,
            }
            db.commit()
            return seeded

    return _seed


# -----------------------------
# Auth
# -----------------------------
@pytest.fixture
def auth_headers():
    def _headers(user_id, email=None):
        claims = {
            "sub": user_id,
            "aud": TEST_SETTINGS.auth_jwt_audience,
            "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        }
        if email:
            claims["email"] = email
        token = jwt.encode(claims, TEST_SETTINGS.auth_jwt_secret, algorithm="HS256")
        return {"Authorization": f"Bearer {token}"}

    return _headers


# -----------------------------
# Webhooks
# -----------------------------
@pytest.fixture
def signed_webhook():
    def _sign(payload, secret=None, delivery_id=None):
        body = json.dumps(payload).encode("utf-8")
        signature = hmac.new(
            (secret or TEST_SETTINGS.razorpay_webhook_secret).encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        headers = {
            "Content-Type": "application/json",
            "X-Razorpay-Signature": signature,
        }
        if delivery_id:
            headers["X-Razorpay-Event-Id"] = delivery_id
        return body, headers

    return _sign


@pytest.fixture
def paid_payload():
    def _payload(
        notes,
        link_id="plink_test_1",
        payment_id="pay_test_1",
        order_id="order_test_1",
        amount=100000,
        email="asha@example.com",
        created_at=None,
    ):
        customer = {"name": "Asha Rao", "email": email, "contact": "+919900000000"}
        return {
            "entity": "event",
            "account_id": "acc_platform",
            "event": "payment_link.paid",
            "contains": ["payment_link", "order", "payment"],
            "payload": {
                "payment_link": {
                    "entity": {
                        "id": link_id,
                        "amount": amount,
                        "amount_paid": amount,
                        "status": "paid",
                        "notes": notes,
                        "customer": customer,
                    }
                },
                "order": {
                    "entity": {"id": order_id, "amount": amount, "notes": notes}
                },
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": order_id,
                        "amount": amount,
                        "status": "captured",
                        "email": email,
                        "contact": "+919900000000",
                        "notes": [],
                    }
                },
            },
            "created_at": created_at if created_at is not None else int(time.time()),
        }

    return _payload


@pytest.fixture
def failed_payload():
    def _payload(order_id=None, payment_id="pay_failed_1", booking_id=None, created_at=None):
        return {
            "entity": "event",
            "event": "payment.failed",
            "contains": ["payment"],
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id,
                        "order_id": order_id,
                        "status": "failed",
                        "error_description": "Payment was declined by the bank",
                        "notes": {"booking_id": booking_id} if booking_id else [],
                    }
                }
            },
            "created_at": created_at if created_at is not None else int(time.time()),
        }

    return _payload


@pytest.fixture
def session_factory():
    """Opens fresh sessions for assertions made after API calls."""
    return TestingSessionLocal
