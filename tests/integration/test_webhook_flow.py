import json
import time
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ticketflow.domain.enums import TicketStatus, VerificationStatus
from ticketflow.infrastructure.db.models import (
    Booking,
    Organizer,
    PaymentWebhookEvent,
    Ticket,
    TicketType,
)


def _create_booking(client, seeded, quantity=2, headers=None):
    response = client.post(
        "/bookings",
        json={
            "event_id": seeded["event_id"],
            "items": [{"ticket_type_id": seeded["ticket_types"]["General"], "quantity": quantity}],
            "customer_name": "Asha Rao",
            "customer_email": "asha@example.com",
        },
        headers=headers or {},
    )
    assert response.status_code == 200
    return response.json()["booking"]["id"]


def _post_webhook(client, signed_webhook, payload, delivery_id=None):
    body, headers = signed_webhook(payload, delivery_id=delivery_id)
    return client.post("/payments/webhook", content=body, headers=headers)


def _state(session_factory, booking_id, ticket_type_id):
    with session_factory() as db:
        booking = db.get(Booking, booking_id)
        tickets = db.execute(
            select(Ticket).where(Ticket.booking_id == booking_id)
        ).scalars().all()
        return {
            "status": booking.status.value,
            "payment_reference": booking.payment_reference,
            "payment_intent_id": booking.payment_intent_id,
            "sold": db.get(TicketType, ticket_type_id).quantity_sold,
            "tickets": [(t.ticket_code, t.qr_code, t.status) for t in tickets],
        }


def test_paid_webhook_confirms_booking_and_issues_tickets(
    client, seed_event, signed_webhook, paid_payload, session_factory
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    booking_id = _create_booking(client, seeded, quantity=2)

    response = _post_webhook(
        client,
        signed_webhook,
        paid_payload({"booking_id": booking_id, "event_id": seeded["event_id"]}),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}

    state = _state(session_factory, booking_id, general)
    assert state["status"] == "confirmed"
    assert state["payment_reference"] == "pay_test_1"
    assert state["payment_intent_id"] == "order_test_1"
    assert state["sold"] == 2
    assert len(state["tickets"]) == 2
    for code, qr_code, status in state["tickets"]:
        assert code.startswith("TKT-")
        assert qr_code == f"https://tickets.example.com/verify-ticket/{code}"
        assert status == TicketStatus.ISSUED


def test_redelivered_paid_webhook_is_idempotent(
    client, seed_event, signed_webhook, paid_payload, session_factory
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    booking_id = _create_booking(client, seeded, quantity=2)
    payload = paid_payload({"booking_id": booking_id})

    first = _post_webhook(client, signed_webhook, payload)
    second = _post_webhook(client, signed_webhook, payload)

    assert first.status_code == 200
    assert second.status_code == 200
    state = _state(session_factory, booking_id, general)
    assert state["status"] == "confirmed"
    assert state["sold"] == 2
    assert len(state["tickets"]) == 2


def test_duplicate_delivery_id_is_recorded_once(
    client, seed_event, signed_webhook, paid_payload, session_factory
):
    seeded = seed_event()
    booking_id = _create_booking(client, seeded, quantity=1)
    payload = paid_payload({"booking_id": booking_id})

    first = _post_webhook(client, signed_webhook, payload, delivery_id="evt_delivery_1")
    second = _post_webhook(client, signed_webhook, payload, delivery_id="evt_delivery_1")

    assert first.status_code == 200
    assert second.status_code == 200
    with session_factory() as db:
        recorded = db.execute(select(PaymentWebhookEvent)).scalars().all()
        assert [(row.provider, row.event_id, row.event_type) for row in recorded] == [
            ("razorpay", "evt_delivery_1", "payment_link.paid")
        ]
    state = _state(session_factory, booking_id, seeded["ticket_types"]["General"])
    assert state["sold"] == 1
    assert len(state["tickets"]) == 1


def test_payment_failure_cancels_pending_booking(
    client, seed_event, signed_webhook, failed_payload, session_factory
):
    seeded = seed_event()
    booking_id = _create_booking(client, seeded, quantity=1)

    response = _post_webhook(
        client,
        signed_webhook,
        failed_payload(order_id="order_unknown", booking_id=booking_id),
    )

    assert response.status_code == 200
    state = _state(session_factory, booking_id, seeded["ticket_types"]["General"])
    assert state["status"] == "cancelled"
    assert state["sold"] == 0


def test_stale_payment_failure_never_regresses_confirmed_booking(
    client, seed_event, signed_webhook, paid_payload, failed_payload, session_factory
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    booking_id = _create_booking(client, seeded, quantity=1)

    _post_webhook(client, signed_webhook, paid_payload({"booking_id": booking_id}))
    response = _post_webhook(
        client,
        signed_webhook,
        failed_payload(order_id="order_test_1", payment_id="pay_earlier_attempt"),
    )

    assert response.status_code == 200
    state = _state(session_factory, booking_id, general)
    assert state["status"] == "confirmed"
    assert state["sold"] == 1
    assert len(state["tickets"]) == 1


def test_payment_failure_for_unknown_booking_is_acknowledged(client, signed_webhook, failed_payload):
    response = _post_webhook(client, signed_webhook, failed_payload(order_id="order_nobody"))

    assert response.status_code == 200


def test_payment_after_cancellation_is_not_confirmed(
    client, seed_event, signed_webhook, paid_payload, auth_headers, session_factory
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    booking_id = _create_booking(client, seeded, quantity=1, headers=auth_headers("user-1"))
    cancel = client.post(f"/bookings/{booking_id}/cancel", headers=auth_headers("user-1"))
    assert cancel.status_code == 200

    response = _post_webhook(client, signed_webhook, paid_payload({"booking_id": booking_id}))

    assert response.status_code == 200
    state = _state(session_factory, booking_id, general)
    assert state["status"] == "cancelled"
    assert state["sold"] == 0
    assert state["tickets"] == []


def test_paid_webhook_for_unknown_booking_is_acknowledged(client, signed_webhook, paid_payload):
    response = _post_webhook(client, signed_webhook, paid_payload({"booking_id": "no-such-booking"}))

    assert response.status_code == 200


def test_paid_webhook_without_metadata_is_acknowledged(client, signed_webhook, paid_payload):
    response = _post_webhook(client, signed_webhook, paid_payload([]))

    assert response.status_code == 200


# -----------------------------
# Payment without a pre-created booking
# -----------------------------
def test_payment_without_booking_creates_confirmed_booking(
    client, seed_event, signed_webhook, paid_payload, session_factory
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    notes = {
        "event_id": seeded["event_id"],
        "tickets": json.dumps([{"ticket_type_id": general, "quantity": 2}]),
    }
    payload = paid_payload(notes, link_id="plink_direct", payment_id="pay_direct", order_id="order_direct")

    first = _post_webhook(client, signed_webhook, payload)
    second = _post_webhook(client, signed_webhook, payload)

    assert first.status_code == 200
    assert second.status_code == 200
    with session_factory() as db:
        bookings = db.execute(select(Booking)).scalars().all()
        assert len(bookings) == 1
        booking = bookings[0]
        assert booking.status.value == "confirmed"
        assert booking.user_id is None
        assert booking.customer_name == "Asha Rao"
        assert booking.customer_email == "asha@example.com"
        assert booking.payment_session_id == "plink_direct"
        assert booking.payment_reference == "pay_direct"
        booking_id = booking.id

    state = _state(session_factory, booking_id, general)
    assert state["sold"] == 2
    assert len(state["tickets"]) == 2


def test_payment_without_booking_records_amount_paid(
    client, seed_event, signed_webhook, paid_payload, session_factory
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    notes = {
        "event_id": seeded["event_id"],
        "tickets": json.dumps([{"ticket_type_id": general, "quantity": 2}]),
    }

    # Charged 900.00 while the list price says 2 x 500.00.
    response = _post_webhook(client, signed_webhook, paid_payload(notes, amount=90000))

    assert response.status_code == 200
    with session_factory() as db:
        booking = db.execute(select(Booking)).scalar_one()
        assert booking.status.value == "confirmed"
        assert Decimal(booking.amount_paid) == Decimal("900.00")
        assert Decimal(booking.total_price) == Decimal("1000.00")
        assert Decimal(booking.items[0].unit_price) == Decimal("500.00")


def test_payment_without_booking_for_unknown_event_is_acknowledged(
    client, signed_webhook, paid_payload, session_factory
):
    notes = {
        "event_id": "missing-event",
        "tickets": json.dumps([{"ticket_type_id": "tt-1", "quantity": 1}]),
    }

    response = _post_webhook(client, signed_webhook, paid_payload(notes))

    assert response.status_code == 200
    with session_factory() as db:
        assert db.execute(select(func.count(Booking.id))).scalar_one() == 0


# -----------------------------
# Authenticity
# -----------------------------
def test_invalid_signature_is_rejected(client, seed_event, signed_webhook, paid_payload, session_factory):
    seeded = seed_event()
    booking_id = _create_booking(client, seeded, quantity=1)
    body, headers = signed_webhook(paid_payload({"booking_id": booking_id}), secret="forged")

    response = client.post("/payments/webhook", content=body, headers=headers)

    assert response.status_code == 400
    assert response.json() == {"detail": "Invalid webhook"}
    state = _state(session_factory, booking_id, seeded["ticket_types"]["General"])
    assert state["status"] == "pending"


def test_missing_signature_is_rejected(client, paid_payload):
    body = json.dumps(paid_payload({"booking_id": "b"})).encode("utf-8")

    response = client.post(
        "/payments/webhook",
        content=body,
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400


def test_replayed_old_webhook_is_rejected(client, signed_webhook, paid_payload, settings):
    stale = int(time.time()) - settings.webhook_tolerance_seconds - 60

    response = _post_webhook(
        client,
        signed_webhook,
        paid_payload({"booking_id": "b"}, created_at=stale),
    )

    assert response.status_code == 400


def test_webhook_is_not_acknowledged_when_commit_fails(
    client, seed_event, signed_webhook, paid_payload, session_factory, monkeypatch
):
    seeded = seed_event()
    general = seeded["ticket_types"]["General"]
    booking_id = _create_booking(client, seeded, quantity=1)

    def lost_connection(self):
        raise OperationalError("COMMIT", {}, Exception("server closed the connection"))

    monkeypatch.setattr(Session, "commit", lost_connection)

    response = _post_webhook(client, signed_webhook, paid_payload({"booking_id": booking_id}))

    monkeypatch.undo()
    assert response.status_code == 500
    state = _state(session_factory, booking_id, general)
    assert state["status"] == "pending"
    assert state["sold"] == 0
    assert state["tickets"] == []

    retried = _post_webhook(client, signed_webhook, paid_payload({"booking_id": booking_id}))

    assert retried.status_code == 200
    assert _state(session_factory, booking_id, general)["status"] == "confirmed"


# -----------------------------
# Organizer accounts
# -----------------------------
def _account_payload(event_type, account_id="acc_org_1"):
    return {
        "entity": "event",
        "event": event_type,
        "payload": {"account": {"entity": {"id": account_id}}},
        "created_at": int(time.time()),
    }


def _organizer_status(session_factory, organizer_id):
    with session_factory() as db:
        return db.get(Organizer, organizer_id).verification_status


def test_account_activation_verifies_organizer(client, seed_event, signed_webhook, session_factory):
    seeded = seed_event(payout_account_id="acc_org_1")

    response = _post_webhook(client, signed_webhook, _account_payload("account.activated"))

    assert response.status_code == 200
    assert _organizer_status(session_factory, seeded["organizer_id"]) == VerificationStatus.VERIFIED


def test_account_suspension_rejects_organizer(client, seed_event, signed_webhook, session_factory):
    seeded = seed_event(payout_account_id="acc_org_1")

    _post_webhook(client, signed_webhook, _account_payload("account.activated"))
    _post_webhook(client, signed_webhook, _account_payload("account.suspended"))

    assert _organizer_status(session_factory, seeded["organizer_id"]) == VerificationStatus.REJECTED


def test_account_with_pending_kyc_stays_pending(client, seed_event, signed_webhook, session_factory):
    seeded = seed_event(payout_account_id="acc_org_1")

    _post_webhook(client, signed_webhook, _account_payload("account.activated_kyc_pending"))
    assert _organizer_status(session_factory, seeded["organizer_id"]) == VerificationStatus.PENDING

    _post_webhook(client, signed_webhook, _account_payload("account.instantly_activated"))
    assert _organizer_status(session_factory, seeded["organizer_id"]) == VerificationStatus.VERIFIED


def test_account_event_for_unknown_account_is_acknowledged(client, signed_webhook):
    response = _post_webhook(client, signed_webhook, _account_payload("account.activated", "acc_nobody"))

    assert response.status_code == 200


def test_unhandled_event_is_acknowledged(client, signed_webhook):
    payload = {"event": "refund.processed", "payload": {}, "created_at": int(time.time())}

    response = _post_webhook(client, signed_webhook, payload)

    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_webhook_health(client):
    response = client.get("/payments/webhook")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["service"] == "payment-webhook"
