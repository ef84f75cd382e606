# ticketflow/domain/webhook_events.py

from dataclasses import dataclass, field
from typing import Union


@dataclass(frozen=True)
class TicketSelection:
    ticket_type_id: str
    quantity: int


@dataclass(frozen=True)
class CustomerInfo:
    name: str
    email: str
    phone: str | None = None


@dataclass(frozen=True)
class CheckoutCompleted:
    """
    Hosted checkout paid. Either booking_id is set (the booking was created
    before checkout) or event_id plus selections describe a purchase that
    has no booking yet.
    """

    event_id: str | None
    booking_id: str | None
    session_id: str | None
    payment_intent_id: str | None
    payment_reference: str | None
    amount_paid_minor: int
    customer: CustomerInfo | None
    selections: tuple[TicketSelection, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class PaymentFailed:
    payment_intent_id: str | None
    payment_reference: str | None
    booking_id: str | None
    reason: str | None = None


@dataclass(frozen=True)
class AccountUpdated:
    account_id: str
    charges_enabled: bool
    payouts_enabled: bool
    has_pending_requirements: bool


@dataclass(frozen=True)
class UnhandledEvent:
    event_type: str


WebhookEvent = Union[CheckoutCompleted, PaymentFailed, AccountUpdated, UnhandledEvent]
