# ticketflow/infrastructure/payments/razorpay_gateway.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
import json
import logging
import time
from typing import Callable

import razorpay
import requests

from ticketflow.domain.exceptions import ProcessorError, SignatureInvalidError
from ticketflow.domain.webhook_events import (
    AccountUpdated,
    CheckoutCompleted,
    CustomerInfo,
    PaymentFailed,
    TicketSelection,
    UnhandledEvent,
    WebhookEvent,
)
from ticketflow.infrastructure.config import Settings

logger = logging.getLogger(__name__)

# Linked account states reported by Razorpay Route.
_ACTIVE_ACCOUNT_STATES = {"activated", "instantly_activated"}
_PENDING_ACCOUNT_STATES = {
    "created",
    "under_review",
    "needs_clarification",
    "activated_kyc_pending",
}


@dataclass(frozen=True)
class CheckoutLineItem:
    name: str
    unit_amount_minor: int
    quantity: int


@dataclass(frozen=True)
class CheckoutRequest:
    reference_id: str
    currency: str
    description: str
    line_items: list[CheckoutLineItem]
    customer: CustomerInfo
    metadata: dict[str, str]
    payout_account_id: str | None = None
    platform_fee_minor: int = 0
    callback_url: str | None = None

    @property
    def amount_minor(self) -> int:
        return sum(item.unit_amount_minor * item.quantity for item in self.line_items)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    checkout_url: str
    raw: dict = field(default_factory=dict, compare=False)


class PaymentGateway(ABC):
    provider: str

    @abstractmethod
    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession: ...

    @abstractmethod
    def verify_webhook(self, body: bytes, signature: str | None) -> dict: ...

    @abstractmethod
    def parse_event(self, payload: dict) -> WebhookEvent: ...


class RazorpayGateway(PaymentGateway):
    """
    Hosted checkout through Razorpay Payment Links.

    Booking correlation travels in `notes`, which Razorpay echoes back on
    the payment_link, order and payment entities of webhook payloads.
    Organizer payouts use Route transfers attached to the link's order.
    """

    provider = "razorpay"

    def __init__(
        self,
        settings: Settings,
        client: razorpay.Client | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.clock = clock
        if client is None:
            auth = None
            if settings.razorpay_key_id and settings.razorpay_key_secret:
                auth = (settings.razorpay_key_id, settings.razorpay_key_secret)
            client = razorpay.Client(auth=auth)
        self.client = client

    # -----------------------------
    # Checkout
    # -----------------------------
    def create_checkout(self, request: CheckoutRequest) -> CheckoutSession:
        if not self.client.auth:
            raise ProcessorError(
                "Razorpay keys not configured. Set RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET."
            )

        data = self._payment_link_payload(request)
        try:
            link = self.client.payment_link.create(
                data,
                timeout=self.settings.processor_timeout_seconds,
            )
        except (
            razorpay.errors.BadRequestError,
            razorpay.errors.GatewayError,
            razorpay.errors.ServerError,
            requests.exceptions.RequestException,
        ) as exc:
            logger.warning(
                "Razorpay payment link creation failed. reference_id=%s error=%s",
                request.reference_id,
                exc,
            )
            raise ProcessorError("Failed to create checkout session") from exc

        session_id = link.get("id")
        checkout_url = link.get("short_url")
        if not session_id or not checkout_url:
            raise ProcessorError("Payment processor returned an incomplete checkout session")

        return CheckoutSession(session_id=session_id, checkout_url=checkout_url, raw=link)

    def _payment_link_payload(self, request: CheckoutRequest) -> dict:
        customer = {"name": request.customer.name, "email": request.customer.email}
        if request.customer.phone:
            customer["contact"] = request.customer.phone

        order_options: dict = {"notes": dict(request.metadata)}
        if request.payout_account_id:
            order_options["transfers"] = [
                {
                    "account": request.payout_account_id,
                    "amount": request.amount_minor - request.platform_fee_minor,
                    "currency": request.currency,
                    "notes": dict(request.metadata),
                    "linked_account_notes": sorted(request.metadata),
                    "on_hold": 0,
                }
            ]

        data = {
            "amount": request.amount_minor,
            "currency": request.currency,
            "accept_partial": False,
            "reference_id": request.reference_id,
            "description": _describe(request.description, request.line_items),
            "customer": customer,
            "notify": {"sms": False, "email": False},
            "reminder_enable": False,
            "notes": dict(request.metadata),
            "options": {"order": order_options},
        }
        if request.callback_url:
            data["callback_url"] = request.callback_url
            data["callback_method"] = "get"
        return data

    # -----------------------------
    # Webhooks
    # -----------------------------
    def verify_webhook(self, body: bytes, signature: str | None) -> dict:
        if not signature:
            raise SignatureInvalidError("Missing webhook signature header")

        secret = self.settings.razorpay_webhook_secret
        if not secret:
            raise SignatureInvalidError("Webhook secret not configured")

        try:
            body_text = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise SignatureInvalidError("Webhook body is not valid UTF-8") from exc

        try:
            self.client.utility.verify_webhook_signature(body_text, signature, secret)
        except razorpay.errors.SignatureVerificationError as exc:
            raise SignatureInvalidError("Webhook signature mismatch") from exc

        try:
            payload = json.loads(body_text)
        except ValueError as exc:
            raise SignatureInvalidError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise SignatureInvalidError("Webhook body is not a JSON object")

        created_at = payload.get("created_at")
        if not isinstance(created_at, (int, float)) or isinstance(created_at, bool):
            raise SignatureInvalidError("Webhook payload has no created_at timestamp")
        skew = abs(self.clock() - created_at)
        if skew > self.settings.webhook_tolerance_seconds:
            raise SignatureInvalidError(
                f"Webhook timestamp outside tolerance ({int(skew)}s)"
            )

        return payload

    def parse_event(self, payload: dict) -> WebhookEvent:
        event_type = payload.get("event") or ""
        entities = payload.get("payload") or {}

        if event_type == "payment_link.paid":
            return _checkout_completed(entities)
        if event_type == "payment.failed":
            payment = _entity(entities, "payment")
            notes = _notes(payment)
            return PaymentFailed(
                payment_intent_id=payment.get("order_id"),
                payment_reference=payment.get("id"),
                booking_id=notes.get("booking_id"),
                reason=payment.get("error_description"),
            )
        if event_type.startswith("account."):
            account = _entity(entities, "account")
            state = account.get("status") or event_type.split(".", 1)[1]
            return AccountUpdated(
                account_id=account.get("id") or payload.get("account_id") or "",
                charges_enabled=state in _ACTIVE_ACCOUNT_STATES,
                payouts_enabled=state in _ACTIVE_ACCOUNT_STATES,
                has_pending_requirements=state in _PENDING_ACCOUNT_STATES,
            )
        return UnhandledEvent(event_type=event_type)


def _describe(description: str, line_items: list[CheckoutLineItem]) -> str:
    # Payment links carry a single amount; the itemisation lives in the text.
    parts = ", ".join(f"{item.name} x {item.quantity}" for item in line_items)
    text = f"{description}: {parts}" if parts else description
    return text[:2048]


def _entity(entities: dict, name: str) -> dict:
    wrapper = entities.get(name) or {}
    return wrapper.get("entity") or {}


def _notes(entity: dict) -> dict:
    # Razorpay serialises empty notes as [] rather than {}.
    notes = entity.get("notes")
    return notes if isinstance(notes, dict) else {}


def _checkout_completed(entities: dict) -> CheckoutCompleted:
    link = _entity(entities, "payment_link")
    order = _entity(entities, "order")
    payment = _entity(entities, "payment")

    notes: dict = {}
    for entity in (payment, order, link):
        notes.update(_notes(entity))

    link_customer = link.get("customer") or {}
    email = link_customer.get("email") or payment.get("email")
    customer = None
    if email:
        customer = CustomerInfo(
            name=link_customer.get("name") or notes.get("customer_name") or "Unknown",
            email=email,
            phone=link_customer.get("contact") or payment.get("contact"),
        )

    return CheckoutCompleted(
        event_id=notes.get("event_id"),
        booking_id=notes.get("booking_id"),
        session_id=link.get("id"),
        payment_intent_id=order.get("id") or payment.get("order_id"),
        payment_reference=payment.get("id"),
        amount_paid_minor=int(payment.get("amount") or link.get("amount_paid") or 0),
        customer=customer,
        selections=_selections(notes.get("tickets")),
    )


def _selections(raw: str | None) -> tuple[TicketSelection, ...]:
    if not raw:
        return ()
    try:
        items = json.loads(raw)
        return tuple(
            TicketSelection(
                ticket_type_id=str(item["ticket_type_id"]),
                quantity=int(item["quantity"]),
            )
            for item in items
        )
    except (ValueError, TypeError, KeyError) as exc:
        logger.warning("Ignoring malformed ticket selections in payment notes: %s", exc)
        return ()
