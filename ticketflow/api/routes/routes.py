from datetime import datetime, timezone
import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ticketflow.api.auth import CurrentUser, get_current_user, get_optional_user
from ticketflow.api.schemas.schemas import (
    BookingCreateRequest,
    BookingCreateResponse,
    BookingItemResponse,
    BookingResponse,
    CapacityUpdateRequest,
    CheckoutResponse,
    TicketResponse,
    TicketTypeResponse,
    TicketVerificationResponse,
    WebhookAck,
)
from ticketflow.application.booking_service import BookingService
from ticketflow.application.checkout_service import CheckoutService
from ticketflow.application.inventory_ledger import InventoryLedger
from ticketflow.application.ticket_service import TicketService
from ticketflow.application.webhook_processor import WebhookProcessor
from ticketflow.domain.exceptions import (
    AlreadyCancelledError,
    EventNotBookableError,
    ForbiddenError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    NotFoundError,
    ProcessorError,
    SignatureInvalidError,
    TicketflowError,
    TicketNotRedeemableError,
    ValidationError,
)
from ticketflow.domain.webhook_events import CustomerInfo, TicketSelection
from ticketflow.infrastructure.config import Settings, get_settings
from ticketflow.infrastructure.db.models import Booking, TicketType
from ticketflow.infrastructure.db.session import get_db
from ticketflow.infrastructure.payments.razorpay_gateway import PaymentGateway, RazorpayGateway
from ticketflow.infrastructure.repositories.event_repository import EventRepository
from ticketflow.infrastructure.repositories.ticket_type_repository import TicketTypeRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ForbiddenError, status.HTTP_403_FORBIDDEN),
    (EventNotBookableError, status.HTTP_409_CONFLICT),
    (InsufficientInventoryError, status.HTTP_409_CONFLICT),
    (AlreadyCancelledError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (TicketNotRedeemableError, status.HTTP_409_CONFLICT),
    (ProcessorError, status.HTTP_502_BAD_GATEWAY),
)


def _http_error(exc: TicketflowError) -> HTTPException:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Unexpected booking error",
    )


def get_payment_gateway(settings: Settings = Depends(get_settings)) -> PaymentGateway:
    return RazorpayGateway(settings)


async def raw_body(request: Request) -> bytes:
    return await request.body()


def _booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        event_id=booking.event_id,
        user_id=booking.user_id,
        status=booking.status.value,
        customer_name=booking.customer_name,
        customer_email=booking.customer_email,
        customer_phone=booking.customer_phone,
        total_price=booking.total_price,
        amount_paid=booking.amount_paid,
        payment_session_id=booking.payment_session_id,
        payment_intent_id=booking.payment_intent_id,
        items=[
            BookingItemResponse(
                ticket_type_id=item.ticket_type_id,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.total_price,
            )
            for item in booking.items
        ],
        tickets=[
            TicketResponse(
                id=ticket.id,
                ticket_type_id=ticket.ticket_type_id,
                ticket_code=ticket.ticket_code,
                qr_code=ticket.qr_code,
                status=ticket.status.value,
                redeemed_at=ticket.redeemed_at,
            )
            for ticket in booking.tickets
        ],
    )


def _ticket_type_response(ticket_type: TicketType) -> TicketTypeResponse:
    return TicketTypeResponse(
        id=ticket_type.id,
        event_id=ticket_type.event_id,
        name=ticket_type.name,
        price=ticket_type.price,
        quantity_available=ticket_type.quantity_available,
        quantity_sold=ticket_type.quantity_sold,
    )


@router.get("/health")
def health():
    return {"message": "ticketflow is running"}


@router.post("/bookings", response_model=BookingCreateResponse)
def create_booking(
    request: BookingCreateRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    user: CurrentUser | None = Depends(get_optional_user),
):
    service = BookingService(db, settings)

    try:
        booking = service.create_booking(
            event_id=request.event_id,
            line_items=[
                TicketSelection(ticket_type_id=item.ticket_type_id, quantity=item.quantity)
                for item in request.items
            ],
            customer=CustomerInfo(
                name=request.customer_name,
                email=request.customer_email,
                phone=request.customer_phone,
            ),
            user_id=user.id if user else None,
        )
    except TicketflowError as exc:
        raise _http_error(exc) from exc

    checkout_url = None
    try:
        session = CheckoutService(db, settings, gateway).open_checkout(booking)
        checkout_url = session.checkout_url
    except ProcessorError:
        # The booking is the durable unit; checkout can be retried later.
        logger.warning(
            "Checkout unavailable for booking %s; returning booking without URL",
            booking.id,
        )

    return BookingCreateResponse(
        booking=_booking_response(booking),
        checkout_url=checkout_url,
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    user: CurrentUser = Depends(get_current_user),
):
    try:
        booking = BookingService(db, settings).get_booking_for(booking_id, user.id)
    except TicketflowError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    user: CurrentUser = Depends(get_current_user),
):
    try:
        booking = BookingService(db, settings).cancel_booking(booking_id, user.id)
    except TicketflowError as exc:
        raise _http_error(exc) from exc
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/checkout", response_model=CheckoutResponse)
def retry_checkout(
    booking_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    try:
        booking, session = CheckoutService(db, settings, gateway).open_checkout_for(booking_id)
    except TicketflowError as exc:
        raise _http_error(exc) from exc
    return CheckoutResponse(
        booking_id=booking.id,
        checkout_url=session.checkout_url,
        session_id=session.session_id,
    )


@router.post("/payments/webhook", response_model=WebhookAck)
def payment_webhook(
    body: bytes = Depends(raw_body),
    x_razorpay_signature: str | None = Header(default=None),
    x_razorpay_event_id: str | None = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
    gateway: PaymentGateway = Depends(get_payment_gateway),
):
    processor = WebhookProcessor(db, settings, gateway)
    try:
        outcome = processor.handle(
            body,
            signature=x_razorpay_signature,
            delivery_id=x_razorpay_event_id,
        )
    except SignatureInvalidError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid webhook",
        ) from exc

    # Acknowledge only after a durable commit.
    try:
        db.commit()
    except SQLAlchemyError as exc:
        logger.exception("Could not persist webhook %s", outcome.event_type)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook not persisted",
        ) from exc

    logger.info(
        "Webhook %s handled: action=%s booking=%s",
        outcome.event_type,
        outcome.action,
        outcome.booking_id,
    )
    return WebhookAck(received=True)


@router.get("/payments/webhook")
def payment_webhook_health():
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "payment-webhook",
    }


@router.get("/tickets/verify/{ticket_code}", response_model=TicketVerificationResponse)
def verify_ticket(
    ticket_code: str,
    db: Session = Depends(get_db),
):
    service = TicketService(db)
    try:
        ticket = service.verify(ticket_code)
    except TicketflowError as exc:
        raise _http_error(exc) from exc
    return TicketVerificationResponse(
        ticket_code=ticket.ticket_code,
        status=ticket.status.value,
        valid=service.is_valid_for_entry(ticket),
        booking_id=ticket.booking_id,
        ticket_type_id=ticket.ticket_type_id,
        redeemed_at=ticket.redeemed_at,
    )


@router.post("/tickets/{ticket_code}/redeem", response_model=TicketVerificationResponse)
def redeem_ticket(
    ticket_code: str,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    service = TicketService(db)
    try:
        ticket = service.redeem(ticket_code, user.id)
    except TicketflowError as exc:
        raise _http_error(exc) from exc
    return TicketVerificationResponse(
        ticket_code=ticket.ticket_code,
        status=ticket.status.value,
        valid=service.is_valid_for_entry(ticket),
        booking_id=ticket.booking_id,
        ticket_type_id=ticket.ticket_type_id,
        redeemed_at=ticket.redeemed_at,
    )


@router.put("/ticket-types/{ticket_type_id}/capacity", response_model=TicketTypeResponse)
def update_ticket_type_capacity(
    ticket_type_id: str,
    request: CapacityUpdateRequest,
    db: Session = Depends(get_db),
    user: CurrentUser = Depends(get_current_user),
):
    ticket_type = TicketTypeRepository(db).get_by_id(ticket_type_id)
    if not ticket_type:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Ticket type not found",
        )
    if not EventRepository(db).is_event_organizer(ticket_type.event_id, user.id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not authorized to manage this ticket type",
        )

    try:
        ticket_type = InventoryLedger(db).set_capacity(ticket_type_id, request.quantity_available)
    except TicketflowError as exc:
        raise _http_error(exc) from exc
    return _ticket_type_response(ticket_type)
