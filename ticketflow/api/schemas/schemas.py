from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class BookingItemRequest(BaseModel):
    ticket_type_id: str
    quantity: int = Field(gt=0)


class BookingCreateRequest(BaseModel):
    event_id: str
    items: list[BookingItemRequest] = Field(min_length=1)
    customer_name: str = Field(min_length=1, max_length=255)
    customer_email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=255)
    customer_phone: str | None = Field(default=None, max_length=32)


class BookingItemResponse(BaseModel):
    ticket_type_id: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal


class TicketResponse(BaseModel):
    id: str
    ticket_type_id: str
    ticket_code: str
    qr_code: str
    status: str
    redeemed_at: datetime | None = None


class BookingResponse(BaseModel):
    id: str
    event_id: str
    user_id: str | None = None
    status: str
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    total_price: Decimal
    amount_paid: Decimal | None = None
    payment_session_id: str | None = None
    payment_intent_id: str | None = None
    items: list[BookingItemResponse]
    tickets: list[TicketResponse] = []


class BookingCreateResponse(BaseModel):
    booking: BookingResponse
    checkout_url: str | None = None


class CheckoutResponse(BaseModel):
    booking_id: str
    checkout_url: str
    session_id: str


class WebhookAck(BaseModel):
    received: bool


class TicketVerificationResponse(BaseModel):
    ticket_code: str
    status: str
    valid: bool
    booking_id: str
    ticket_type_id: str
    redeemed_at: datetime | None = None


class CapacityUpdateRequest(BaseModel):
    quantity_available: int = Field(ge=0)


class TicketTypeResponse(BaseModel):
    id: str
    event_id: str
    name: str
    price: Decimal
    quantity_available: int
    quantity_sold: int
