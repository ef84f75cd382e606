

class TicketflowError(Exception):
    """
    Base exception for all domain-level errors
    raised by the booking-to-fulfillment pipeline.
    """


class ValidationError(TicketflowError):
    """Raised when client input is malformed or breaks a booking rule."""


class NotFoundError(TicketflowError):
    """Raised when a referenced entity does not exist."""


class ForbiddenError(TicketflowError):
    """Raised when the requester is authenticated but not allowed to act."""


class EventNotBookableError(TicketflowError):
    """Raised when an event is unpublished or has already started."""


class InsufficientInventoryError(TicketflowError):
    """Raised when a ticket type has less headroom than requested."""

    def __init__(self, ticket_type_id: str, requested: int, remaining: int):
        self.ticket_type_id = ticket_type_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Not enough tickets available for ticket type {ticket_type_id}: "
            f"requested {requested}, remaining {remaining}"
        )


class InvalidStateTransitionError(TicketflowError):
    """
    Raised when an illegal booking state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class AlreadyCancelledError(TicketflowError):
    """Raised when cancelling a booking that is already cancelled."""


class TicketNotRedeemableError(TicketflowError):
    """Raised when a ticket is used or voided and cannot be redeemed."""


class ProcessorError(TicketflowError):
    """Raised when a payment processor call fails. Recoverable by retry."""


class SignatureInvalidError(TicketflowError):
    """Raised when a webhook fails authenticity checks."""
