class EventHubError(Exception):
    """
    Base exception for all domain-level errors
    inside EventHub.
    """


class InvalidStateTransitionError(EventHubError):
    """
    Raised when an illegal state transition is attempted.
    """

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state

        message = (
            f"Illegal state transition attempted: "
            f"{from_state} -> {to_state}"
        )
        super().__init__(message)


class BookingValidationError(EventHubError):
    """Raised for a malformed request, before any side effect."""


class NotFoundError(EventHubError):
    """Raised when a referenced record does not exist."""

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found")


class NotAuthorizedError(EventHubError):
    """Raised on an ownership or role mismatch."""


class InsufficientInventoryError(EventHubError):
    """Raised when a tier cannot cover the requested quantity."""

    def __init__(self, tier_name: str, requested: int):
        self.tier_name = tier_name
        self.requested = requested
        super().__init__(
            f"Not enough tickets available for tier '{tier_name}' "
            f"(requested {requested})"
        )


class IdempotencyConflictError(EventHubError):
    """Raised when an idempotent request conflicts with previous data."""


class PaymentDeclinedError(EventHubError):
    """Raised when the gateway declines a charge."""


class PaymentGatewayError(EventHubError):
    """Raised when the gateway fails or cannot be reached."""


class PersistenceError(EventHubError):
    """Raised when storage keeps failing after retries."""


class ReservationExpiredError(EventHubError):
    """Raised when a hold lapsed before the charge could be confirmed."""


class AlreadyCheckedInError(EventHubError):
    """Raised on a second check-in of the same ticket."""

    def __init__(self, ticket_id: str):
        self.ticket_id = ticket_id
        super().__init__("Ticket already checked in")
