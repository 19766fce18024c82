# eventhub/domain/state_machine.py

from enum import Enum
from typing import Dict, Set, Type

from eventhub.domain.exceptions import InvalidStateTransitionError


class BookingStatus(str, Enum):
    REQUESTED = "REQUESTED"
    RESERVED = "RESERVED"
    AUTHORIZING = "AUTHORIZING"
    PAYMENT_CONFIRMED = "PAYMENT_CONFIRMED"
    COMMITTED = "COMMITTED"
    RESERVATION_FAILED = "RESERVATION_FAILED"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    RELEASED = "RELEASED"
    CANCELLED = "CANCELLED"


class ReservationStatus(str, Enum):
    HELD = "HELD"
    COMMITTED = "COMMITTED"
    RELEASED = "RELEASED"
    EXPIRED = "EXPIRED"


class TicketStatus(str, Enum):
    ACTIVE = "active"
    USED = "used"
    CANCELLED = "cancelled"
    TRANSFERRED = "transferred"


class TicketPaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class EventStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"
    COMPLETED = "completed"


class StateMachine:
    """
    Table-driven lifecycle controller.
    Subclasses declare the status enum and the legal transitions.
    """

    _STATUS_TYPE: Type[Enum]
    _ALLOWED_TRANSITIONS: Dict[Enum, Set[Enum]] = {}

    @classmethod
    def can_transition(cls, from_status: Enum, to_status: Enum) -> bool:
        """
        Returns True if transition is allowed.
        """
        cls._ensure_valid_status(from_status)
        cls._ensure_valid_status(to_status)

        return to_status in cls._ALLOWED_TRANSITIONS.get(from_status, set())

    @classmethod
    def validate_transition(cls, from_status: Enum, to_status: Enum) -> None:
        """
        Raises InvalidStateTransitionError if transition is illegal.
        """
        if not cls.can_transition(from_status, to_status):
            raise InvalidStateTransitionError(
                from_state=from_status.value,
                to_state=to_status.value,
            )

    @classmethod
    def is_terminal(cls, status: Enum) -> bool:
        """
        Returns True if the state is terminal (no further transitions allowed).
        """
        cls._ensure_valid_status(status)
        return len(cls._ALLOWED_TRANSITIONS.get(status, set())) == 0

    @classmethod
    def get_allowed_transitions(cls, status: Enum) -> Set[Enum]:
        cls._ensure_valid_status(status)
        return cls._ALLOWED_TRANSITIONS.get(status, set())

    @classmethod
    def _ensure_valid_status(cls, status: Enum) -> None:
        if not isinstance(status, cls._STATUS_TYPE):
            raise TypeError(
                f"Expected {cls._STATUS_TYPE.__name__}, got {type(status)}"
            )


class BookingStateMachine(StateMachine):
    """
    Booking flow:
    REQUESTED -> RESERVED -> AUTHORIZING -> PAYMENT_CONFIRMED -> COMMITTED.
    RESERVED and AUTHORIZING may be swept to RELEASED once the hold lapses.
    """

    _STATUS_TYPE = BookingStatus
    _ALLOWED_TRANSITIONS = {
        BookingStatus.REQUESTED: {
            BookingStatus.RESERVED,
            BookingStatus.RESERVATION_FAILED,
        },
        BookingStatus.RESERVED: {
            BookingStatus.AUTHORIZING,
            BookingStatus.RELEASED,
        },
        BookingStatus.AUTHORIZING: {
            BookingStatus.PAYMENT_CONFIRMED,
            BookingStatus.PAYMENT_FAILED,
            BookingStatus.RELEASED,
        },
        BookingStatus.PAYMENT_CONFIRMED: {
            BookingStatus.COMMITTED,
        },
        BookingStatus.PAYMENT_FAILED: {
            BookingStatus.RELEASED,
        },
        BookingStatus.COMMITTED: {
            BookingStatus.CANCELLED,
        },
        BookingStatus.RESERVATION_FAILED: set(),
        BookingStatus.RELEASED: set(),
        BookingStatus.CANCELLED: set(),
    }


class ReservationStateMachine(StateMachine):
    _STATUS_TYPE = ReservationStatus
    _ALLOWED_TRANSITIONS = {
        ReservationStatus.HELD: {
            ReservationStatus.COMMITTED,
            ReservationStatus.RELEASED,
            ReservationStatus.EXPIRED,
        },
        # Restock after a post-hoc cancellation.
        ReservationStatus.COMMITTED: {
            ReservationStatus.RELEASED,
        },
        ReservationStatus.RELEASED: set(),
        ReservationStatus.EXPIRED: set(),
    }


class TicketStateMachine(StateMachine):
    """
    A transferred ticket stays valid for its new holder: it can be used,
    cancelled or transferred again.
    """

    _STATUS_TYPE = TicketStatus
    _ALLOWED_TRANSITIONS = {
        TicketStatus.ACTIVE: {
            TicketStatus.USED,
            TicketStatus.CANCELLED,
            TicketStatus.TRANSFERRED,
        },
        TicketStatus.TRANSFERRED: {
            TicketStatus.USED,
            TicketStatus.CANCELLED,
            TicketStatus.TRANSFERRED,
        },
        TicketStatus.USED: set(),
        TicketStatus.CANCELLED: set(),
    }


class TicketPaymentStateMachine(StateMachine):
    _STATUS_TYPE = TicketPaymentStatus
    _ALLOWED_TRANSITIONS = {
        TicketPaymentStatus.PENDING: {
            TicketPaymentStatus.COMPLETED,
            TicketPaymentStatus.FAILED,
        },
        TicketPaymentStatus.COMPLETED: {
            TicketPaymentStatus.REFUNDED,
        },
        TicketPaymentStatus.FAILED: set(),
        TicketPaymentStatus.REFUNDED: set(),
    }


class PaymentStateMachine(StateMachine):
    _STATUS_TYPE = PaymentStatus
    _ALLOWED_TRANSITIONS = {
        PaymentStatus.PENDING: {
            PaymentStatus.PROCESSING,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.PROCESSING: {
            PaymentStatus.COMPLETED,
            PaymentStatus.FAILED,
            PaymentStatus.CANCELLED,
        },
        PaymentStatus.COMPLETED: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.FAILED: set(),
        # A capture that lands after the hold was swept is refunded.
        PaymentStatus.CANCELLED: {
            PaymentStatus.REFUNDED,
        },
        PaymentStatus.REFUNDED: set(),
    }


class EventStateMachine(StateMachine):
    """
    Event lifecycle:
    DRAFT -> PUBLISHED -> CANCELLED / POSTPONED / COMPLETED.
    A postponed event is re-published once it has a new date.
    """

    _STATUS_TYPE = EventStatus
    _ALLOWED_TRANSITIONS = {
        EventStatus.DRAFT: {
            EventStatus.PUBLISHED,
            EventStatus.CANCELLED,
        },
        EventStatus.PUBLISHED: {
            EventStatus.CANCELLED,
            EventStatus.POSTPONED,
            EventStatus.COMPLETED,
        },
        EventStatus.POSTPONED: {
            EventStatus.PUBLISHED,
            EventStatus.CANCELLED,
        },
        EventStatus.CANCELLED: set(),
        EventStatus.COMPLETED: set(),
    }
