import logging

from sqlalchemy.orm import sessionmaker

from eventhub.infrastructure.db.session import get_db_session
from eventhub.infrastructure.repositories.notification_repository import NotificationRepository

logger = logging.getLogger(__name__)

BOOKING_CONFIRMATION = "booking_confirmation"
PAYMENT_SUCCESS = "payment_success"
PAYMENT_FAILED = "payment_failed"
REFUND_PROCESSED = "refund_processed"
TICKET_TRANSFERRED = "ticket_transferred"
RESERVATION_EXPIRED = "reservation_expired"

_TEMPLATES: dict[str, tuple[str, str, list[str]]] = {
    BOOKING_CONFIRMATION: (
        "Booking confirmed",
        "Your {quantity} x {tier_name} ticket(s) are confirmed.",
        ["email", "push", "in_app"],
    ),
    PAYMENT_SUCCESS: (
        "Payment received",
        "We received your payment of {amount} {currency}.",
        ["in_app"],
    ),
    PAYMENT_FAILED: (
        "Payment failed",
        "Your payment could not be completed: {reason}.",
        ["email", "in_app"],
    ),
    REFUND_PROCESSED: (
        "Refund processed",
        "A refund of {amount} {currency} has been issued.",
        ["email", "in_app"],
    ),
    TICKET_TRANSFERRED: (
        "Ticket received",
        "A {tier_name} ticket has been transferred to you.",
        ["email", "in_app"],
    ),
    RESERVATION_EXPIRED: (
        "Reservation expired",
        "Your hold on {quantity} x {tier_name} ticket(s) expired before payment completed.",
        ["in_app"],
    ),
}


class NotificationDispatcher:
    """
    Writes notifications to the outbox table in their own transaction.

    Delivery to email/SMS/push happens out of process; a dispatch failure
    is logged and never changes the outcome of the calling flow.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def dispatch(
        self,
        user_id: str,
        type: str,
        payload: dict,
        dedupe_key: str,
    ) -> bool:
        title, template, channels = _TEMPLATES[type]
        try:
            message = template.format(**payload)
        except KeyError:
            message = title

        try:
            with get_db_session(self.session_factory) as db:
                created = NotificationRepository(db).add_if_absent(
                    user_id=user_id,
                    type=type,
                    title=title,
                    message=message,
                    payload=payload,
                    channels=channels,
                    dedupe_key=dedupe_key,
                )
        except Exception:
            logger.warning(
                "Notification dispatch failed. user_id=%s type=%s dedupe_key=%s",
                user_id,
                type,
                dedupe_key,
                exc_info=True,
            )
            return False

        if created is None:
            logger.debug("Notification already queued. dedupe_key=%s", dedupe_key)
        return True
