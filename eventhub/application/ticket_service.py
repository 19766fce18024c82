import logging
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import sessionmaker

from eventhub.application import notification_dispatcher as notices
from eventhub.application.notification_dispatcher import NotificationDispatcher
from eventhub.domain.exceptions import (
    AlreadyCheckedInError,
    BookingValidationError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    NotFoundError,
)
from eventhub.domain.principal import Principal
from eventhub.domain.state_machine import TicketPaymentStatus, TicketStatus
from eventhub.infrastructure.db.models import Ticket, utcnow
from eventhub.infrastructure.db.session import get_db_session
from eventhub.infrastructure.repositories.event_repository import EventRepository
from eventhub.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)

_HOLDABLE = (TicketStatus.ACTIVE, TicketStatus.TRANSFERRED)


class TicketService:
    """Post-purchase ticket operations: read, transfer and check-in."""

    def __init__(
        self,
        session_factory: sessionmaker,
        dispatcher: NotificationDispatcher | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher or NotificationDispatcher(session_factory)
        self._clock = clock

    def get(self, ticket_id: str, principal: Principal) -> Ticket:
        with get_db_session(self.session_factory) as db:
            ticket = TicketRepository(db).get_by_id(ticket_id)
            if not ticket:
                raise NotFoundError("Ticket", ticket_id)
            if ticket.user_id != principal.id:
                event = EventRepository(db).get_by_id(ticket.event_id)
                if not principal.can_manage_event(event.organizer_id):
                    raise NotAuthorizedError("Not allowed to view this ticket")
            return ticket

    def list_for_user(self, user_id: str) -> list[Ticket]:
        with get_db_session(self.session_factory) as db:
            return TicketRepository(db).list_for_user(user_id)

    def check_in(
        self,
        ticket_id: str,
        verifier: Principal,
        location: str | None = None,
    ) -> Ticket:
        with get_db_session(self.session_factory) as db:
            tickets = TicketRepository(db)
            ticket = tickets.get_by_id(ticket_id)
            if not ticket:
                raise NotFoundError("Ticket", ticket_id)

            event = EventRepository(db).get_by_id(ticket.event_id)
            if not verifier.can_manage_event(event.organizer_id):
                raise NotAuthorizedError("Only the event organizer can check in tickets")

            if ticket.status == TicketStatus.USED:
                raise AlreadyCheckedInError(ticket_id)
            if ticket.status not in _HOLDABLE:
                raise InvalidStateTransitionError(
                    from_state=ticket.status.value,
                    to_state=TicketStatus.USED.value,
                )
            if ticket.payment_status != TicketPaymentStatus.COMPLETED:
                raise BookingValidationError("Ticket has not been paid")

            if not tickets.mark_checked_in(ticket_id, verifier.id, location, self._clock()):
                # Lost the race against another scanner.
                raise AlreadyCheckedInError(ticket_id)

            ticket = tickets.get_by_id(ticket_id)

        logger.info(
            "Ticket checked in. ticket_id=%s verified_by=%s",
            ticket_id,
            verifier.id,
        )
        return ticket

    def transfer(
        self,
        ticket_id: str,
        owner: Principal,
        to_user_id: str,
        reason: str | None = None,
    ) -> Ticket:
        to_user_id = (to_user_id or "").strip()
        if not to_user_id:
            raise BookingValidationError("Recipient is required")
        if to_user_id == owner.id:
            raise BookingValidationError("Cannot transfer a ticket to yourself")

        with get_db_session(self.session_factory) as db:
            tickets = TicketRepository(db)
            ticket = tickets.get_by_id(ticket_id, for_update=True)
            if not ticket:
                raise NotFoundError("Ticket", ticket_id)
            if ticket.user_id != owner.id:
                raise NotAuthorizedError("Only the ticket holder can transfer this ticket")
            if ticket.payment_status != TicketPaymentStatus.COMPLETED:
                raise BookingValidationError("Ticket has not been paid")

            tickets.set_status(ticket, TicketStatus.TRANSFERRED)
            tickets.append_transfer(ticket, owner.id, to_user_id, reason)
            ticket.user_id = to_user_id
            tier_name = ticket.tier_name

        logger.info(
            "Ticket transferred. ticket_id=%s from=%s to=%s",
            ticket_id,
            owner.id,
            to_user_id,
        )
        self.dispatcher.dispatch(
            to_user_id,
            notices.TICKET_TRANSFERRED,
            {"ticket_id": ticket_id, "tier_name": tier_name, "from_user_id": owner.id},
            dedupe_key=f"ticket:{ticket_id}:transfer:{len(ticket.transfers)}",
        )
        return ticket
