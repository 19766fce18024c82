# eventhub/infrastructure/repositories/ticket_repository.py

import secrets
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session, selectinload

from eventhub.domain.state_machine import (
    TicketPaymentStateMachine,
    TicketPaymentStatus,
    TicketStateMachine,
    TicketStatus,
)
from eventhub.infrastructure.db.models import Ticket, TicketTransfer


def _scannable_code() -> str:
    return f"TKT-{secrets.token_urlsafe(18)}"


class TicketRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, ticket_id: str, for_update: bool = False) -> Ticket | None:
        stmt = (
            select(Ticket)
            .where(Ticket.id == ticket_id)
            .options(selectinload(Ticket.transfers))
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_user(self, user_id: str) -> list[Ticket]:
        stmt = (
            select(Ticket)
            .where(Ticket.user_id == user_id)
            .options(selectinload(Ticket.transfers))
            .order_by(Ticket.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def create_ticket(
        self,
        event_id: str,
        user_id: str,
        booking_id: str,
        tier_name: str,
        quantity: int,
        total_amount_minor: int,
        currency: str,
        special_requests: str | None = None,
    ) -> Ticket:
        ticket = Ticket(
            event_id=event_id,
            user_id=user_id,
            booking_id=booking_id,
            tier_name=tier_name,
            quantity=quantity,
            total_amount_minor=total_amount_minor,
            currency=currency,
            payment_status=TicketPaymentStatus.PENDING,
            status=TicketStatus.ACTIVE,
            code=_scannable_code(),
            special_requests=special_requests,
        )
        self.db.add(ticket)
        self.db.flush()
        return ticket

    def set_status(self, ticket: Ticket, new_status: TicketStatus) -> None:
        TicketStateMachine.validate_transition(ticket.status, new_status)
        ticket.status = new_status

    def set_payment_status(self, ticket: Ticket, new_status: TicketPaymentStatus) -> None:
        TicketPaymentStateMachine.validate_transition(ticket.payment_status, new_status)
        ticket.payment_status = new_status

    def append_transfer(
        self,
        ticket: Ticket,
        from_user_id: str,
        to_user_id: str,
        reason: str | None,
    ) -> TicketTransfer:
        record = TicketTransfer(
            ticket_id=ticket.id,
            from_user_id=from_user_id,
            to_user_id=to_user_id,
            reason=reason,
        )
        self.db.add(record)
        ticket.transfers.append(record)
        return record

    def mark_checked_in(
        self,
        ticket_id: str,
        verified_by: str,
        location: str | None,
        at: datetime,
    ) -> bool:
        """
        Single conditional UPDATE; False when the ticket was already used
        (or otherwise left the checkable states) under our feet.
        """
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id)
            .where(Ticket.checked_in_at.is_(None))
            .where(Ticket.status.in_([TicketStatus.ACTIVE, TicketStatus.TRANSFERRED]))
            .values(
                status=TicketStatus.USED,
                checked_in_at=at,
                verified_by=verified_by,
                check_in_location=location,
                updated_at=at,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1
