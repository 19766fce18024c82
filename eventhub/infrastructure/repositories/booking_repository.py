# eventhub/infrastructure/repositories/booking_repository.py

from datetime import datetime

from sqlalchemy.orm import Session
from sqlalchemy import select, update

from eventhub.infrastructure.db.models import Booking, Reservation, utcnow
from eventhub.domain.state_machine import BookingStateMachine, BookingStatus


class BookingRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_idempotency_key(
        self,
        idempotency_key: str,
    ) -> Booking | None:
        stmt = select(Booking).where(
            Booking.idempotency_key == idempotency_key
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_id(
        self,
        booking_id: str,
        for_update: bool = False,
    ) -> Booking | None:
        stmt = select(Booking).where(Booking.id == booking_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.db.execute(
            stmt.execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def create_booking(
        self,
        user_id: str,
        event_id: str,
        tier_name: str,
        quantity: int,
        idempotency_key: str,
        payment_method_ref: str,
        currency: str,
    ) -> Booking:
        booking = Booking(
            user_id=user_id,
            event_id=event_id,
            tier_name=tier_name,
            quantity=quantity,
            idempotency_key=idempotency_key,
            payment_method_ref=payment_method_ref,
            currency=currency,
            status=BookingStatus.REQUESTED,
        )
        self.db.add(booking)
        self.db.flush()
        return booking

    def update_status(
        self,
        booking: Booking,
        new_status: BookingStatus,
    ) -> None:
        BookingStateMachine.validate_transition(booking.status, new_status)
        booking.status = new_status

    def compare_and_set_status(
        self,
        booking_id: str,
        expected: BookingStatus,
        new_status: BookingStatus,
    ) -> bool:
        """
        Conditional transition; False when another flow moved the
        booking first (e.g. the expiry sweeper).
        """
        BookingStateMachine.validate_transition(expected, new_status)
        stmt = (
            update(Booking)
            .where(Booking.id == booking_id)
            .where(Booking.status == expected)
            .values(status=new_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def list_expired_holds(self, now: datetime, limit: int = 100) -> list[Booking]:
        stmt = (
            select(Booking)
            .join(Reservation, Reservation.id == Booking.reservation_id)
            .where(Booking.status.in_([BookingStatus.RESERVED, BookingStatus.AUTHORIZING]))
            .where(Reservation.expires_at < now)
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_by_status(self, status: BookingStatus, limit: int = 100) -> list[Booking]:
        stmt = (
            select(Booking)
            .where(Booking.status == status)
            .order_by(Booking.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
