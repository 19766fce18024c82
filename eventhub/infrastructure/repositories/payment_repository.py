# eventhub/infrastructure/repositories/payment_repository.py

from sqlalchemy import select
from sqlalchemy.orm import Session

from eventhub.domain.state_machine import PaymentStateMachine, PaymentStatus
from eventhub.infrastructure.db.models import Payment


class PaymentRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payment_id: str) -> Payment | None:
        return self.db.get(Payment, payment_id, populate_existing=True)

    def get_by_idempotency_key(self, idempotency_key: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.idempotency_key == idempotency_key)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_for_booking(self, booking_id: str) -> Payment | None:
        stmt = (
            select(Payment)
            .where(Payment.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def list_for_user(self, user_id: str) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
        )
        return list(self.db.execute(stmt).scalars().all())

    def get_or_create(
        self,
        ticket_id: str,
        booking_id: str,
        user_id: str,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        method_ref: str,
    ) -> Payment:
        # One Payment per idempotency key: a retried booking reuses it.
        existing = self.get_by_idempotency_key(idempotency_key)
        if existing:
            return existing

        payment = Payment(
            ticket_id=ticket_id,
            booking_id=booking_id,
            user_id=user_id,
            amount_minor=amount_minor,
            currency=currency,
            idempotency_key=idempotency_key,
            method_ref=method_ref,
            status=PaymentStatus.PENDING,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def update_status(self, payment: Payment, new_status: PaymentStatus) -> None:
        PaymentStateMachine.validate_transition(payment.status, new_status)
        payment.status = new_status

    def list_orphaned_captures(self, limit: int = 100) -> list[Payment]:
        """Captures that landed after their hold was released and still owe a refund."""
        stmt = (
            select(Payment)
            .where(Payment.status == PaymentStatus.CANCELLED)
            .where(Payment.gateway_txn_id.is_not(None))
            .where(Payment.gateway_refund_id.is_(None))
            .order_by(Payment.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_unconfirmed_captures(self, limit: int = 100) -> list[Payment]:
        """Captured at the gateway but the booking never reached PAYMENT_CONFIRMED."""
        stmt = (
            select(Payment)
            .where(Payment.status == PaymentStatus.PROCESSING)
            .where(Payment.gateway_txn_id.is_not(None))
            .order_by(Payment.updated_at)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
