# eventhub/infrastructure/repositories/inventory_ledger.py

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from eventhub import config
from eventhub.domain.exceptions import (
    BookingValidationError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    NotFoundError,
)
from eventhub.domain.state_machine import ReservationStatus
from eventhub.infrastructure.db.models import Reservation, TicketTier, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TierAvailability:
    tier_name: str
    price_minor: int
    quantity: int
    sold: int
    held: int

    @property
    def available(self) -> int:
        return self.quantity - self.sold - self.held


class InventoryLedger:
    """
    Sole writer of ticket_tiers.sold / ticket_tiers.held.

    Every counter change is a single conditional UPDATE, so the
    `sold + held <= quantity` bound is enforced by the row write itself
    and concurrent callers for one tier are serialized by the database.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_tier(self, event_id: str, tier_name: str) -> TicketTier:
        stmt = (
            select(TicketTier)
            .where(TicketTier.event_id == event_id)
            .where(TicketTier.name == tier_name)
            .execution_options(populate_existing=True)
        )
        tier = self.db.execute(stmt).scalar_one_or_none()
        if not tier:
            raise NotFoundError("Tier", tier_name)
        return tier

    def get_reservation(self, reservation_id: str) -> Reservation:
        reservation = self.db.get(Reservation, reservation_id)
        if not reservation:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    def reserve(
        self,
        event_id: str,
        tier_name: str,
        quantity: int,
        user_id: str,
        hold_seconds: int | None = None,
        now: datetime | None = None,
    ) -> str:
        if quantity <= 0:
            raise BookingValidationError("Quantity must be positive")

        tier = self.get_tier(event_id, tier_name)
        stmt = (
            update(TicketTier)
            .where(TicketTier.id == tier.id)
            .where(TicketTier.sold + TicketTier.held + quantity <= TicketTier.quantity)
            .values(held=TicketTier.held + quantity, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(stmt)
        if result.rowcount != 1:
            logger.info(
                "Reserve rejected. event_id=%s tier=%s quantity=%s",
                event_id,
                tier_name,
                quantity,
            )
            raise InsufficientInventoryError(tier_name, quantity)

        hold = config.RESERVATION_HOLD_SECONDS if hold_seconds is None else hold_seconds
        reservation = Reservation(
            event_id=event_id,
            tier_id=tier.id,
            user_id=user_id,
            quantity=quantity,
            status=ReservationStatus.HELD,
            expires_at=(now or utcnow()) + timedelta(seconds=hold),
        )
        self.db.add(reservation)
        self.db.flush()
        logger.info(
            "Reserved inventory. reservation_id=%s event_id=%s tier=%s quantity=%s",
            reservation.id,
            event_id,
            tier_name,
            quantity,
        )
        return reservation.id

    def commit(self, reservation_id: str) -> None:
        """HELD -> COMMITTED. A second commit is a no-op."""
        reservation = self.get_reservation(reservation_id)
        if reservation.status == ReservationStatus.COMMITTED:
            return

        if not self._move(reservation, ReservationStatus.HELD, ReservationStatus.COMMITTED):
            current = self._current_status(reservation_id)
            if current == ReservationStatus.COMMITTED:
                return
            raise InvalidStateTransitionError(
                from_state=current.value,
                to_state=ReservationStatus.COMMITTED.value,
            )

        self._adjust_tier(reservation.tier_id, held=-reservation.quantity, sold=reservation.quantity)
        logger.info("Committed reservation. reservation_id=%s", reservation_id)

    def release(self, reservation_id: str) -> bool:
        """HELD -> RELEASED. No-op (returns False) in any other state."""
        return self._drop_hold(reservation_id, ReservationStatus.RELEASED)

    def expire(self, reservation_id: str) -> bool:
        """HELD -> EXPIRED. Same capacity effect as release."""
        return self._drop_hold(reservation_id, ReservationStatus.EXPIRED)

    def restock(self, reservation_id: str) -> bool:
        """COMMITTED -> RELEASED, returning sold units to the tier."""
        reservation = self.get_reservation(reservation_id)
        if not self._move(reservation, ReservationStatus.COMMITTED, ReservationStatus.RELEASED):
            return False

        self._adjust_tier(reservation.tier_id, sold=-reservation.quantity)
        logger.info(
            "Restocked cancelled reservation. reservation_id=%s quantity=%s",
            reservation_id,
            reservation.quantity,
        )
        return True

    def availability(self, event_id: str) -> list[TierAvailability]:
        stmt = (
            select(TicketTier)
            .where(TicketTier.event_id == event_id)
            .order_by(TicketTier.created_at, TicketTier.name)
            .execution_options(populate_existing=True)
        )
        return [
            TierAvailability(
                tier_name=tier.name,
                price_minor=tier.price_minor,
                quantity=tier.quantity,
                sold=tier.sold,
                held=tier.held,
            )
            for tier in self.db.execute(stmt).scalars().all()
        ]

    def _drop_hold(self, reservation_id: str, to_status: ReservationStatus) -> bool:
        reservation = self.get_reservation(reservation_id)
        if not self._move(reservation, ReservationStatus.HELD, to_status):
            return False

        self._adjust_tier(reservation.tier_id, held=-reservation.quantity)
        logger.info(
            "Dropped hold. reservation_id=%s status=%s quantity=%s",
            reservation_id,
            to_status.value,
            reservation.quantity,
        )
        return True

    def _move(
        self,
        reservation: Reservation,
        from_status: ReservationStatus,
        to_status: ReservationStatus,
    ) -> bool:
        stmt = (
            update(Reservation)
            .where(Reservation.id == reservation.id)
            .where(Reservation.status == from_status)
            .values(status=to_status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        moved = self.db.execute(stmt).rowcount == 1
        if moved:
            set_committed_value(reservation, "status", to_status)
        return moved

    def _current_status(self, reservation_id: str) -> ReservationStatus:
        stmt = select(Reservation.status).where(Reservation.id == reservation_id)
        return self.db.execute(stmt).scalar_one()

    def _adjust_tier(self, tier_id: str, held: int = 0, sold: int = 0) -> None:
        stmt = (
            update(TicketTier)
            .where(TicketTier.id == tier_id)
            .values(
                held=TicketTier.held + held,
                sold=TicketTier.sold + sold,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)
