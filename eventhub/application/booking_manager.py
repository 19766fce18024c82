import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from eventhub import config
from eventhub.application import notification_dispatcher as notices
from eventhub.application.notification_dispatcher import NotificationDispatcher
from eventhub.domain.exceptions import (
    BookingValidationError,
    IdempotencyConflictError,
    InsufficientInventoryError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentGatewayError,
    PersistenceError,
    ReservationExpiredError,
)
from eventhub.domain.pricing import quote, to_major
from eventhub.domain.principal import Principal
from eventhub.domain.state_machine import (
    BookingStatus,
    EventStatus,
    PaymentStatus,
    TicketPaymentStatus,
    TicketStatus,
)
from eventhub.infrastructure.db.models import Booking, utcnow
from eventhub.infrastructure.db.session import get_db_session
from eventhub.infrastructure.payments.gateway import (
    PaymentGateway,
    refund_key,
    reservation_payment_key,
)
from eventhub.infrastructure.repositories.booking_repository import BookingRepository
from eventhub.infrastructure.repositories.event_repository import EventRepository
from eventhub.infrastructure.repositories.inventory_ledger import InventoryLedger
from eventhub.infrastructure.repositories.payment_repository import PaymentRepository
from eventhub.infrastructure.repositories.ticket_repository import TicketRepository

logger = logging.getLogger(__name__)

_GATEWAY_ERRORS = (PaymentDeclinedError, PaymentGatewayError)
_IN_FLIGHT = (BookingStatus.RESERVED, BookingStatus.AUTHORIZING)


@dataclass(frozen=True)
class BookingRequest:
    event_id: str
    tier_name: str
    quantity: int
    payment_method_ref: str
    idempotency_key: str | None = None
    promo_code: str | None = None
    special_requests: str | None = None


@dataclass(frozen=True)
class BookingOutcome:
    booking_id: str
    status: BookingStatus
    ticket_id: str | None
    reservation_id: str | None
    subtotal_minor: int
    fee_minor: int
    amount_minor: int
    currency: str
    failure_reason: str | None = None
    replayed: bool = False

    @property
    def committed(self) -> bool:
        return self.status == BookingStatus.COMMITTED

    @property
    def processing(self) -> bool:
        return self.status in {
            BookingStatus.RESERVED,
            BookingStatus.AUTHORIZING,
            BookingStatus.PAYMENT_CONFIRMED,
        }


@dataclass(frozen=True)
class CancellationOutcome:
    ticket_id: str
    booking_status: BookingStatus
    refund_id: str | None = None


@dataclass(frozen=True)
class MaintenanceReport:
    expired: int
    committed: int
    refunded: int


def _snapshot(booking: Booking, replayed: bool = False) -> BookingOutcome:
    return BookingOutcome(
        booking_id=booking.id,
        status=booking.status,
        ticket_id=booking.ticket_id,
        reservation_id=booking.reservation_id,
        subtotal_minor=booking.subtotal_minor,
        fee_minor=booking.fee_minor,
        amount_minor=booking.amount_minor,
        currency=booking.currency,
        failure_reason=booking.failure_reason,
        replayed=replayed,
    )


class BookingManager:
    """
    Drives a booking through
    REQUESTED -> RESERVED -> AUTHORIZING -> PAYMENT_CONFIRMED -> COMMITTED.

    Every phase runs in its own short transaction so no lock is held while
    the gateway is called. Transitions that can race with the expiry sweeper
    or a cancellation are conditional updates on the booking row; the loser
    of such a race compensates (release the hold or refund the capture).
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: PaymentGateway,
        dispatcher: NotificationDispatcher | None = None,
        hold_seconds: int | None = None,
        commit_max_retries: int | None = None,
        commit_retry_delay: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.dispatcher = dispatcher or NotificationDispatcher(session_factory)
        self.hold_seconds = (
            config.RESERVATION_HOLD_SECONDS if hold_seconds is None else hold_seconds
        )
        self.commit_max_retries = max(
            1, config.COMMIT_MAX_RETRIES if commit_max_retries is None else commit_max_retries
        )
        self.commit_retry_delay = (
            config.COMMIT_RETRY_DELAY if commit_retry_delay is None else commit_retry_delay
        )
        self._sleep = sleep
        self._clock = clock

    def _session(self):
        return get_db_session(self.session_factory)

    # -----------------------------
    # Booking
    # -----------------------------
    def book(self, principal: Principal, request: BookingRequest) -> BookingOutcome:
        self._validate_request(request)
        idempotency_key = request.idempotency_key or str(uuid4())

        replay = self._replay(principal, request, idempotency_key)
        if replay:
            return replay

        try:
            booking_id = self._reserve(principal, request, idempotency_key)
        except IntegrityError:
            # A concurrent request with the same key won the insert.
            replay = self._replay(principal, request, idempotency_key)
            if replay:
                return replay
            raise
        except SQLAlchemyError as exc:
            logger.exception("Could not record booking. idempotency_key=%s", idempotency_key)
            raise PersistenceError("Could not record booking") from exc

        return self._pay_and_commit(booking_id)

    def _validate_request(self, request: BookingRequest) -> None:
        if request.quantity < 1 or request.quantity > config.MAX_TICKETS_PER_BOOKING:
            raise BookingValidationError(
                f"Quantity must be between 1 and {config.MAX_TICKETS_PER_BOOKING}"
            )
        if not request.tier_name.strip():
            raise BookingValidationError("Ticket type is required")
        if not request.payment_method_ref.strip():
            raise BookingValidationError("Payment method is required")
        if request.promo_code:
            raise BookingValidationError("Promo codes are not supported")

    def _replay(
        self,
        principal: Principal,
        request: BookingRequest,
        idempotency_key: str,
    ) -> BookingOutcome | None:
        with self._session() as db:
            booking = BookingRepository(db).get_by_idempotency_key(idempotency_key)
            if not booking:
                return None
            same_request = (
                booking.user_id == principal.id
                and booking.event_id == request.event_id
                and booking.tier_name == request.tier_name
                and booking.quantity == request.quantity
            )
            if not same_request:
                raise IdempotencyConflictError("Idempotency key reused with different parameters")
            outcome = _snapshot(booking, replayed=True)

        logger.info(
            "Replaying booking. booking_id=%s status=%s",
            outcome.booking_id,
            outcome.status.value,
        )
        if outcome.status == BookingStatus.PAYMENT_CONFIRMED:
            return self._commit_with_retry(outcome)
        return outcome

    def _reserve(
        self,
        principal: Principal,
        request: BookingRequest,
        idempotency_key: str,
    ) -> str:
        rejection: InsufficientInventoryError | None = None

        with self._session() as db:
            event = EventRepository(db).get_by_id(request.event_id)
            if not event:
                raise NotFoundError("Event", request.event_id)
            if event.status != EventStatus.PUBLISHED:
                raise BookingValidationError("Event is not open for booking")
            tier = next((t for t in event.tiers if t.name == request.tier_name), None)
            if not tier:
                raise BookingValidationError("Invalid ticket type")

            price = quote(tier.price_minor, request.quantity)
            bookings = BookingRepository(db)
            booking = bookings.create_booking(
                user_id=principal.id,
                event_id=event.id,
                tier_name=tier.name,
                quantity=request.quantity,
                idempotency_key=idempotency_key,
                payment_method_ref=request.payment_method_ref,
                currency=event.currency,
            )
            booking.subtotal_minor = price.subtotal_minor
            booking.fee_minor = price.fee_minor
            booking.amount_minor = price.total_minor

            try:
                reservation_id = InventoryLedger(db).reserve(
                    event_id=event.id,
                    tier_name=tier.name,
                    quantity=request.quantity,
                    user_id=principal.id,
                    hold_seconds=self.hold_seconds,
                    now=self._clock(),
                )
            except InsufficientInventoryError as exc:
                bookings.update_status(booking, BookingStatus.RESERVATION_FAILED)
                booking.failure_reason = "sold out"
                rejection = exc
            else:
                ticket = TicketRepository(db).create_ticket(
                    event_id=event.id,
                    user_id=principal.id,
                    booking_id=booking.id,
                    tier_name=tier.name,
                    quantity=request.quantity,
                    total_amount_minor=price.total_minor,
                    currency=event.currency,
                    special_requests=request.special_requests,
                )
                booking.reservation_id = reservation_id
                booking.ticket_id = ticket.id
                bookings.update_status(booking, BookingStatus.RESERVED)
            booking_id = booking.id

        if rejection:
            raise rejection
        logger.info("Booking reserved. booking_id=%s", booking_id)
        return booking_id

    def _pay_and_commit(self, booking_id: str) -> BookingOutcome:
        with self._session() as db:
            booking = self._claim(db, booking_id, BookingStatus.RESERVED, BookingStatus.AUTHORIZING)
            if not booking:
                raise ReservationExpiredError("Reservation is no longer held")
            payment = PaymentRepository(db).get_or_create(
                ticket_id=booking.ticket_id,
                booking_id=booking.id,
                user_id=booking.user_id,
                amount_minor=booking.amount_minor,
                currency=booking.currency,
                idempotency_key=reservation_payment_key(booking.reservation_id),
                method_ref=booking.payment_method_ref,
            )
            payment_id = payment.id
            payment_key = payment.idempotency_key
            pending = _snapshot(booking)

        try:
            authorization = self.gateway.authorize(
                pending.amount_minor,
                pending.currency,
                payment.method_ref,
                payment_key,
            )
        except _GATEWAY_ERRORS as exc:
            self._fail_payment(booking_id, payment_id, exc)
            raise

        with self._session() as db:
            booking = BookingRepository(db).get_by_id(booking_id)
            still_held = booking.status == BookingStatus.AUTHORIZING
            if still_held:
                payments = PaymentRepository(db)
                payment = payments.get_by_id(payment_id)
                payment.gateway_auth_id = authorization.auth_id
                payments.update_status(payment, PaymentStatus.PROCESSING)
        if not still_held:
            # Swept or cancelled while authorizing; nothing was captured.
            raise ReservationExpiredError("Reservation expired before payment completed")

        try:
            confirmation = self.gateway.confirm(authorization.auth_id, payment_key)
        except _GATEWAY_ERRORS as exc:
            self._fail_payment(booking_id, payment_id, exc)
            raise

        # Money has moved: the capture id is stored first, on its own, so the
        # reconciler can always find the charge.
        txn_id = confirmation.gateway_txn_id
        try:
            self._with_retry(
                lambda db: self._store_capture(db, payment_id, txn_id),
                booking_id,
                "Recording capture",
            )
        except SQLAlchemyError as exc:
            logger.exception(
                "Capture could not be recorded; refunding. booking_id=%s payment_id=%s",
                booking_id,
                payment_id,
            )
            self._refund_unrecorded_capture(payment_id, txn_id, pending.amount_minor)
            raise PersistenceError("Payment could not be recorded; a refund was requested") from exc

        try:
            confirmed = self._with_retry(
                lambda db: self._confirm_payment(db, booking_id, payment_id),
                booking_id,
                "Confirming payment",
            )
        except SQLAlchemyError:
            # The capture is on record; reconcile_confirmed() finishes the booking.
            logger.exception(
                "Payment confirmation could not be recorded; booking left processing. booking_id=%s",
                booking_id,
            )
            return pending
        if not confirmed:
            logger.warning(
                "Capture landed after hold was released; refunding. booking_id=%s payment_id=%s",
                booking_id,
                payment_id,
            )
            self._refund_late_capture(payment_id)
            raise ReservationExpiredError("Reservation expired before payment completed")

        logger.info("Payment confirmed. booking_id=%s payment_id=%s", booking_id, payment_id)
        return self._commit_with_retry(confirmed)

    def _claim(
        self,
        db: Session,
        booking_id: str,
        expected: BookingStatus,
        new_status: BookingStatus,
    ) -> Booking | None:
        bookings = BookingRepository(db)
        if not bookings.compare_and_set_status(booking_id, expected, new_status):
            return None
        return bookings.get_by_id(booking_id)

    def _with_retry(self, work: Callable[[Session], object], booking_id: str, step: str):
        """
        Runs ``work`` in a fresh transaction, retrying storage errors with
        exponential backoff. The last error is re-raised once retries run out.
        """
        delay = self.commit_retry_delay
        for attempt in range(1, self.commit_max_retries + 1):
            try:
                with self._session() as db:
                    return work(db)
            except SQLAlchemyError:
                if attempt == self.commit_max_retries:
                    raise
                logger.warning(
                    "%s failed (attempt %s/%s). Retrying in %.2f seconds. booking_id=%s",
                    step,
                    attempt,
                    self.commit_max_retries,
                    delay,
                    booking_id,
                )
                self._sleep(delay)
                delay *= 2

    def _store_capture(self, db: Session, payment_id: str, txn_id: str) -> None:
        PaymentRepository(db).get_by_id(payment_id).gateway_txn_id = txn_id

    def _confirm_payment(self, db: Session, booking_id: str, payment_id: str) -> BookingOutcome | None:
        booking = self._claim(
            db, booking_id, BookingStatus.AUTHORIZING, BookingStatus.PAYMENT_CONFIRMED
        )
        if not booking:
            return None
        payments = PaymentRepository(db)
        payments.update_status(payments.get_by_id(payment_id), PaymentStatus.COMPLETED)
        return _snapshot(booking)

    # -----------------------------
    # Commit (PAYMENT_CONFIRMED -> COMMITTED)
    # -----------------------------
    def _commit_with_retry(self, confirmed: BookingOutcome) -> BookingOutcome:
        try:
            outcome = self._with_retry(
                lambda db: self._commit(db, confirmed.booking_id),
                confirmed.booking_id,
                "Commit after payment",
            )
        except SQLAlchemyError:
            # Money has moved; leave the booking for the reconciler.
            logger.exception(
                "Commit after payment failed; booking left processing. booking_id=%s attempts=%s",
                confirmed.booking_id,
                self.commit_max_retries,
            )
            return confirmed

        if not outcome.replayed:
            self._notify_committed(outcome)
        return outcome

    def _commit(self, db: Session, booking_id: str) -> BookingOutcome:
        bookings = BookingRepository(db)
        booking = bookings.get_by_id(booking_id, for_update=True)
        if booking.status == BookingStatus.COMMITTED:
            return _snapshot(booking, replayed=True)

        InventoryLedger(db).commit(booking.reservation_id)

        payment = PaymentRepository(db).get_for_booking(booking.id)
        tickets = TicketRepository(db)
        ticket = tickets.get_by_id(booking.ticket_id, for_update=True)
        tickets.set_payment_status(ticket, TicketPaymentStatus.COMPLETED)
        ticket.payment_id = payment.id

        bookings.update_status(booking, BookingStatus.COMMITTED)
        logger.info(
            "Booking committed. booking_id=%s ticket_id=%s",
            booking.id,
            ticket.id,
        )
        return _snapshot(booking)

    def _notify_committed(self, outcome: BookingOutcome) -> None:
        with self._session() as db:
            booking = BookingRepository(db).get_by_id(outcome.booking_id)
            user_id = booking.user_id
            tier_name = booking.tier_name
            quantity = booking.quantity

        self.dispatcher.dispatch(
            user_id,
            notices.BOOKING_CONFIRMATION,
            {
                "booking_id": outcome.booking_id,
                "ticket_id": outcome.ticket_id,
                "tier_name": tier_name,
                "quantity": quantity,
            },
            dedupe_key=f"booking:{outcome.booking_id}:confirmed",
        )
        self.dispatcher.dispatch(
            user_id,
            notices.PAYMENT_SUCCESS,
            {
                "booking_id": outcome.booking_id,
                "amount": str(to_major(outcome.amount_minor)),
                "currency": outcome.currency,
            },
            dedupe_key=f"booking:{outcome.booking_id}:paid",
        )

    # -----------------------------
    # Compensation
    # -----------------------------
    def _fail_payment(self, booking_id: str, payment_id: str, error: Exception) -> None:
        reason = str(error) or error.__class__.__name__
        with self._session() as db:
            booking = self._claim(
                db, booking_id, BookingStatus.AUTHORIZING, BookingStatus.PAYMENT_FAILED
            )
            if not booking:
                # The sweeper or a cancellation already released the hold.
                return

            InventoryLedger(db).release(booking.reservation_id)

            payments = PaymentRepository(db)
            payment = payments.get_by_id(payment_id)
            payment.failure_reason = reason[:255]
            payments.update_status(payment, PaymentStatus.FAILED)

            self._void_ticket(db, booking.ticket_id)
            booking.failure_reason = reason[:255]
            BookingRepository(db).update_status(booking, BookingStatus.RELEASED)
            user_id = booking.user_id

        logger.warning(
            "Payment failed; hold released. booking_id=%s reason=%s",
            booking_id,
            reason,
        )
        self.dispatcher.dispatch(
            user_id,
            notices.PAYMENT_FAILED,
            {"booking_id": booking_id, "reason": reason},
            dedupe_key=f"booking:{booking_id}:payment_failed",
        )

    def _release_hold(self, booking_id: str, reason: str, expired: bool) -> bool:
        with self._session() as db:
            bookings = BookingRepository(db)
            current = bookings.get_by_id(booking_id)
            if current.status not in _IN_FLIGHT:
                return False
            payments = PaymentRepository(db)
            payment = payments.get_for_booking(booking_id)
            if expired and payment and payment.gateway_txn_id:
                # Captured but not yet confirmed; reconcile_confirmed() finishes it.
                return False
            booking = self._claim(db, booking_id, current.status, BookingStatus.RELEASED)
            if not booking:
                return False

            ledger = InventoryLedger(db)
            if expired:
                ledger.expire(booking.reservation_id)
            else:
                ledger.release(booking.reservation_id)

            if payment and payment.status in {PaymentStatus.PENDING, PaymentStatus.PROCESSING}:
                payments.update_status(payment, PaymentStatus.CANCELLED)

            self._void_ticket(db, booking.ticket_id)
            booking.failure_reason = reason
            user_id = booking.user_id
            payload = {
                "booking_id": booking.id,
                "tier_name": booking.tier_name,
                "quantity": booking.quantity,
            }

        logger.info("Hold released. booking_id=%s reason=%s", booking_id, reason)
        if expired:
            self.dispatcher.dispatch(
                user_id,
                notices.RESERVATION_EXPIRED,
                payload,
                dedupe_key=f"booking:{booking_id}:expired",
            )
        return True

    def _void_ticket(self, db: Session, ticket_id: str) -> None:
        tickets = TicketRepository(db)
        ticket = tickets.get_by_id(ticket_id, for_update=True)
        if ticket.payment_status == TicketPaymentStatus.PENDING:
            tickets.set_payment_status(ticket, TicketPaymentStatus.FAILED)
        if ticket.status == TicketStatus.ACTIVE:
            tickets.set_status(ticket, TicketStatus.CANCELLED)

    def _refund_late_capture(self, payment_id: str) -> bool:
        with self._session() as db:
            payment = PaymentRepository(db).get_by_id(payment_id)
            txn_id = payment.gateway_txn_id
            amount = payment.amount_minor

        try:
            refund = self.gateway.refund(
                txn_id,
                amount,
                "reservation expired before capture",
                refund_key(payment_id),
            )
        except _GATEWAY_ERRORS:
            logger.exception(
                "Refund of late capture failed; reconciler will retry. payment_id=%s",
                payment_id,
            )
            return False

        with self._session() as db:
            payments = PaymentRepository(db)
            payment = payments.get_by_id(payment_id)
            self._record_refund(payment, refund.refund_id, "reservation expired before capture")
            payments.update_status(payment, PaymentStatus.REFUNDED)
        return True

    def _refund_unrecorded_capture(self, payment_id: str, txn_id: str, amount_minor: int) -> None:
        try:
            refund = self.gateway.refund(
                txn_id,
                amount_minor,
                "payment could not be recorded",
                refund_key(payment_id),
            )
        except _GATEWAY_ERRORS:
            logger.exception(
                "Refund of unrecorded capture failed. payment_id=%s gateway_txn_id=%s",
                payment_id,
                txn_id,
            )
            return
        logger.info(
            "Unrecorded capture refunded. payment_id=%s refund_id=%s",
            payment_id,
            refund.refund_id,
        )

    def _record_refund(self, payment, refund_id: str, reason: str) -> None:
        payment.refund_amount_minor = payment.amount_minor
        payment.refunded_at = utcnow()
        payment.refund_reason = reason[:255]
        payment.gateway_refund_id = refund_id

    # -----------------------------
    # Cancellation (COMMITTED -> CANCELLED)
    # -----------------------------
    def cancel_ticket(
        self,
        principal: Principal,
        ticket_id: str,
        reason: str | None = None,
    ) -> CancellationOutcome:
        reason = reason or "cancelled by ticket holder"

        with self._session() as db:
            ticket = TicketRepository(db).get_by_id(ticket_id)
            if not ticket:
                raise NotFoundError("Ticket", ticket_id)
            if ticket.user_id != principal.id and not principal.is_admin():
                raise NotAuthorizedError("Only the ticket holder can cancel this ticket")
            if ticket.status in {TicketStatus.CANCELLED, TicketStatus.USED}:
                raise InvalidStateTransitionError(
                    from_state=ticket.status.value,
                    to_state=TicketStatus.CANCELLED.value,
                )

            booking_id = ticket.booking_id
            booking_status = BookingRepository(db).get_by_id(booking_id).status

        if booking_status in _IN_FLIGHT:
            if self._release_hold(booking_id, reason, expired=False):
                return CancellationOutcome(ticket_id=ticket_id, booking_status=BookingStatus.RELEASED)
            # The booking flow or the sweeper moved the booking first.
            with self._session() as db:
                booking_status = BookingRepository(db).get_by_id(booking_id).status
            if booking_status == BookingStatus.RELEASED:
                return CancellationOutcome(ticket_id=ticket_id, booking_status=booking_status)

        if booking_status != BookingStatus.COMMITTED:
            raise InvalidStateTransitionError(
                from_state=booking_status.value,
                to_state=BookingStatus.CANCELLED.value,
            )

        with self._session() as db:
            payment = PaymentRepository(db).get_for_booking(booking_id)
            payment_id = payment.id
            txn_id = payment.gateway_txn_id
            amount = payment.amount_minor

        # Same key on every attempt: concurrent or retried cancels refund once.
        refund = self.gateway.refund(txn_id, amount, reason, refund_key(payment_id))

        with self._session() as db:
            bookings = BookingRepository(db)
            booking = self._claim(db, booking_id, BookingStatus.COMMITTED, BookingStatus.CANCELLED)
            if not booking:
                current = bookings.get_by_id(booking_id)
                return CancellationOutcome(
                    ticket_id=ticket_id,
                    booking_status=current.status,
                    refund_id=refund.refund_id,
                )

            InventoryLedger(db).restock(booking.reservation_id)

            payments = PaymentRepository(db)
            payment = payments.get_by_id(payment_id)
            self._record_refund(payment, refund.refund_id, reason)
            payments.update_status(payment, PaymentStatus.REFUNDED)

            tickets = TicketRepository(db)
            ticket = tickets.get_by_id(ticket_id, for_update=True)
            tickets.set_payment_status(ticket, TicketPaymentStatus.REFUNDED)
            tickets.set_status(ticket, TicketStatus.CANCELLED)
            holder = ticket.user_id
            currency = payment.currency

        logger.info(
            "Ticket cancelled and refunded. ticket_id=%s refund_id=%s",
            ticket_id,
            refund.refund_id,
        )
        self.dispatcher.dispatch(
            holder,
            notices.REFUND_PROCESSED,
            {"ticket_id": ticket_id, "amount": str(to_major(amount)), "currency": currency},
            dedupe_key=f"ticket:{ticket_id}:refunded",
        )
        return CancellationOutcome(
            ticket_id=ticket_id,
            booking_status=BookingStatus.CANCELLED,
            refund_id=refund.refund_id,
        )

    # -----------------------------
    # Sweeper / reconciler
    # -----------------------------
    def sweep_expired(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        with self._session() as db:
            booking_ids = [b.id for b in BookingRepository(db).list_expired_holds(now)]

        released = 0
        for booking_id in booking_ids:
            if self._release_hold(booking_id, "hold expired", expired=True):
                released += 1
        if released:
            logger.info("Expired holds swept. count=%s", released)
        return released

    def reconcile_confirmed(self) -> int:
        with self._session() as db:
            captured = [
                (p.booking_id, p.id) for p in PaymentRepository(db).list_unconfirmed_captures()
            ]
        for booking_id, payment_id in captured:
            try:
                with self._session() as db:
                    self._confirm_payment(db, booking_id, payment_id)
            except SQLAlchemyError:
                logger.exception("Could not confirm captured payment. booking_id=%s", booking_id)

        with self._session() as db:
            stuck = [
                _snapshot(b)
                for b in BookingRepository(db).list_by_status(BookingStatus.PAYMENT_CONFIRMED)
            ]

        committed = 0
        for confirmed in stuck:
            outcome = self._commit_with_retry(confirmed)
            if outcome.committed:
                committed += 1
        return committed

    def refund_orphaned_captures(self) -> int:
        with self._session() as db:
            payment_ids = [p.id for p in PaymentRepository(db).list_orphaned_captures()]
        return sum(1 for payment_id in payment_ids if self._refund_late_capture(payment_id))

    def run_maintenance(self, now: datetime | None = None) -> MaintenanceReport:
        return MaintenanceReport(
            expired=self.sweep_expired(now),
            committed=self.reconcile_confirmed(),
            refunded=self.refund_orphaned_captures(),
        )
