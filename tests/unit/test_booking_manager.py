from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from eventhub.application.booking_manager import BookingManager, BookingRequest
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
from eventhub.domain.state_machine import (
    BookingStatus,
    EventStatus,
    PaymentStatus,
    ReservationStatus,
    TicketPaymentStatus,
    TicketStatus,
)
from eventhub.infrastructure.db.models import Booking, Notification, Payment, Reservation, Ticket, utcnow
from eventhub.infrastructure.db.session import get_db_session
from eventhub.infrastructure.payments.gateway import refund_key
from eventhub.infrastructure.payments.sandbox_gateway import (
    DECLINED_METHOD,
    UNAVAILABLE_METHOD,
    SandboxPaymentGateway,
)
from eventhub.infrastructure.repositories.inventory_ledger import InventoryLedger
from eventhub.infrastructure.repositories.payment_repository import PaymentRepository

TIER = "General Admission"


class InterleavingGateway(SandboxPaymentGateway):
    """Runs a one-shot hook just before authorize or confirm is served."""

    def __init__(self):
        super().__init__()
        self.before_authorize = None
        self.before_confirm = None

    def authorize(self, *args, **kwargs):
        hook, self.before_authorize = self.before_authorize, None
        if hook:
            hook()
        return super().authorize(*args, **kwargs)

    def confirm(self, *args, **kwargs):
        hook, self.before_confirm = self.before_confirm, None
        if hook:
            hook()
        return super().confirm(*args, **kwargs)


def _request(event_id, quantity=2, key="key-1", method="pm_card_visa", **fields):
    return BookingRequest(
        event_id=event_id,
        tier_name=fields.pop("tier_name", TIER),
        quantity=quantity,
        payment_method_ref=method,
        idempotency_key=key,
        **fields,
    )


def _load(session_factory, model, row_id):
    with get_db_session(session_factory) as db:
        return db.get(model, row_id)


def _tier(session_factory, event_id):
    with get_db_session(session_factory) as db:
        return next(t for t in InventoryLedger(db).availability(event_id) if t.tier_name == TIER)


def _count(session_factory, model, *criteria):
    with get_db_session(session_factory) as db:
        return db.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


def _notification_types(session_factory, user_id):
    with get_db_session(session_factory) as db:
        rows = db.execute(select(Notification.type).where(Notification.user_id == user_id))
        return set(rows.scalars().all())


def _payment_for(session_factory, booking_id):
    with get_db_session(session_factory) as db:
        return db.execute(select(Payment).where(Payment.booking_id == booking_id)).scalar_one()


@pytest.fixture
def interleaving_gateway():
    return InterleavingGateway()


@pytest.fixture
def interleaving_manager(session_factory, interleaving_gateway, dispatcher):
    return BookingManager(
        session_factory,
        interleaving_gateway,
        dispatcher,
        hold_seconds=600,
        commit_retry_delay=0,
        sleep=lambda seconds: None,
    )


# ---------------------
# HAPPY PATH
# ---------------------

def test_booking_commits_and_charges_subtotal_plus_fee(manager, session_factory, gateway, make_event, attendee):
    event_id = make_event({TIER: (5000, 10)})

    outcome = manager.book(attendee, _request(event_id))

    assert outcome.status == BookingStatus.COMMITTED
    assert (outcome.subtotal_minor, outcome.fee_minor, outcome.amount_minor) == (10000, 320, 10320)

    tier = _tier(session_factory, event_id)
    assert (tier.sold, tier.held, tier.available) == (2, 0, 8)

    ticket = _load(session_factory, Ticket, outcome.ticket_id)
    payment = _payment_for(session_factory, outcome.booking_id)
    assert ticket.status == TicketStatus.ACTIVE
    assert ticket.payment_status == TicketPaymentStatus.COMPLETED
    assert ticket.payment_id == payment.id
    assert ticket.code.startswith("TKT-")
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.amount_minor == 10320
    assert payment.gateway_txn_id
    assert gateway.captured_count() == 1

    reservation = _load(session_factory, Reservation, outcome.reservation_id)
    assert reservation.status == ReservationStatus.COMMITTED
    assert _notification_types(session_factory, attendee.id) == {
        "booking_confirmation",
        "payment_success",
    }


def test_generated_key_when_none_supplied(manager, session_factory, make_event, attendee):
    event_id = make_event()

    first = manager.book(attendee, _request(event_id, key=None))
    second = manager.book(attendee, _request(event_id, key=None))

    assert first.booking_id != second.booking_id
    assert _tier(session_factory, event_id).sold == 4


# ---------------------
# IDEMPOTENCY
# ---------------------

def test_replay_returns_original_outcome_without_second_charge(manager, session_factory, gateway, make_event, attendee):
    event_id = make_event({TIER: (5000, 10)})

    first = manager.book(attendee, _request(event_id))
    replay = manager.book(attendee, _request(event_id))

    assert replay.replayed
    assert replay.booking_id == first.booking_id
    assert replay.status == BookingStatus.COMMITTED
    assert _count(session_factory, Payment) == 1
    assert _count(session_factory, Booking) == 1
    assert _tier(session_factory, event_id).sold == 2
    assert [name for name, _ in gateway.calls].count("authorize") == 1


def test_key_reused_with_different_parameters_conflicts(manager, make_event, attendee):
    event_id = make_event()
    manager.book(attendee, _request(event_id, quantity=2))

    with pytest.raises(IdempotencyConflictError):
        manager.book(attendee, _request(event_id, quantity=3))


def test_key_reused_by_another_user_conflicts(manager, make_event, attendee, other_attendee):
    event_id = make_event()
    manager.book(attendee, _request(event_id))

    with pytest.raises(IdempotencyConflictError):
        manager.book(other_attendee, _request(event_id))


# ---------------------
# VALIDATION
# ---------------------

@pytest.mark.parametrize(
    "overrides",
    [
        {"quantity": 0},
        {"quantity": 11},
        {"promo_code": "SPRING10"},
        {"tier_name": "Balcony"},
        {"method": " "},
    ],
)
def test_invalid_requests_leave_no_trace(manager, session_factory, make_event, attendee, overrides):
    event_id = make_event()

    with pytest.raises(BookingValidationError):
        manager.book(attendee, _request(event_id, **overrides))

    assert _count(session_factory, Booking) == 0
    assert _tier(session_factory, event_id).held == 0


def test_unpublished_event_cannot_be_booked(manager, make_event, attendee):
    event_id = make_event(status=EventStatus.DRAFT)

    with pytest.raises(BookingValidationError):
        manager.book(attendee, _request(event_id))


def test_unknown_event(manager, attendee):
    with pytest.raises(NotFoundError):
        manager.book(attendee, _request("missing-event"))


# ---------------------
# INVENTORY
# ---------------------

def test_sold_out_records_reservation_failure(manager, session_factory, make_event, attendee):
    event_id = make_event({TIER: (5000, 1)})

    with pytest.raises(InsufficientInventoryError):
        manager.book(attendee, _request(event_id, quantity=2))

    replay = manager.book(attendee, _request(event_id, quantity=2))
    assert replay.status == BookingStatus.RESERVATION_FAILED
    assert _count(session_factory, Payment) == 0
    assert _count(session_factory, Ticket) == 0


def test_last_ticket_race_admits_exactly_one(
    interleaving_manager, interleaving_gateway, session_factory, make_event, attendee, other_attendee
):
    event_id = make_event({TIER: (5000, 1)})
    rejected = []

    def second_buyer():
        try:
            interleaving_manager.book(other_attendee, _request(event_id, quantity=1, key="key-2"))
        except InsufficientInventoryError as exc:
            rejected.append(exc)

    interleaving_gateway.before_authorize = second_buyer
    outcome = interleaving_manager.book(attendee, _request(event_id, quantity=1))

    assert outcome.status == BookingStatus.COMMITTED
    assert len(rejected) == 1
    assert _count(session_factory, Booking, Booking.status == BookingStatus.COMMITTED) == 1
    tier = _tier(session_factory, event_id)
    assert (tier.sold, tier.held, tier.available) == (1, 0, 0)


# ---------------------
# PAYMENT FAILURE
# ---------------------

@pytest.mark.parametrize(
    "method, error",
    [(DECLINED_METHOD, PaymentDeclinedError), (UNAVAILABLE_METHOD, PaymentGatewayError)],
)
def test_failed_payment_restores_hold(manager, session_factory, make_event, attendee, method, error):
    event_id = make_event({TIER: (5000, 10)})
    manager.book(attendee, _request(event_id, quantity=1, key="warmup"))
    before = _tier(session_factory, event_id)

    with pytest.raises(error):
        manager.book(attendee, _request(event_id, method=method))

    after = _tier(session_factory, event_id)
    assert (after.sold, after.held) == (before.sold, before.held)

    failed = manager.book(attendee, _request(event_id, method=method))
    assert failed.replayed
    assert failed.status == BookingStatus.RELEASED

    ticket = _load(session_factory, Ticket, failed.ticket_id)
    payment = _payment_for(session_factory, failed.booking_id)
    assert ticket.status == TicketStatus.CANCELLED
    assert ticket.payment_status == TicketPaymentStatus.FAILED
    assert payment.status == PaymentStatus.FAILED
    assert "payment_failed" in _notification_types(session_factory, attendee.id)


# ---------------------
# COMMIT AFTER CAPTURE
# ---------------------

def _flaky_commit(monkeypatch, failures):
    original = InventoryLedger.commit
    calls = {"count": 0}

    def flaky(self, reservation_id):
        calls["count"] += 1
        if failures is None or calls["count"] <= failures:
            raise OperationalError("UPDATE reservations", {}, Exception("database is locked"))
        return original(self, reservation_id)

    monkeypatch.setattr(InventoryLedger, "commit", flaky)
    return calls


def test_transient_commit_failure_is_retried(manager, session_factory, make_event, attendee, monkeypatch):
    event_id = make_event()
    calls = _flaky_commit(monkeypatch, failures=1)

    outcome = manager.book(attendee, _request(event_id))

    assert calls["count"] == 2
    assert outcome.status == BookingStatus.COMMITTED
    assert _tier(session_factory, event_id).sold == 2


def test_exhausted_commit_leaves_booking_processing(manager, session_factory, gateway, make_event, attendee, monkeypatch):
    event_id = make_event()
    calls = _flaky_commit(monkeypatch, failures=None)

    outcome = manager.book(attendee, _request(event_id))

    assert calls["count"] == manager.commit_max_retries
    assert outcome.status == BookingStatus.PAYMENT_CONFIRMED
    assert outcome.processing
    assert gateway.captured_count() == 1
    # Seats stay held for the paid booking; the sweeper never expires it.
    assert manager.sweep_expired(utcnow() + timedelta(hours=1)) == 0
    assert _tier(session_factory, event_id).held == 2

    monkeypatch.undo()
    assert manager.reconcile_confirmed() == 1
    replay = manager.book(attendee, _request(event_id))
    assert replay.status == BookingStatus.COMMITTED
    assert _tier(session_factory, event_id).sold == 2


def _flaky_payment_confirmation(monkeypatch, failures):
    original = PaymentRepository.update_status
    calls = {"count": 0}

    def flaky(self, payment, new_status):
        if new_status == PaymentStatus.COMPLETED:
            calls["count"] += 1
            if failures is None or calls["count"] <= failures:
                raise OperationalError("UPDATE payments", {}, Exception("database is locked"))
        return original(self, payment, new_status)

    monkeypatch.setattr(PaymentRepository, "update_status", flaky)
    return calls


def test_transient_failure_recording_payment_is_retried(manager, session_factory, gateway, make_event, attendee, monkeypatch):
    event_id = make_event()
    calls = _flaky_payment_confirmation(monkeypatch, failures=1)

    outcome = manager.book(attendee, _request(event_id))

    assert calls["count"] == 2
    assert outcome.status == BookingStatus.COMMITTED
    assert gateway.captured_count() == 1
    assert _payment_for(session_factory, outcome.booking_id).status == PaymentStatus.COMPLETED


def test_captured_payment_is_never_expired(manager, session_factory, gateway, make_event, attendee, monkeypatch):
    event_id = make_event()
    _flaky_payment_confirmation(monkeypatch, failures=None)

    outcome = manager.book(attendee, _request(event_id))

    assert outcome.processing
    payment = _payment_for(session_factory, outcome.booking_id)
    assert payment.gateway_txn_id
    assert payment.status == PaymentStatus.PROCESSING

    monkeypatch.undo()
    report = manager.run_maintenance(utcnow() + timedelta(seconds=601))

    assert (report.expired, report.committed, report.refunded) == (0, 1, 0)
    assert _load(session_factory, Booking, outcome.booking_id).status == BookingStatus.COMMITTED
    ticket = _load(session_factory, Ticket, outcome.ticket_id)
    assert (ticket.status, ticket.payment_status) == (TicketStatus.ACTIVE, TicketPaymentStatus.COMPLETED)
    assert _payment_for(session_factory, outcome.booking_id).status == PaymentStatus.COMPLETED
    assert gateway.refund_count(payment.gateway_txn_id) == 0


def test_unrecordable_capture_is_refunded(manager, session_factory, gateway, make_event, attendee, monkeypatch):
    event_id = make_event()

    def broken(self, db, payment_id, txn_id):
        raise OperationalError("UPDATE payments", {}, Exception("disk I/O error"))

    monkeypatch.setattr(BookingManager, "_store_capture", broken)

    with pytest.raises(PersistenceError):
        manager.book(attendee, _request(event_id))

    payment = _payment_for(session_factory, _only_booking_id(session_factory))
    assert gateway.captured_count() == 1
    assert ("refund", refund_key(payment.id)) in gateway.calls


def _only_booking_id(session_factory):
    with get_db_session(session_factory) as db:
        return db.execute(select(Booking.id)).scalar_one()


# ---------------------
# EXPIRY SWEEP
# ---------------------

def test_sweep_releases_abandoned_holds(manager, session_factory, make_event, attendee):
    event_id = make_event({TIER: (5000, 2)})
    booking_id = manager._reserve(attendee, _request(event_id), "abandoned")

    assert manager.sweep_expired(utcnow()) == 0
    assert manager.sweep_expired(utcnow() + timedelta(seconds=601)) == 1
    assert manager.sweep_expired(utcnow() + timedelta(seconds=601)) == 0

    booking = _load(session_factory, Booking, booking_id)
    assert booking.status == BookingStatus.RELEASED
    assert _load(session_factory, Reservation, booking.reservation_id).status == ReservationStatus.EXPIRED
    assert _load(session_factory, Ticket, booking.ticket_id).status == TicketStatus.CANCELLED
    assert _tier(session_factory, event_id).available == 2
    assert "reservation_expired" in _notification_types(session_factory, attendee.id)


def test_hold_swept_during_authorization_is_never_captured(
    interleaving_manager, interleaving_gateway, session_factory, make_event, attendee
):
    event_id = make_event()
    interleaving_gateway.before_authorize = lambda: interleaving_manager.sweep_expired(
        utcnow() + timedelta(seconds=601)
    )

    with pytest.raises(ReservationExpiredError):
        interleaving_manager.book(attendee, _request(event_id))

    assert interleaving_gateway.captured_count() == 0
    booking = interleaving_manager.book(attendee, _request(event_id))
    assert booking.status == BookingStatus.RELEASED
    assert _payment_for(session_factory, booking.booking_id).status == PaymentStatus.CANCELLED


def test_capture_after_sweep_is_refunded(
    interleaving_manager, interleaving_gateway, session_factory, make_event, attendee
):
    event_id = make_event()
    interleaving_gateway.before_confirm = lambda: interleaving_manager.sweep_expired(
        utcnow() + timedelta(seconds=601)
    )

    with pytest.raises(ReservationExpiredError):
        interleaving_manager.book(attendee, _request(event_id))

    booking = interleaving_manager.book(attendee, _request(event_id))
    payment = _payment_for(session_factory, booking.booking_id)
    assert booking.status == BookingStatus.RELEASED
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refund_amount_minor == payment.amount_minor
    assert interleaving_gateway.refund_count(payment.gateway_txn_id) == 1
    assert ("refund", refund_key(payment.id)) in interleaving_gateway.calls
    tier = _tier(session_factory, event_id)
    assert (tier.sold, tier.held) == (0, 0)


# ---------------------
# CANCELLATION
# ---------------------

def test_cancel_paid_ticket_refunds_once_and_restocks(manager, session_factory, gateway, make_event, attendee):
    event_id = make_event({TIER: (5000, 2)})
    outcome = manager.book(attendee, _request(event_id))
    assert _tier(session_factory, event_id).available == 0

    cancelled = manager.cancel_ticket(attendee, outcome.ticket_id, "cannot attend")

    assert cancelled.booking_status == BookingStatus.CANCELLED
    assert cancelled.refund_id

    payment = _payment_for(session_factory, outcome.booking_id)
    ticket = _load(session_factory, Ticket, outcome.ticket_id)
    assert payment.status == PaymentStatus.REFUNDED
    assert payment.refund_amount_minor == 10320
    assert payment.refund_reason == "cannot attend"
    assert payment.gateway_refund_id == cancelled.refund_id
    assert ticket.status == TicketStatus.CANCELLED
    assert ticket.payment_status == TicketPaymentStatus.REFUNDED
    assert _load(session_factory, Booking, outcome.booking_id).status == BookingStatus.CANCELLED
    assert _tier(session_factory, event_id).available == 2
    assert "refund_processed" in _notification_types(session_factory, attendee.id)

    with pytest.raises(InvalidStateTransitionError):
        manager.cancel_ticket(attendee, outcome.ticket_id)
    assert gateway.refund_count(payment.gateway_txn_id) == 1


def test_cancel_in_flight_hold_releases_it(manager, session_factory, make_event, attendee):
    event_id = make_event({TIER: (5000, 2)})
    booking_id = manager._reserve(attendee, _request(event_id), "in-flight")
    ticket_id = _load(session_factory, Booking, booking_id).ticket_id

    cancelled = manager.cancel_ticket(attendee, ticket_id)

    assert cancelled.booking_status == BookingStatus.RELEASED
    assert cancelled.refund_id is None
    assert _tier(session_factory, event_id).available == 2


def test_cancel_racing_a_completing_booking_refunds_it(manager, session_factory, gateway, make_event, attendee, monkeypatch):
    event_id = make_event({TIER: (5000, 2)})
    booking_id = manager._reserve(attendee, _request(event_id), "racing")
    ticket_id = _load(session_factory, Booking, booking_id).ticket_id
    release_hold = manager._release_hold

    def booking_flow_wins(booking_id, reason, expired):
        manager._pay_and_commit(booking_id)
        return release_hold(booking_id, reason, expired)

    monkeypatch.setattr(manager, "_release_hold", booking_flow_wins)

    cancelled = manager.cancel_ticket(attendee, ticket_id)

    assert cancelled.booking_status == BookingStatus.CANCELLED
    assert cancelled.refund_id
    ticket = _load(session_factory, Ticket, ticket_id)
    assert (ticket.status, ticket.payment_status) == (TicketStatus.CANCELLED, TicketPaymentStatus.REFUNDED)
    payment = _payment_for(session_factory, booking_id)
    assert payment.status == PaymentStatus.REFUNDED
    assert gateway.refund_count(payment.gateway_txn_id) == 1
    assert _tier(session_factory, event_id).available == 2


def test_cancel_racing_the_sweeper_reports_release(manager, session_factory, make_event, attendee, monkeypatch):
    event_id = make_event({TIER: (5000, 2)})
    booking_id = manager._reserve(attendee, _request(event_id), "swept")
    ticket_id = _load(session_factory, Booking, booking_id).ticket_id
    release_hold = manager._release_hold

    def sweeper_wins(booking_id, reason, expired):
        release_hold(booking_id, "hold expired", expired=True)
        return release_hold(booking_id, reason, expired)

    monkeypatch.setattr(manager, "_release_hold", sweeper_wins)

    cancelled = manager.cancel_ticket(attendee, ticket_id)

    assert cancelled.booking_status == BookingStatus.RELEASED
    assert cancelled.refund_id is None


def test_only_holder_or_admin_may_cancel(manager, make_event, attendee, other_attendee, admin):
    event_id = make_event()
    outcome = manager.book(attendee, _request(event_id))

    with pytest.raises(NotAuthorizedError):
        manager.cancel_ticket(other_attendee, outcome.ticket_id)

    assert manager.cancel_ticket(admin, outcome.ticket_id).booking_status == BookingStatus.CANCELLED
