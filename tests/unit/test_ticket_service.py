import pytest

from eventhub.application.booking_manager import BookingRequest
from eventhub.domain.exceptions import (
    AlreadyCheckedInError,
    BookingValidationError,
    InvalidStateTransitionError,
    NotAuthorizedError,
    NotFoundError,
)
from eventhub.domain.principal import ORGANIZER, Principal
from eventhub.domain.state_machine import TicketPaymentStatus, TicketStatus


@pytest.fixture
def paid_ticket_id(manager, make_event, attendee):
    event_id = make_event()
    outcome = manager.book(
        attendee,
        BookingRequest(
            event_id=event_id,
            tier_name="General Admission",
            quantity=1,
            payment_method_ref="pm_card_visa",
            idempotency_key="ticket-fixture",
        ),
    )
    return outcome.ticket_id


def test_check_in_marks_ticket_used(ticket_service, paid_ticket_id, organizer):
    ticket = ticket_service.check_in(paid_ticket_id, organizer, "Gate A")

    assert ticket.status == TicketStatus.USED
    assert ticket.checked_in_at is not None
    assert ticket.verified_by == organizer.id
    assert ticket.check_in_location == "Gate A"


def test_second_check_in_is_rejected_and_details_kept(ticket_service, paid_ticket_id, organizer, admin):
    first = ticket_service.check_in(paid_ticket_id, organizer, "Gate A")

    with pytest.raises(AlreadyCheckedInError):
        ticket_service.check_in(paid_ticket_id, admin, "Gate B")

    stored = ticket_service.get(paid_ticket_id, organizer)
    assert stored.verified_by == organizer.id
    assert stored.check_in_location == "Gate A"
    assert stored.checked_in_at == first.checked_in_at


def test_only_the_events_organizer_checks_in(ticket_service, paid_ticket_id, attendee):
    stranger = Principal(id="org-other", role=ORGANIZER)

    with pytest.raises(NotAuthorizedError):
        ticket_service.check_in(paid_ticket_id, stranger)
    with pytest.raises(NotAuthorizedError):
        ticket_service.check_in(paid_ticket_id, attendee)


def test_cancelled_ticket_cannot_be_checked_in(ticket_service, manager, paid_ticket_id, attendee, organizer):
    manager.cancel_ticket(attendee, paid_ticket_id)

    with pytest.raises(InvalidStateTransitionError):
        ticket_service.check_in(paid_ticket_id, organizer)


def test_used_ticket_cannot_be_cancelled(ticket_service, manager, paid_ticket_id, attendee, organizer):
    ticket_service.check_in(paid_ticket_id, organizer)

    with pytest.raises(InvalidStateTransitionError):
        manager.cancel_ticket(attendee, paid_ticket_id)


def test_transfer_moves_ownership_and_keeps_ticket_usable(
    ticket_service, paid_ticket_id, attendee, other_attendee, organizer
):
    ticket = ticket_service.transfer(paid_ticket_id, attendee, other_attendee.id, "gift")

    assert ticket.user_id == other_attendee.id
    assert ticket.status == TicketStatus.TRANSFERRED
    assert ticket.payment_status == TicketPaymentStatus.COMPLETED
    assert [(t.from_user_id, t.to_user_id) for t in ticket.transfers] == [
        (attendee.id, other_attendee.id)
    ]
    assert [t.id for t in ticket_service.list_for_user(other_attendee.id)] == [paid_ticket_id]
    assert ticket_service.list_for_user(attendee.id) == []

    with pytest.raises(NotAuthorizedError):
        ticket_service.transfer(paid_ticket_id, attendee, "user-3")

    assert ticket_service.check_in(paid_ticket_id, organizer).status == TicketStatus.USED


def test_transfer_to_self_is_rejected(ticket_service, paid_ticket_id, attendee):
    with pytest.raises(BookingValidationError):
        ticket_service.transfer(paid_ticket_id, attendee, attendee.id)


def test_ticket_visibility(ticket_service, paid_ticket_id, attendee, other_attendee, organizer, admin):
    assert ticket_service.get(paid_ticket_id, attendee).id == paid_ticket_id
    assert ticket_service.get(paid_ticket_id, organizer).id == paid_ticket_id
    assert ticket_service.get(paid_ticket_id, admin).id == paid_ticket_id

    with pytest.raises(NotAuthorizedError):
        ticket_service.get(paid_ticket_id, other_attendee)
    with pytest.raises(NotFoundError):
        ticket_service.get("missing", attendee)
