import json
import logging
import math
import threading
from datetime import datetime

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response, status
from sqlalchemy.orm import Session, sessionmaker

from eventhub.api.auth import get_current_principal, require_admin
from eventhub.api.schemas.schemas import (
    BookingResponse,
    CheckInRequest,
    EventCreate,
    EventListResponse,
    EventResponse,
    EventUpdate,
    NotificationListResponse,
    NotificationResponse,
    NotificationsReadResponse,
    OutboxNotificationResponse,
    PaymentResponse,
    SweepResponse,
    TicketBookingRequest,
    TicketCancelRequest,
    TicketCancelResponse,
    TicketResponse,
    TicketTierResponse,
    TicketTransferRequest,
    TicketTransferResponse,
    TierAvailabilityResponse,
)
from eventhub.application.booking_manager import BookingManager, BookingOutcome, BookingRequest
from eventhub.application.event_service import EventDraft, EventService, TierDraft
from eventhub.application.ticket_service import TicketService
from eventhub.domain.exceptions import (
    AlreadyCheckedInError,
    BookingValidationError,
    EventHubError,
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
from eventhub.domain.pricing import to_major, to_minor
from eventhub.domain.principal import Principal
from eventhub.domain.state_machine import BookingStatus
from eventhub.infrastructure.db.models import Event, Notification, Payment, Ticket
from eventhub.infrastructure.db.session import SessionLocal
from eventhub.infrastructure.payments.gateway import PaymentGateway, build_gateway
from eventhub.infrastructure.repositories.event_repository import EventFilters
from eventhub.infrastructure.repositories.notification_repository import (
    PENDING,
    NotificationRepository,
)
from eventhub.infrastructure.repositories.payment_repository import PaymentRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_gateway: PaymentGateway | None = None
_gateway_lock = threading.Lock()

_ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (NotAuthorizedError, status.HTTP_403_FORBIDDEN),
    (BookingValidationError, status.HTTP_400_BAD_REQUEST),
    (InsufficientInventoryError, status.HTTP_400_BAD_REQUEST),
    (PaymentDeclinedError, status.HTTP_400_BAD_REQUEST),
    (AlreadyCheckedInError, status.HTTP_400_BAD_REQUEST),
    (IdempotencyConflictError, status.HTTP_409_CONFLICT),
    (InvalidStateTransitionError, status.HTTP_409_CONFLICT),
    (ReservationExpiredError, status.HTTP_409_CONFLICT),
    (PaymentGatewayError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
)

# A replayed booking that already ended badly answers with its original outcome.
_FAILED_REPLAY_STATUS = {
    BookingStatus.RESERVATION_FAILED: status.HTTP_400_BAD_REQUEST,
    BookingStatus.PAYMENT_FAILED: status.HTTP_400_BAD_REQUEST,
    BookingStatus.RELEASED: status.HTTP_409_CONFLICT,
    BookingStatus.CANCELLED: status.HTTP_409_CONFLICT,
}


# -----------------------------
# Dependencies
# -----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    return SessionLocal


def shared_gateway() -> PaymentGateway:
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = build_gateway()
        return _gateway


def get_gateway() -> PaymentGateway:
    try:
        return shared_gateway()
    except PaymentGatewayError as exc:
        logger.error("Payment gateway unavailable: %s", exc)
        raise _http_error(exc) from exc


def get_booking_manager(
    session_factory: sessionmaker = Depends(get_session_factory),
    gateway: PaymentGateway = Depends(get_gateway),
) -> BookingManager:
    return BookingManager(session_factory, gateway)


def get_ticket_service(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> TicketService:
    return TicketService(session_factory)


def get_event_service(
    session_factory: sessionmaker = Depends(get_session_factory),
) -> EventService:
    return EventService(session_factory)


def _http_error(exc: EventHubError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Internal error",
    )


# -----------------------------
# Serialization
# -----------------------------
def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _booking_response(outcome: BookingOutcome) -> BookingResponse:
    return BookingResponse(
        booking_id=outcome.booking_id,
        status="processing" if outcome.processing else outcome.status.value,
        ticket_id=outcome.ticket_id,
        subtotal=to_major(outcome.subtotal_minor),
        fees=to_major(outcome.fee_minor),
        total=to_major(outcome.amount_minor),
        currency=outcome.currency,
        failure_reason=outcome.failure_reason,
    )


def _ticket_response(ticket: Ticket) -> TicketResponse:
    return TicketResponse(
        id=ticket.id,
        event_id=ticket.event_id,
        user_id=ticket.user_id,
        booking_id=ticket.booking_id,
        tier_name=ticket.tier_name,
        quantity=ticket.quantity,
        total_amount=to_major(ticket.total_amount_minor),
        currency=ticket.currency,
        status=ticket.status.value,
        payment_status=ticket.payment_status.value,
        code=ticket.code,
        payment_id=ticket.payment_id,
        special_requests=ticket.special_requests,
        checked_in_at=_iso(ticket.checked_in_at),
        check_in_location=ticket.check_in_location,
        verified_by=ticket.verified_by,
        transfers=[
            TicketTransferResponse(
                from_user_id=item.from_user_id,
                to_user_id=item.to_user_id,
                reason=item.reason,
                transferred_at=item.transferred_at.isoformat(),
            )
            for item in ticket.transfers
        ],
        created_at=ticket.created_at.isoformat(),
    )


def _event_response(event: Event) -> EventResponse:
    return EventResponse(
        id=event.id,
        organizer_id=event.organizer_id,
        title=event.title,
        description=event.description,
        category=event.category,
        venue_name=event.venue_name,
        venue_address=event.venue_address,
        venue_city=event.venue_city,
        venue_country=event.venue_country,
        venue_capacity=event.venue_capacity,
        starts_at=event.starts_at.isoformat(),
        ends_at=event.ends_at.isoformat(),
        timezone=event.timezone,
        currency=event.currency,
        status=event.status.value,
        tiers=[
            TicketTierResponse(
                name=tier.name,
                price=to_major(tier.price_minor),
                quantity=tier.quantity,
                available=tier.quantity - tier.sold - tier.held,
            )
            for tier in event.tiers
        ],
    )


def _payment_response(payment: Payment) -> PaymentResponse:
    refund_amount = payment.refund_amount_minor
    return PaymentResponse(
        id=payment.id,
        ticket_id=payment.ticket_id,
        booking_id=payment.booking_id,
        amount=to_major(payment.amount_minor),
        currency=payment.currency,
        status=payment.status.value,
        gateway_txn_id=payment.gateway_txn_id,
        failure_reason=payment.failure_reason,
        refund_amount=to_major(refund_amount) if refund_amount is not None else None,
        refunded_at=_iso(payment.refunded_at),
        created_at=payment.created_at.isoformat(),
    )


def _notification_response(item: Notification) -> NotificationResponse:
    return NotificationResponse(
        id=item.id,
        type=item.type,
        title=item.title,
        message=item.message,
        channels=item.channels.split(","),
        read=item.read_at is not None,
        created_at=item.created_at.isoformat(),
    )


def _outbox_response(item: Notification) -> OutboxNotificationResponse:
    return OutboxNotificationResponse(
        id=item.id,
        user_id=item.user_id,
        type=item.type,
        payload=json.loads(item.payload),
        channels=item.channels.split(","),
        status=item.status,
        attempts=item.attempts,
        created_at=item.created_at.isoformat(),
    )


@router.get("/health")
def health():
    return {"message": "EventHub is running"}


# -----------------------------
# Tickets
# -----------------------------
@router.post(
    "/tickets/book",
    response_model=BookingResponse,
    status_code=status.HTTP_201_CREATED,
)
def book_tickets(
    request: TicketBookingRequest,
    response: Response,
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
    principal: Principal = Depends(get_current_principal),
    manager: BookingManager = Depends(get_booking_manager),
):
    try:
        outcome = manager.book(
            principal,
            BookingRequest(
                event_id=request.event_id,
                tier_name=request.tier_name,
                quantity=request.quantity,
                payment_method_ref=request.payment_method_ref,
                idempotency_key=idempotency_key,
                promo_code=request.promo_code,
                special_requests=request.special_requests,
            ),
        )
    except EventHubError as exc:
        raise _http_error(exc) from exc

    if outcome.status in _FAILED_REPLAY_STATUS:
        raise HTTPException(
            status_code=_FAILED_REPLAY_STATUS[outcome.status],
            detail=outcome.failure_reason or f"Booking {outcome.status.value.lower()}",
        )
    if outcome.processing:
        response.status_code = status.HTTP_202_ACCEPTED
    return _booking_response(outcome)


@router.get("/tickets/my-tickets", response_model=list[TicketResponse])
def my_tickets(
    principal: Principal = Depends(get_current_principal),
    service: TicketService = Depends(get_ticket_service),
):
    return [_ticket_response(ticket) for ticket in service.list_for_user(principal.id)]


@router.get("/tickets/{ticket_id}", response_model=TicketResponse)
def get_ticket(
    ticket_id: str,
    principal: Principal = Depends(get_current_principal),
    service: TicketService = Depends(get_ticket_service),
):
    try:
        ticket = service.get(ticket_id, principal)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return _ticket_response(ticket)


@router.put("/tickets/{ticket_id}/cancel", response_model=TicketCancelResponse)
def cancel_ticket(
    ticket_id: str,
    request: TicketCancelRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    manager: BookingManager = Depends(get_booking_manager),
):
    reason = request.reason if request else None
    try:
        outcome = manager.cancel_ticket(principal, ticket_id, reason)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return TicketCancelResponse(
        ticket_id=outcome.ticket_id,
        booking_status=outcome.booking_status.value,
        refund_id=outcome.refund_id,
    )


@router.post("/tickets/{ticket_id}/transfer", response_model=TicketResponse)
def transfer_ticket(
    ticket_id: str,
    request: TicketTransferRequest,
    principal: Principal = Depends(get_current_principal),
    service: TicketService = Depends(get_ticket_service),
):
    try:
        ticket = service.transfer(ticket_id, principal, request.to_user_id, request.reason)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return _ticket_response(ticket)


@router.post("/tickets/{ticket_id}/checkin", response_model=TicketResponse)
def check_in_ticket(
    ticket_id: str,
    request: CheckInRequest | None = None,
    principal: Principal = Depends(get_current_principal),
    service: TicketService = Depends(get_ticket_service),
):
    location = request.location if request else None
    try:
        ticket = service.check_in(ticket_id, principal, location)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return _ticket_response(ticket)


# -----------------------------
# Events
# -----------------------------
@router.post(
    "/events",
    response_model=EventResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_event(
    request: EventCreate,
    principal: Principal = Depends(get_current_principal),
    service: EventService = Depends(get_event_service),
):
    draft = EventDraft(
        title=request.title,
        description=request.description,
        category=request.category,
        venue_name=request.venue_name,
        venue_address=request.venue_address,
        venue_city=request.venue_city,
        venue_country=request.venue_country,
        venue_capacity=request.venue_capacity,
        starts_at=request.starts_at,
        ends_at=request.ends_at,
        timezone=request.timezone,
        currency=request.currency,
        tiers=[
            TierDraft(
                name=tier.name,
                price_minor=to_minor(tier.price),
                quantity=tier.quantity,
            )
            for tier in request.tiers
        ],
    )
    try:
        event = service.create_event(principal, draft)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return _event_response(event)


@router.get("/events", response_model=EventListResponse)
def list_events(
    category: str | None = None,
    city: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    search: str | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    service: EventService = Depends(get_event_service),
):
    events, total = service.list_events(
        EventFilters(
            category=category,
            city=city,
            start_from=start_date,
            start_to=end_date,
            search=search,
            page=page,
            limit=limit,
        )
    )
    return EventListResponse(
        events=[_event_response(event) for event in events],
        page=page,
        limit=limit,
        total=total,
        pages=math.ceil(total / limit) if total else 0,
    )


@router.get("/events/{event_id}", response_model=EventResponse)
def get_event(
    event_id: str,
    service: EventService = Depends(get_event_service),
):
    try:
        event = service.get_event(event_id)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return _event_response(event)


@router.put("/events/{event_id}", response_model=EventResponse)
def update_event(
    event_id: str,
    request: EventUpdate,
    principal: Principal = Depends(get_current_principal),
    service: EventService = Depends(get_event_service),
):
    try:
        event = service.update_event(
            event_id,
            principal,
            request.model_dump(exclude_unset=True),
        )
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return _event_response(event)


@router.get("/events/{event_id}/availability", response_model=list[TierAvailabilityResponse])
def event_availability(
    event_id: str,
    service: EventService = Depends(get_event_service),
):
    try:
        tiers = service.availability(event_id)
    except EventHubError as exc:
        raise _http_error(exc) from exc
    return [
        TierAvailabilityResponse(
            tier_name=tier.tier_name,
            price=to_major(tier.price_minor),
            quantity=tier.quantity,
            sold=tier.sold,
            held=tier.held,
            available=tier.available,
        )
        for tier in tiers
    ]


# -----------------------------
# Payments
# -----------------------------
@router.get("/payments/history", response_model=list[PaymentResponse])
def payment_history(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    payments = PaymentRepository(db).list_for_user(principal.id)
    return [_payment_response(payment) for payment in payments]


# -----------------------------
# Notifications
# -----------------------------
@router.get("/notifications", response_model=NotificationListResponse)
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    repo = NotificationRepository(db)
    items = repo.list_for_user(principal.id, unread_only=unread_only, limit=limit, offset=offset)
    return NotificationListResponse(
        notifications=[_notification_response(item) for item in items],
        unread_count=repo.unread_count(principal.id),
    )


def _own_notification(repo: NotificationRepository, notification_id: str, principal: Principal) -> Notification:
    item = repo.get_by_id(notification_id)
    if not item or item.user_id != principal.id or item.dismissed_at is not None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        )
    return item


@router.put("/notifications/read-all", response_model=NotificationsReadResponse)
def mark_all_notifications_read(
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return NotificationsReadResponse(updated=NotificationRepository(db).mark_all_read(principal.id))


@router.put("/notifications/{notification_id}/read", response_model=NotificationResponse)
def mark_notification_read(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    repo = NotificationRepository(db)
    item = _own_notification(repo, notification_id, principal)
    repo.mark_read(item)
    return _notification_response(item)


@router.delete("/notifications/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_notification(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    repo = NotificationRepository(db)
    repo.dismiss(_own_notification(repo, notification_id, principal))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/outbox/notifications", response_model=list[OutboxNotificationResponse])
def list_outbox_notifications(
    status_filter: str = PENDING,
    limit: int = 50,
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    items = NotificationRepository(db).list_outbox(status_filter, safe_limit)
    return [_outbox_response(item) for item in items]


@router.post(
    "/outbox/notifications/{notification_id}/mark-published",
    response_model=OutboxNotificationResponse,
)
def mark_outbox_notification_published(
    notification_id: str,
    _: Principal = Depends(require_admin),
    db: Session = Depends(get_db),
):
    repo = NotificationRepository(db)
    item = repo.get_by_id(notification_id)
    if not item:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Notification not found",
        )
    repo.mark_published(item)
    return _outbox_response(item)


# -----------------------------
# Admin
# -----------------------------
@router.post("/admin/reservations/sweep", response_model=SweepResponse)
def sweep_reservations(
    _: Principal = Depends(require_admin),
    manager: BookingManager = Depends(get_booking_manager),
):
    report = manager.run_maintenance()
    logger.info(
        "Manual sweep finished. expired=%s committed=%s refunded=%s",
        report.expired,
        report.committed,
        report.refunded,
    )
    return SweepResponse(
        expired=report.expired,
        committed=report.committed,
        refunded=report.refunded,
    )
