import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy.orm import sessionmaker

from eventhub.domain.exceptions import (
    BookingValidationError,
    NotAuthorizedError,
    NotFoundError,
)
from eventhub.domain.principal import Principal
from eventhub.domain.state_machine import EventStateMachine, EventStatus
from eventhub.infrastructure.db.models import Event, TicketTier
from eventhub.infrastructure.db.session import get_db_session
from eventhub.infrastructure.repositories.event_repository import EventFilters, EventRepository
from eventhub.infrastructure.repositories.inventory_ledger import InventoryLedger, TierAvailability

logger = logging.getLogger(__name__)

# Descriptive fields an organizer may change after creation.
_EDITABLE = (
    "title",
    "description",
    "category",
    "venue_name",
    "venue_address",
    "venue_city",
    "venue_country",
    "starts_at",
    "ends_at",
    "timezone",
    "status",
)


@dataclass(frozen=True)
class TierDraft:
    name: str
    price_minor: int
    quantity: int


@dataclass(frozen=True)
class EventDraft:
    title: str
    category: str
    venue_name: str
    venue_address: str
    venue_city: str
    venue_country: str
    venue_capacity: int
    starts_at: datetime
    ends_at: datetime
    tiers: list[TierDraft] = field(default_factory=list)
    description: str = ""
    timezone: str = "UTC"
    currency: str = "USD"


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; stored values are always UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _validate_tiers(tiers: list[TierDraft], capacity: int) -> None:
    if not tiers:
        raise BookingValidationError("At least one ticket tier is required")
    names = [tier.name.strip() for tier in tiers]
    if any(not name for name in names):
        raise BookingValidationError("Ticket tier name is required")
    if len(set(names)) != len(names):
        raise BookingValidationError("Ticket tier names must be unique")
    if any(tier.price_minor < 0 or tier.quantity < 0 for tier in tiers):
        raise BookingValidationError("Tier price and quantity cannot be negative")
    if sum(tier.quantity for tier in tiers) > capacity:
        raise BookingValidationError("Total tier quantity exceeds venue capacity")


class EventService:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create_event(self, organizer: Principal, draft: EventDraft) -> Event:
        if not organizer.is_organizer():
            raise NotAuthorizedError("Only organizers can create events")
        if draft.venue_capacity <= 0:
            raise BookingValidationError("Venue capacity must be positive")
        if _as_utc(draft.ends_at) < _as_utc(draft.starts_at):
            raise BookingValidationError("Event cannot end before it starts")
        _validate_tiers(draft.tiers, draft.venue_capacity)

        with get_db_session(self.session_factory) as db:
            event = Event(
                organizer_id=organizer.id,
                title=draft.title,
                description=draft.description,
                category=draft.category,
                venue_name=draft.venue_name,
                venue_address=draft.venue_address,
                venue_city=draft.venue_city,
                venue_country=draft.venue_country,
                venue_capacity=draft.venue_capacity,
                starts_at=draft.starts_at,
                ends_at=draft.ends_at,
                timezone=draft.timezone,
                currency=draft.currency.upper(),
                status=EventStatus.DRAFT,
            )
            tiers = [
                TicketTier(
                    name=tier.name.strip(),
                    price_minor=tier.price_minor,
                    quantity=tier.quantity,
                    sold=0,
                    held=0,
                )
                for tier in draft.tiers
            ]
            EventRepository(db).add(event, tiers)

        logger.info(
            "Event created. event_id=%s organizer_id=%s tiers=%s",
            event.id,
            organizer.id,
            len(tiers),
        )
        return event

    def update_event(self, event_id: str, principal: Principal, changes: dict) -> Event:
        unknown = set(changes) - set(_EDITABLE)
        if unknown:
            raise BookingValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        with get_db_session(self.session_factory) as db:
            event = EventRepository(db).get_by_id(event_id)
            if not event:
                raise NotFoundError("Event", event_id)
            if not principal.can_manage_event(event.organizer_id):
                raise NotAuthorizedError("Only the event organizer can update this event")

            for name, value in changes.items():
                if name == "status":
                    value = EventStatus(value)
                    if value != event.status:
                        EventStateMachine.validate_transition(event.status, value)
                setattr(event, name, value)

            if _as_utc(event.ends_at) < _as_utc(event.starts_at):
                raise BookingValidationError("Event cannot end before it starts")

        logger.info("Event updated. event_id=%s fields=%s", event_id, sorted(changes))
        return event

    def get_event(self, event_id: str) -> Event:
        with get_db_session(self.session_factory) as db:
            event = EventRepository(db).get_by_id(event_id)
            if not event:
                raise NotFoundError("Event", event_id)
            return event

    def list_events(self, filters: EventFilters) -> tuple[list[Event], int]:
        with get_db_session(self.session_factory) as db:
            return EventRepository(db).search_published(filters)

    def availability(self, event_id: str) -> list[TierAvailability]:
        with get_db_session(self.session_factory) as db:
            if not EventRepository(db).get_by_id(event_id):
                raise NotFoundError("Event", event_id)
            return InventoryLedger(db).availability(event_id)
