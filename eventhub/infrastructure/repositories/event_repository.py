# eventhub/infrastructure/repositories/event_repository.py

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from eventhub.domain.state_machine import EventStatus
from eventhub.infrastructure.db.models import Event, TicketTier


@dataclass(frozen=True)
class EventFilters:
    category: str | None = None
    city: str | None = None
    start_from: datetime | None = None
    start_to: datetime | None = None
    search: str | None = None
    page: int = 1
    limit: int = 10


class EventRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> Event | None:
        stmt = (
            select(Event)
            .where(Event.id == event_id)
            .options(selectinload(Event.tiers))
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def add(self, event: Event, tiers: list[TicketTier]) -> Event:
        event.tiers.extend(tiers)
        self.db.add(event)
        self.db.flush()
        return event

    def search_published(self, filters: EventFilters) -> tuple[list[Event], int]:
        stmt = select(Event).where(Event.status == EventStatus.PUBLISHED)

        if filters.category:
            stmt = stmt.where(Event.category == filters.category)
        if filters.city:
            stmt = stmt.where(func.lower(Event.venue_city) == filters.city.strip().lower())
        if filters.start_from:
            stmt = stmt.where(Event.starts_at >= filters.start_from)
        if filters.start_to:
            stmt = stmt.where(Event.starts_at <= filters.start_to)
        if filters.search:
            pattern = f"%{filters.search.strip().lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Event.title).like(pattern),
                    func.lower(Event.description).like(pattern),
                )
            )

        total = self.db.execute(
            select(func.count()).select_from(stmt.subquery())
        ).scalar_one()

        page_stmt = (
            stmt.options(selectinload(Event.tiers))
            .order_by(Event.starts_at)
            .limit(filters.limit)
            .offset((filters.page - 1) * filters.limit)
        )
        events = list(self.db.execute(page_stmt).scalars().all())
        return events, total
