from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from eventhub.domain.state_machine import EventStatus
from eventhub.infrastructure.db.models import Base, Event, TicketTier
from eventhub.infrastructure.db.session import engine, get_db_session

DEMO_ORGANIZER_ID = "organizer-demo"


def _dt(days_from_now: int, hour: int, minute: int) -> datetime:
    now = datetime.now(timezone.utc)
    target = now + timedelta(days=days_from_now)
    return target.replace(hour=hour, minute=minute, second=0, microsecond=0)


EVENT_DEFS = [
    {
        "title": "Harbor Lights Live Concert",
        "category": "music",
        "description": "An evening of live music on the waterfront.",
        "venue_name": "Harbor Arena",
        "venue_address": "1 Pier Road",
        "venue_city": "Seattle",
        "venue_country": "US",
        "venue_capacity": 600,
        "starts_at": _dt(days_from_now=10, hour=19, minute=30),
        "hours": 3,
        "tiers": [
            {"name": "General Admission", "price_minor": 5000, "quantity": 450},
            {"name": "VIP", "price_minor": 15000, "quantity": 120},
        ],
    },
    {
        "title": "Open Source Summit",
        "category": "technology",
        "description": "Two tracks of talks on building and maintaining open source.",
        "venue_name": "Convention Center Hall B",
        "venue_address": "800 Convention Pl",
        "venue_city": "Portland",
        "venue_country": "US",
        "venue_capacity": 300,
        "starts_at": _dt(days_from_now=21, hour=9, minute=0),
        "hours": 8,
        "tiers": [
            {"name": "Community", "price_minor": 0, "quantity": 100},
            {"name": "Standard", "price_minor": 12000, "quantity": 180},
        ],
    },
]


def seed_events(db) -> int:
    created = 0
    for item in EVENT_DEFS:
        existing = db.execute(
            select(Event).where(Event.title == item["title"])
        ).scalar_one_or_none()
        if existing:
            # Tier counters belong to the inventory ledger; leave them alone.
            existing.starts_at = item["starts_at"]
            existing.ends_at = item["starts_at"] + timedelta(hours=item["hours"])
            existing.status = EventStatus.PUBLISHED
            continue

        event = Event(
            organizer_id=DEMO_ORGANIZER_ID,
            title=item["title"],
            description=item["description"],
            category=item["category"],
            venue_name=item["venue_name"],
            venue_address=item["venue_address"],
            venue_city=item["venue_city"],
            venue_country=item["venue_country"],
            venue_capacity=item["venue_capacity"],
            starts_at=item["starts_at"],
            ends_at=item["starts_at"] + timedelta(hours=item["hours"]),
            currency="USD",
            status=EventStatus.PUBLISHED,
        )
        event.tiers.extend(
            TicketTier(name=tier["name"], price_minor=tier["price_minor"], quantity=tier["quantity"])
            for tier in item["tiers"]
        )
        db.add(event)
        created += 1
    return created


def main() -> None:
    Base.metadata.create_all(bind=engine)
    with get_db_session() as db:
        created = seed_events(db)
    print(f"Seed complete: {created} new event(s), {len(EVENT_DEFS)} demo event(s) published.")


if __name__ == "__main__":
    main()
