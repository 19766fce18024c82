import os
from datetime import timedelta

# Must be set before eventhub modules build the default engine.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("PAYMENT_GATEWAY", "sandbox")

import pytest
from fastapi.testclient import TestClient

from eventhub.api.routes.routes import get_db, get_gateway, get_session_factory
from eventhub.application.booking_manager import BookingManager
from eventhub.application.notification_dispatcher import NotificationDispatcher
from eventhub.application.ticket_service import TicketService
from eventhub.domain.principal import ADMIN, ATTENDEE, ORGANIZER, Principal
from eventhub.domain.state_machine import EventStatus
from eventhub.infrastructure.db.models import Base, Event, TicketTier, utcnow
from eventhub.infrastructure.db.session import build_engine, build_session_factory, get_db_session
from eventhub.infrastructure.payments.sandbox_gateway import SandboxPaymentGateway
from eventhub.main import app

ORGANIZER_ID = "org-1"


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'eventhub.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def gateway():
    return SandboxPaymentGateway()


@pytest.fixture
def dispatcher(session_factory):
    return NotificationDispatcher(session_factory)


@pytest.fixture
def manager(session_factory, gateway, dispatcher):
    return BookingManager(
        session_factory,
        gateway,
        dispatcher,
        hold_seconds=600,
        commit_retry_delay=0,
        sleep=lambda seconds: None,
    )


@pytest.fixture
def ticket_service(session_factory, dispatcher):
    return TicketService(session_factory, dispatcher)


@pytest.fixture
def attendee():
    return Principal(id="user-1", role=ATTENDEE)


@pytest.fixture
def other_attendee():
    return Principal(id="user-2", role=ATTENDEE)


@pytest.fixture
def organizer():
    return Principal(id=ORGANIZER_ID, role=ORGANIZER)


@pytest.fixture
def admin():
    return Principal(id="admin-1", role=ADMIN)


@pytest.fixture
def make_event(session_factory):
    """Creates a published event; tiers given as {name: (price_minor, quantity)}."""

    def _make(tiers=None, status=EventStatus.PUBLISHED, **fields):
        tiers = tiers or {"General Admission": (5000, 100)}
        starts_at = fields.pop("starts_at", utcnow() + timedelta(days=7))
        values = {
            "organizer_id": ORGANIZER_ID,
            "title": "Harbor Lights Live",
            "description": "Live music on the waterfront",
            "category": "music",
            "venue_name": "Harbor Arena",
            "venue_address": "1 Pier Road",
            "venue_city": "Seattle",
            "venue_country": "US",
            "venue_capacity": sum(q for _, q in tiers.values()) or 1,
            "starts_at": starts_at,
            "ends_at": starts_at + timedelta(hours=3),
            "currency": "USD",
            "status": status,
        }
        values.update(fields)
        with get_db_session(session_factory) as db:
            event = Event(**values)
            event.tiers.extend(
                TicketTier(name=name, price_minor=price, quantity=quantity)
                for name, (price, quantity) in tiers.items()
            )
            db.add(event)
            db.flush()
            return event.id

    return _make


@pytest.fixture
def auth_headers():
    def _headers(principal: Principal) -> dict:
        return {"X-User-Id": principal.id, "X-User-Role": principal.role}

    return _headers


@pytest.fixture
def client(session_factory, gateway):
    def _get_db():
        db = session_factory()
        try:
            yield db
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_db] = _get_db
    # No context manager: startup (DB readiness check, sweeper thread) stays off.
    yield TestClient(app)
    app.dependency_overrides.clear()
