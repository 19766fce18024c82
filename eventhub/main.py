import logging
import time

from fastapi import FastAPI
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from eventhub import config
from eventhub.api.routes.routes import router, shared_gateway
from eventhub.application.booking_manager import BookingManager
from eventhub.application.sweeper import ReservationSweeper
from eventhub.domain.exceptions import PaymentGatewayError
from eventhub.infrastructure.db.session import SessionLocal, engine
from eventhub.infrastructure.db.models import Base

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

app = FastAPI(title="EventHub")

app.include_router(router)
logger = logging.getLogger(__name__)

_sweeper: ReservationSweeper | None = None


def _wait_for_db() -> None:
    # Handles the common case where API starts before Postgres is ready.
    max_retries = config.DB_CONNECT_MAX_RETRIES
    retry_delay_seconds = config.DB_CONNECT_RETRY_DELAY

    for attempt in range(1, max_retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database is reachable.")
            return
        except OperationalError:
            if attempt == max_retries:
                logger.exception(
                    "Database not reachable after %s attempts. Check DATABASE_URL and Postgres status.",
                    max_retries,
                )
                raise
            logger.warning(
                "Database not ready (attempt %s/%s). Retrying in %.1f seconds...",
                attempt,
                max_retries,
                retry_delay_seconds,
            )
            time.sleep(retry_delay_seconds)


@app.on_event("startup")
def on_startup() -> None:
    global _sweeper
    _wait_for_db()
    Base.metadata.create_all(bind=engine)

    if not config.SWEEPER_ENABLED:
        return
    try:
        gateway = shared_gateway()
    except PaymentGatewayError as exc:
        logger.warning("Reservation sweeper not started: %s", exc)
        return
    _sweeper = ReservationSweeper(BookingManager(SessionLocal, gateway))
    _sweeper.start()


@app.on_event("shutdown")
def on_shutdown() -> None:
    if _sweeper:
        _sweeper.stop()
