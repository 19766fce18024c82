import logging
import threading

from eventhub import config
from eventhub.application.booking_manager import BookingManager

logger = logging.getLogger(__name__)


class ReservationSweeper:
    """
    Background thread that periodically expires abandoned holds, finishes
    bookings stuck after payment confirmation and refunds orphaned captures.
    """

    def __init__(self, manager: BookingManager, interval_seconds: float | None = None):
        self.manager = manager
        self.interval_seconds = (
            config.SWEEP_INTERVAL_SECONDS if interval_seconds is None else interval_seconds
        )
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="reservation-sweeper",
            daemon=True,
        )
        self._thread.start()
        logger.info("Reservation sweeper started. interval=%.1fs", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Reservation sweeper stopped.")

    def run_once(self):
        return self.manager.run_maintenance()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                report = self.run_once()
            except Exception:
                # Keep sweeping; the next pass retries whatever failed.
                logger.exception("Reservation sweep failed.")
                continue
            if report.expired or report.committed or report.refunded:
                logger.info(
                    "Sweep pass finished. expired=%s committed=%s refunded=%s",
                    report.expired,
                    report.committed,
                    report.refunded,
                )
