"""Periodic cleanup scheduling.

Runs the cleanup sweep once at start and then every interval on a daemon
timer. The timer re-arms itself after each run; a failing sweep is logged
and does not stop the schedule.
"""

import threading
from typing import Any, Dict, Optional

from core.logger import get_logger
from pipelines.whatsapp_booking.agents.cleanup_sweeper import CleanupSweeper
from pipelines.whatsapp_booking.config import SWEEP_INTERVAL_HOURS

logger = get_logger(__name__)


class CleanupScheduler:
    """
    Drives CleanupSweeper on a fixed interval.

    Usage:
        scheduler = CleanupScheduler(sweeper, interval_hours=6)
        scheduler.start()      # sweeps now, then every 6 hours
        scheduler.run_now()    # manual trigger
        scheduler.stop()
    """

    def __init__(
        self,
        sweeper: CleanupSweeper,
        interval_hours: float = SWEEP_INTERVAL_HOURS,
    ) -> None:
        if interval_hours <= 0:
            raise ValueError("Sweep interval must be positive")
        self.sweeper = sweeper
        self.interval_seconds = interval_hours * 3600
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Sweep once immediately, then arm the periodic timer."""
        with self._lock:
            if self._running:
                logger.warning("Cleanup scheduler already running")
                return
            self._running = True

        self.run_now()
        self._arm()
        logger.info(f"Cleanup scheduler started (every {self.interval_seconds / 3600:g}h)")

    def stop(self) -> None:
        """Cancel the pending timer."""
        with self._lock:
            self._running = False
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        logger.info("Cleanup scheduler stopped")

    def run_now(self) -> Dict[str, Any]:
        """
        Run one sweep on the calling thread.

        Returns:
            Sweep results, or {"purged_count": 0, "error": ...} on failure.
        """
        try:
            return self.sweeper.sweep()
        except Exception as e:
            logger.error(f"Scheduled cleanup failed: {e}")
            return {"purged_count": 0, "error": str(e)}

    def _arm(self) -> None:
        with self._lock:
            if not self._running:
                return
            timer = threading.Timer(self.interval_seconds, self._tick)
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _tick(self) -> None:
        self.run_now()
        self._arm()
