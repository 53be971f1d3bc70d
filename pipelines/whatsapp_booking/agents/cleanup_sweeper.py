"""
Cleanup Sweeper.

Garbage-collects booking links that left ACTIVE more than the retention
window ago. Optionally prunes old booking history when a history
retention period is configured (default: keep forever).

CRITICAL INVARIANTS:
- ACTIVE records are never removed, whatever their age; an ACTIVE link
  past its expiry is left for the validator to expire lazily
- The sweep performs no business transitions, only deletions
- Each deletion re-checks the record under the store lock, so a link
  that changed since the scan snapshot is skipped
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from core.contracts.booking import BookingEvent, LinkState
from core.infrastructure import MessageBus
from core.logger import get_logger
from pipelines.core.base_agent import BaseAgent
from pipelines.whatsapp_booking.config import RETENTION_HOURS
from pipelines.whatsapp_booking.link_store import LinkStore
from pipelines.whatsapp_booking.utils.helpers import parse_iso, to_iso, utc_now

logger = get_logger(__name__)


class CleanupSweeper(BaseAgent):
    """
    Purges stale, already-deactivated booking links.

    Contract:
        Input: (none)
        Output: sweep_results ({purged_count, history_pruned})

    Attributes:
        retention: How long a deactivated link is kept
        history_retention: How long history entries are kept (None = forever)
    """

    def __init__(
        self,
        link_store: LinkStore,
        message_bus: MessageBus | None = None,
        retention_hours: float = RETENTION_HOURS,
        history_retention_days: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(name="CleanupSweeper")
        self.link_store = link_store
        self.message_bus = message_bus or MessageBus()
        self.retention = timedelta(hours=retention_hours)
        self.history_retention = (
            timedelta(days=history_retention_days) if history_retention_days is not None else None
        )
        self._clock = clock
        self._last_sweep_at: Optional[str] = None
        self._last_purged_count = 0

    def run(self, input_data: Dict[str, Any]) -> Dict[str, Any]:
        return {"sweep_results": self.sweep()}

    def sweep(self) -> Dict[str, int]:
        """
        Run one cleanup pass.

        Returns:
            {"purged_count": links removed, "history_pruned": entries removed}
        """
        now = self._clock()
        cutoff = now - self.retention
        purged = 0

        for record in list(self.link_store.iter_links()):
            if not self._is_purgeable(record, cutoff):
                continue
            booking_id = record["booking_id"]
            with self.link_store.locked():
                current = self.link_store.get_link(booking_id)
                if current is None or not self._is_purgeable(current, cutoff):
                    continue
                self.link_store.delete_link(booking_id)
            purged += 1
            logger.debug(f"Purged booking link {booking_id} ({current.get('state')})")

        history_pruned = self._prune_history(now) if self.history_retention else 0

        self._last_sweep_at = to_iso(now)
        self._last_purged_count = purged
        logger.info(f"Cleanup sweep complete: {purged} link(s) purged, {history_pruned} history entries pruned")

        if purged:
            self.message_bus.publish(BookingEvent.LINKS_PURGED.value, {
                "purged_count": purged,
                "timestamp": self._last_sweep_at,
            })
        return {"purged_count": purged, "history_pruned": history_pruned}

    @staticmethod
    def _is_purgeable(record: Dict[str, Any], cutoff: datetime) -> bool:
        if record.get("state") == LinkState.ACTIVE.value:
            return False
        deactivated_at = parse_iso(record.get("deactivated_at"))
        return deactivated_at is not None and deactivated_at < cutoff

    def _prune_history(self, now: datetime) -> int:
        cutoff = now - self.history_retention
        pruned = 0
        for contact_key, _ in list(self.link_store.iter_history()):
            with self.link_store.locked():
                entries = self.link_store.history_for(contact_key)
                kept = [e for e in entries if (parse_iso(e.get("booked_at")) or now) >= cutoff]
                if len(kept) != len(entries):
                    self.link_store.replace_history(contact_key, kept)
                    pruned += len(entries) - len(kept)
        return pruned

    def stats(self) -> Dict[str, Any]:
        """Link counts plus the outcome of the last sweep."""
        return {
            **self.link_store.counts(),
            "last_sweep_at": self._last_sweep_at,
            "last_purged_count": self._last_purged_count,
        }
