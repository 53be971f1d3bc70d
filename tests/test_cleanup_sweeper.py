"""Tests for CleanupSweeper and CleanupScheduler.

These tests validate:
- Inactive links older than the retention window are purged
- ACTIVE links are never purged, whatever their age
- Optional history retention (default keeps history forever)
- Scheduler runs at start, on demand, and survives sweep failures
"""

import threading

import pytest

from core.contracts.booking import BookingEvent, LinkState
from fixtures.sample_leads import make_lead, make_webhook_event
from pipelines.whatsapp_booking.agents.cleanup_sweeper import CleanupSweeper
from pipelines.whatsapp_booking.scheduler import CleanupScheduler


# =============================================================================
# SWEEP
# =============================================================================

class TestSweep:
    """Purge rules."""

    def test_used_link_purged_after_retention(self, issuer, processor, sweeper, link_store, clock):
        record = issuer.issue(make_lead())
        processor.process_booking_completed(make_webhook_event(record["booking_id"]))

        clock.advance(hours=24, seconds=1)
        result = sweeper.sweep()

        assert result == {"purged_count": 1, "history_pruned": 0}
        assert link_store.get_link(record["booking_id"]) is None

    def test_inactive_link_kept_inside_retention(self, issuer, processor, sweeper, link_store, clock):
        record = issuer.issue(make_lead())
        processor.deactivate(record["booking_id"])

        clock.advance(hours=23)

        assert sweeper.sweep()["purged_count"] == 0
        assert link_store.get_link(record["booking_id"]) is not None

    def test_retention_counts_from_deactivation_not_creation(
        self, issuer, validator, sweeper, link_store, clock
    ):
        record = issuer.issue(make_lead())
        clock.advance(hours=30)
        validator.validate(record["booking_id"])  # lazily expired now

        clock.advance(hours=23)
        assert sweeper.sweep()["purged_count"] == 0

        clock.advance(hours=2)
        assert sweeper.sweep()["purged_count"] == 1

    def test_active_links_never_purged(self, issuer, sweeper, link_store, clock):
        record = issuer.issue(make_lead())

        clock.advance(hours=24 * 30)
        sweeper.sweep()

        stored = link_store.get_link(record["booking_id"])
        assert stored is not None
        assert stored["state"] == LinkState.ACTIVE.value

    def test_history_survives_purge(self, issuer, processor, sweeper, link_store, clock):
        record = issuer.issue(make_lead())
        processor.process_booking_completed(make_webhook_event(record["booking_id"]))

        clock.advance(hours=48)
        sweeper.sweep()

        assert link_store.has_booked(record["contact_key"])

    def test_purge_publishes_event(self, issuer, processor, sweeper, message_bus, clock):
        record = issuer.issue(make_lead())
        processor.deactivate(record["booking_id"])
        clock.advance(hours=25)

        sweeper.sweep()

        events = message_bus.get_event_history(BookingEvent.LINKS_PURGED.value)
        assert events[-1]["payload"]["purged_count"] == 1

    def test_empty_sweep_publishes_nothing(self, sweeper, message_bus):
        assert sweeper.sweep()["purged_count"] == 0
        assert message_bus.get_event_history(BookingEvent.LINKS_PURGED.value) == []

    def test_run_contract(self, sweeper):
        assert sweeper.run({}) == {"sweep_results": {"purged_count": 0, "history_pruned": 0}}


class TestHistoryRetention:
    """History is pruned only when a retention period is configured."""

    def _book(self, issuer, processor, phone):
        record = issuer.issue(make_lead(phone=phone))
        processor.process_booking_completed(make_webhook_event(record["booking_id"]))
        return record

    def test_history_pruned_after_retention_days(
        self, issuer, processor, link_store, message_bus, clock
    ):
        sweeper = CleanupSweeper(link_store, message_bus, history_retention_days=30, clock=clock)
        old = self._book(issuer, processor, "+15550000001")
        clock.advance(hours=24 * 20)
        recent = self._book(issuer, processor, "+15550000002")

        clock.advance(hours=24 * 11)
        result = sweeper.sweep()

        assert result["history_pruned"] == 1
        assert link_store.has_booked(old["contact_key"]) is False
        assert link_store.has_booked(recent["contact_key"]) is True


class TestStats:
    """Counts plus last sweep outcome."""

    def test_stats_after_sweep(self, issuer, processor, sweeper, clock):
        issuer.issue(make_lead(phone="+15550000001"))
        dead = issuer.issue(make_lead(phone="+15550000002"))
        processor.deactivate(dead["booking_id"])

        before = sweeper.stats()
        assert before["total"] == 2
        assert before["active"] == 1
        assert before["inactive"] == 1
        assert before["last_sweep_at"] is None

        clock.advance(hours=25)
        sweeper.sweep()

        after = sweeper.stats()
        assert after["total"] == 1
        assert after["last_purged_count"] == 1
        assert after["last_sweep_at"] == clock.now.isoformat()


# =============================================================================
# SCHEDULER
# =============================================================================

class CountingSweeper:
    """Sweeper stand-in that records calls and can fail on demand."""

    def __init__(self, fail=False):
        self.calls = 0
        self.fail = fail
        self.swept = threading.Event()

    def sweep(self):
        self.calls += 1
        self.swept.set()
        if self.fail:
            raise RuntimeError("store unavailable")
        return {"purged_count": 0, "history_pruned": 0}


class TestCleanupScheduler:
    """Periodic driving of the sweeper."""

    def test_start_sweeps_immediately(self):
        sweeper = CountingSweeper()
        scheduler = CleanupScheduler(sweeper, interval_hours=6)

        scheduler.start()
        try:
            assert sweeper.calls == 1
            assert scheduler.is_running is True
        finally:
            scheduler.stop()

        assert scheduler.is_running is False

    def test_timer_rearms(self):
        sweeper = CountingSweeper()
        scheduler = CleanupScheduler(sweeper, interval_hours=0.01 / 3600)

        scheduler.start()
        try:
            sweeper.swept.clear()
            assert sweeper.swept.wait(timeout=2)
            sweeper.swept.clear()
            assert sweeper.swept.wait(timeout=2)
        finally:
            scheduler.stop()

        assert sweeper.calls >= 3

    def test_run_now_swallows_failures(self):
        scheduler = CleanupScheduler(CountingSweeper(fail=True), interval_hours=6)

        result = scheduler.run_now()

        assert result["purged_count"] == 0
        assert "store unavailable" in result["error"]

    def test_double_start_is_ignored(self):
        sweeper = CountingSweeper()
        scheduler = CleanupScheduler(sweeper, interval_hours=6)

        scheduler.start()
        scheduler.start()
        scheduler.stop()

        assert sweeper.calls == 1

    def test_non_positive_interval_rejected(self):
        with pytest.raises(ValueError):
            CleanupScheduler(CountingSweeper(), interval_hours=0)
