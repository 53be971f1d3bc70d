"""
Pytest configuration and fixtures.

Sets up import paths for the test suite and provides the shared booking
fixtures (frozen clock, fresh store/bus, wired agents).
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Add project root to Python path
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

# Add tests directory to path for fixtures
tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from core.infrastructure import MessageBus, StateStore  # noqa: E402
from pipelines.whatsapp_booking.agents.cleanup_sweeper import CleanupSweeper  # noqa: E402
from pipelines.whatsapp_booking.agents.link_issuer import LinkIssuer  # noqa: E402
from pipelines.whatsapp_booking.agents.link_minting import LocalOnlyMinter  # noqa: E402
from pipelines.whatsapp_booking.agents.link_validator import LinkValidator  # noqa: E402
from pipelines.whatsapp_booking.agents.webhook_processor import WebhookEventProcessor  # noqa: E402
from pipelines.whatsapp_booking.lead_store import InMemoryLeadStore  # noqa: E402
from pipelines.whatsapp_booking.link_store import LinkStore  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, hours: float = 0, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(hours=hours, minutes=minutes, seconds=seconds)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def state_store():
    return StateStore()


@pytest.fixture
def message_bus():
    return MessageBus()


@pytest.fixture
def link_store(state_store):
    return LinkStore(state_store)


@pytest.fixture
def lead_store(state_store, clock):
    return InMemoryLeadStore(state_store, clock=clock)


@pytest.fixture
def validator(link_store, message_bus, clock):
    return LinkValidator(link_store, message_bus, clock=clock)


@pytest.fixture
def issuer(link_store, validator, message_bus, clock):
    return LinkIssuer(
        link_store,
        validator=validator,
        minter=LocalOnlyMinter("https://calendly.com/acme/30min"),
        message_bus=message_bus,
        ttl_hours=24,
        clock=clock,
    )


@pytest.fixture
def processor(link_store, lead_store, message_bus, clock):
    return WebhookEventProcessor(link_store, lead_store, message_bus, clock=clock)


@pytest.fixture
def sweeper(link_store, message_bus, clock):
    return CleanupSweeper(link_store, message_bus, retention_hours=24, clock=clock)
