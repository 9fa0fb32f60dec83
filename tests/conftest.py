"""
Shared pytest fixtures for the monitoring core tests.

These fixtures provide fresh services wired to in-memory storage and the
JSON fixtures in ./data, so tests don't interfere with each other.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from monitoring.error_aggregator import ErrorAggregator
from monitoring.event_bus import EventBus
from monitoring.notification_dispatcher import NotificationDispatcher
from monitoring.scheduler import TaskScheduler
from shared.channels import EmailChannel
from shared.config import MonitoringConfig
from shared.data_store import DataStore
from shared.repositories import (
    InMemoryErrorRecordRepository,
    InMemoryNotificationRepository,
    InMemoryTaskMetadataStore,
)
from shared.templates import TemplateRenderer


class FakeClock:
    """Settable clock for services that take a `clock` callable."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def data_dir() -> Path:
    """Path to the fixture data directory."""
    return Path(__file__).parent.parent / "data"


@pytest.fixture
def data_store(data_dir: Path) -> DataStore:
    """
    Fresh DataStore instance for each test.

    Uses the real JSON fixtures but creates a new instance
    so tests don't interfere with each other.
    """
    return DataStore(data_dir=data_dir)


@pytest.fixture
def config() -> MonitoringConfig:
    """Test-environment config: default jobs are not armed."""
    return MonitoringConfig(environment="test")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def email_channel() -> EmailChannel:
    """Fresh EmailChannel for each test."""
    return EmailChannel(fail_rate=0.0)


@pytest.fixture
def error_repository() -> InMemoryErrorRecordRepository:
    return InMemoryErrorRecordRepository()


@pytest.fixture
def notification_repository() -> InMemoryNotificationRepository:
    return InMemoryNotificationRepository()


@pytest.fixture
def aggregator(error_repository, event_bus, config, clock) -> ErrorAggregator:
    return ErrorAggregator(error_repository, event_bus, config, clock=clock)


@pytest.fixture
def dispatcher(notification_repository, data_store, email_channel, event_bus, config, clock) -> NotificationDispatcher:
    return NotificationDispatcher(
        repository=notification_repository,
        users=data_store,
        renderer=TemplateRenderer(company_name=config.company_name),
        transport=email_channel,
        event_bus=event_bus,
        config=config,
        clock=clock,
    )


@pytest.fixture
def scheduler(event_bus) -> TaskScheduler:
    scheduler = TaskScheduler(event_bus, metadata_store=InMemoryTaskMetadataStore(), poll_interval=0.05)
    yield scheduler
    scheduler.shutdown(timeout=2)


# =============================================================================
# User Fixtures
# =============================================================================

@pytest.fixture
def alice_user_id() -> str:
    """Alice: ADMIN, subscribed to LOW_STOCK, STOCK_OUT, QUALITY_ALERT and SYSTEM."""
    return "user-001"


@pytest.fixture
def bob_user_id() -> str:
    """Bob: MANAGER, subscribed to LOW_STOCK and ORDER_STATUS; owns ord-001."""
    return "user-002"


@pytest.fixture
def carol_user_id() -> str:
    """Carol: ADMIN, subscribed to SYSTEM only."""
    return "user-003"


@pytest.fixture
def david_user_id() -> str:
    """David: STAFF, no subscriptions; owns ord-002."""
    return "user-004"
