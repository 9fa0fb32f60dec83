"""
Tests for the in-memory repositories.
"""

from datetime import datetime, timedelta, timezone

from shared.models import (
    ErrorRecord,
    Notification,
    NotificationType,
    RecipientState,
    Severity,
)
from shared.repositories import (
    InMemoryErrorRecordRepository,
    InMemoryNotificationRepository,
    InMemoryTaskMetadataStore,
)

T0 = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def make_record(ts: datetime) -> ErrorRecord:
    return ErrorRecord(type="E", message="m", severity=Severity.LOW, timestamp=ts)


def make_notification(*user_ids, created_at=T0, ntype=NotificationType.SYSTEM) -> Notification:
    return Notification(
        type=ntype,
        message="hello",
        created_at=created_at,
        recipients=[RecipientState(user_id=u) for u in user_ids],
    )


class TestErrorRecordRepository:
    def test_find_between_is_inclusive(self, error_repository: InMemoryErrorRecordRepository):
        for minutes in (0, 10, 20):
            error_repository.add(make_record(T0 + timedelta(minutes=minutes)))

        found = error_repository.find_between(T0, T0 + timedelta(minutes=10))
        assert len(found) == 2

    def test_delete_older_than_is_strict(self, error_repository: InMemoryErrorRecordRepository):
        error_repository.add(make_record(T0 - timedelta(seconds=1)))
        error_repository.add(make_record(T0))

        assert error_repository.delete_older_than(T0) == 1
        assert error_repository.count() == 1


class TestNotificationRepository:
    def test_get_returns_copy(self, notification_repository: InMemoryNotificationRepository):
        notification = make_notification("user-001")
        notification_repository.add(notification)

        copy = notification_repository.get(notification.id)
        copy.recipients[0].is_read = True

        assert not notification_repository.get(notification.id).recipients[0].is_read

    def test_mark_read_is_idempotent(self, notification_repository: InMemoryNotificationRepository):
        notification = make_notification("user-001")
        notification_repository.add(notification)

        first = notification_repository.mark_read(notification.id, "user-001", T0)
        second = notification_repository.mark_read(notification.id, "user-001", T0 + timedelta(hours=1))

        assert first.read_at == T0
        assert second.read_at == T0

    def test_mark_read_unknown(self, notification_repository: InMemoryNotificationRepository):
        notification = make_notification("user-001")
        notification_repository.add(notification)

        assert notification_repository.mark_read("missing", "user-001", T0) is None
        assert notification_repository.mark_read(notification.id, "user-999", T0) is None

    def test_find_for_user_filters(self, notification_repository: InMemoryNotificationRepository):
        system = make_notification("user-001", "user-002")
        stock = make_notification("user-001", ntype=NotificationType.LOW_STOCK)
        notification_repository.add(system)
        notification_repository.add(stock)
        notification_repository.mark_read(system.id, "user-001", T0)

        assert len(notification_repository.find_for_user("user-001")) == 2
        assert [n.id for n in notification_repository.find_for_user("user-001", read=False)] == [stock.id]
        assert [n.id for n in notification_repository.find_for_user(
            "user-001", notification_type=NotificationType.SYSTEM)] == [system.id]
        assert len(notification_repository.find_for_user("user-003")) == 0

    def test_unread_counts_are_per_recipient(self, notification_repository: InMemoryNotificationRepository):
        notification = make_notification("user-001", "user-002")
        notification_repository.add(notification)

        assert notification_repository.mark_all_read("user-001", T0) == 1
        assert notification_repository.count_unread("user-001") == 0
        assert notification_repository.count_unread("user-002") == 1

    def test_delete_read_older_than(self, notification_repository: InMemoryNotificationRepository):
        old_read = make_notification("user-001", created_at=T0 - timedelta(days=100))
        old_unread = make_notification("user-001", "user-002", created_at=T0 - timedelta(days=100))
        recent_read = make_notification("user-001", created_at=T0)
        for n in (old_read, old_unread, recent_read):
            notification_repository.add(n)
        notification_repository.mark_all_read("user-001", T0)

        assert notification_repository.delete_read_older_than(T0 - timedelta(days=90)) == 1
        assert notification_repository.get(old_read.id) is None
        assert notification_repository.count() == 2


class TestTaskMetadataStore:
    def test_recent_runs_bounded_and_filtered(self):
        from monitoring.scheduler import TaskRun

        store = InMemoryTaskMetadataStore(max_runs=3)
        for i in range(4):
            store.record_run(TaskRun(task="a" if i % 2 else "b", started_at=T0 + timedelta(minutes=i)))

        assert len(store.recent_runs()) == 3
        assert [r.task for r in store.recent_runs("a")] == ["a", "a"]
        assert len(store.recent_runs(limit=1)) == 1
