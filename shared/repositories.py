"""
Typed persistence interfaces for the monitoring core, plus in-memory
implementations.

Each entity gets its own repository with explicit methods, so the services
never look storage up by a model name. The in-memory implementations
serialize their own writes with a lock, which is the contract the services
rely on ("the store serializes its writes"); a database-backed
implementation would get the same guarantee from its transactions.
"""

import threading
from abc import ABC, abstractmethod
from collections import deque
from datetime import date, datetime
from typing import Optional

from shared.models import (
    ErrorRecord,
    Notification,
    NotificationType,
    Product,
    RecipientState,
    User,
)


# =============================================================================
# Interfaces
# =============================================================================

class ErrorRecordRepository(ABC):
    """Storage for tracked errors."""

    @abstractmethod
    def add(self, record: ErrorRecord) -> None: ...

    @abstractmethod
    def find_between(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[ErrorRecord]:
        """Records with start <= timestamp <= end (either bound optional)."""

    @abstractmethod
    def delete_older_than(self, cutoff: datetime) -> int:
        """Delete records with timestamp strictly before cutoff."""

    @abstractmethod
    def count(self) -> int: ...


class NotificationRepository(ABC):
    """Storage for notifications and their per-recipient read state."""

    @abstractmethod
    def add(self, notification: Notification) -> None: ...

    @abstractmethod
    def get(self, notification_id: str) -> Optional[Notification]: ...

    @abstractmethod
    def find_for_user(
        self,
        user_id: str,
        read: Optional[bool] = None,
        notification_type: Optional[NotificationType] = None,
    ) -> list[Notification]: ...

    @abstractmethod
    def mark_read(
        self, notification_id: str, user_id: str, read_at: datetime
    ) -> Optional[RecipientState]:
        """
        Flip one recipient to read. Returns the resulting state, or None when
        the notification or recipient does not exist. Already-read entries
        are returned unchanged.
        """

    @abstractmethod
    def mark_all_read(self, user_id: str, read_at: datetime) -> int: ...

    @abstractmethod
    def count_unread(self, user_id: str) -> int: ...

    @abstractmethod
    def delete(self, notification_id: str) -> bool: ...

    @abstractmethod
    def delete_read_older_than(self, cutoff: datetime) -> int:
        """Delete fully-read notifications created strictly before cutoff."""


class TaskMetadataStore(ABC):
    """Storage for scheduled task run history."""

    @abstractmethod
    def record_run(self, run) -> None: ...

    @abstractmethod
    def recent_runs(self, task_name: Optional[str] = None, limit: int = 50) -> list: ...


class InventoryRepository(ABC):
    """Read access to stock levels, owned by the CRUD backend."""

    @abstractmethod
    def find_low_stock(self) -> list[Product]:
        """Active products whose quantity is at or below the reorder point."""

    @abstractmethod
    def find_expiring(self, after: date, until: date) -> list[Product]:
        """Active products with after < expiry_date <= until."""


class UserDirectory(ABC):
    """User lookup and notification preferences."""

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def recipients_for(self, notification_type: NotificationType) -> list[str]:
        """Ids of users subscribed to a notification type, in stable order."""


class StorageProbe(ABC):
    """Reachability check for the backing store."""

    @abstractmethod
    def ping(self) -> None:
        """Raise if the store cannot be reached."""


# =============================================================================
# In-memory implementations
# =============================================================================

class InMemoryErrorRecordRepository(ErrorRecordRepository):
    def __init__(self):
        self._records: list[ErrorRecord] = []
        self._lock = threading.Lock()

    def add(self, record: ErrorRecord) -> None:
        with self._lock:
            self._records.append(record)

    def find_between(self, start=None, end=None) -> list[ErrorRecord]:
        with self._lock:
            return [
                r for r in self._records
                if (start is None or r.timestamp >= start)
                and (end is None or r.timestamp <= end)
            ]

    def delete_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            kept = [r for r in self._records if r.timestamp >= cutoff]
            removed = len(self._records) - len(kept)
            self._records = kept
            return removed

    def count(self) -> int:
        with self._lock:
            return len(self._records)


class InMemoryNotificationRepository(NotificationRepository):
    """
    Notifications keyed by id, kept in insertion order.

    Stored models are never handed out directly; callers get copies so read
    state can only change through mark_read / mark_all_read.
    """

    def __init__(self):
        self._notifications: dict[str, Notification] = {}
        self._lock = threading.Lock()

    def add(self, notification: Notification) -> None:
        with self._lock:
            self._notifications[notification.id] = notification.model_copy(deep=True)

    def get(self, notification_id: str) -> Optional[Notification]:
        with self._lock:
            found = self._notifications.get(notification_id)
            return found.model_copy(deep=True) if found else None

    def find_for_user(self, user_id, read=None, notification_type=None) -> list[Notification]:
        with self._lock:
            matches = []
            for notification in self._notifications.values():
                state = notification.recipient(user_id)
                if state is None:
                    continue
                if read is not None and state.is_read != read:
                    continue
                if notification_type is not None and notification.type != notification_type:
                    continue
                matches.append(notification.model_copy(deep=True))
            return matches

    def mark_read(self, notification_id, user_id, read_at) -> Optional[RecipientState]:
        with self._lock:
            notification = self._notifications.get(notification_id)
            if notification is None:
                return None
            state = notification.recipient(user_id)
            if state is None:
                return None
            if not state.is_read:
                state.is_read = True
                state.read_at = read_at
            return state.model_copy()

    def mark_all_read(self, user_id: str, read_at: datetime) -> int:
        flipped = 0
        with self._lock:
            for notification in self._notifications.values():
                state = notification.recipient(user_id)
                if state is not None and not state.is_read:
                    state.is_read = True
                    state.read_at = read_at
                    flipped += 1
        return flipped

    def count_unread(self, user_id: str) -> int:
        unread = 0
        with self._lock:
            for notification in self._notifications.values():
                state = notification.recipient(user_id)
                if state is not None and not state.is_read:
                    unread += 1
        return unread

    def delete(self, notification_id: str) -> bool:
        with self._lock:
            return self._notifications.pop(notification_id, None) is not None

    def delete_read_older_than(self, cutoff: datetime) -> int:
        with self._lock:
            expired = [
                n.id for n in self._notifications.values()
                if n.created_at < cutoff and n.is_fully_read()
            ]
            for notification_id in expired:
                del self._notifications[notification_id]
            return len(expired)

    def count(self) -> int:
        with self._lock:
            return len(self._notifications)


class InMemoryTaskMetadataStore(TaskMetadataStore):
    """Keeps the most recent runs across all tasks (bounded)."""

    def __init__(self, max_runs: int = 1000):
        self._runs: deque = deque(maxlen=max_runs)
        self._lock = threading.Lock()

    def record_run(self, run) -> None:
        with self._lock:
            self._runs.append(run)

    def recent_runs(self, task_name=None, limit: int = 50) -> list:
        with self._lock:
            runs = [r for r in self._runs if task_name is None or r.task == task_name]
        return runs[-limit:]
