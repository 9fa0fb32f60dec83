"""
Error aggregation with severity thresholds over a sliding time window.

The aggregator classifies every tracked error, persists it, counts
occurrences per (type, message) key and publishes
`error:threshold_exceeded` when a key reaches its severity's threshold
within the window.

Design decisions:
- Tracking never raises: storage failures and unexpected errors are logged
  at this boundary so error tracking cannot cascade into more errors
- The counter table is guarded by one lock held only for the in-memory
  update, never across a storage call
- Each counter keeps the timestamps of its in-window occurrences; anything
  older than (newest - window) is dropped before counting, so stale
  occurrences never combine toward a threshold
- Statistics and trends are pure functions over the records read back from
  storage
"""

import bisect
import logging
import platform
import sys
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

from monitoring.event_bus import Event, EventBus, EventName
from monitoring.events import error_threshold_exceeded, error_tracked
from shared.config import MonitoringConfig
from shared.errors import PersistenceError, SchedulerTaskError, ValidationError
from shared.models import ErrorRecord, Severity, utcnow
from shared.repositories import ErrorRecordRepository

logger = logging.getLogger("error_aggregator")


# Look-back periods accepted by get_trends()
TREND_PERIODS: dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}

TREND_BUCKETS = ("hour", "day", "week", "month")


# =============================================================================
# Classification
# =============================================================================

def status_of(error: BaseException) -> Optional[int]:
    """HTTP-like status carried by an error, if any."""
    for attr in ("status", "status_code"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_severity(error: BaseException) -> Severity:
    """
    Severity of an error:
    - critical if it is flagged fatal (or critical)
    - high if its status is >= 500
    - medium if its status is >= 400
    - low otherwise
    """
    if getattr(error, "fatal", False) or getattr(error, "critical", False):
        return Severity.CRITICAL

    status = status_of(error)
    if status is not None and status >= 500:
        return Severity.HIGH
    if status is not None and status >= 400:
        return Severity.MEDIUM
    return Severity.LOW


# =============================================================================
# Counters
# =============================================================================

@dataclass(frozen=True)
class ThresholdCounter:
    """Snapshot of one key's occurrences inside the window."""
    count: int
    first_seen: datetime
    last_seen: datetime


class _OccurrenceWindow:
    """Sorted occurrence timestamps for one key. Not thread-safe on its own."""

    def __init__(self):
        self.timestamps: list[datetime] = []

    def add(self, timestamp: datetime, window: timedelta) -> None:
        bisect.insort(self.timestamps, timestamp)
        cutoff = self.timestamps[-1] - window
        drop = bisect.bisect_left(self.timestamps, cutoff)
        if drop:
            del self.timestamps[:drop]

    @property
    def last_seen(self) -> datetime:
        return self.timestamps[-1]

    def snapshot(self) -> ThresholdCounter:
        return ThresholdCounter(
            count=len(self.timestamps),
            first_seen=self.timestamps[0],
            last_seen=self.timestamps[-1],
        )


# =============================================================================
# Statistics
# =============================================================================

class ErrorStatistics(BaseModel):
    """Aggregated counts over a time range."""
    total: int = 0
    by_severity: dict[str, int] = Field(default_factory=dict)
    by_type: dict[str, int] = Field(default_factory=dict)
    group_by: str = "type"
    groups: dict[str, int] = Field(default_factory=dict)


def _group_value(record: ErrorRecord, field_name: str) -> Any:
    if field_name in ErrorRecord.model_fields:
        value = getattr(record, field_name)
    elif field_name in record.context:
        value = record.context[field_name]
    else:
        value = record.metadata.get(field_name)
    if isinstance(value, Severity):
        return value.value
    return value


def calculate_statistics(records: list[ErrorRecord], group_by: str = "type") -> ErrorStatistics:
    """Count records by severity, by type and by a caller-chosen field."""
    stats = ErrorStatistics(total=len(records), group_by=group_by)
    for record in records:
        severity = record.severity.value
        stats.by_severity[severity] = stats.by_severity.get(severity, 0) + 1
        stats.by_type[record.type] = stats.by_type.get(record.type, 0) + 1

        value = _group_value(record, group_by)
        if value is not None and value != "":
            key = str(value)
            stats.groups[key] = stats.groups.get(key, 0) + 1
    return stats


def bucket_key(timestamp: datetime, group_by: str) -> str:
    """Trend bucket label for a timestamp."""
    if group_by == "hour":
        return timestamp.strftime("%Y-%m-%d %H:00")
    if group_by == "day":
        return timestamp.strftime("%Y-%m-%d")
    if group_by == "week":
        year, week, _ = timestamp.isocalendar()
        return f"{year}-W{week:02d}"
    if group_by == "month":
        return timestamp.strftime("%Y-%m")
    raise ValidationError(
        f"Invalid trend grouping: {group_by!r} (expected one of {', '.join(TREND_BUCKETS)})"
    )


def calculate_trends(records: list[ErrorRecord], group_by: str = "hour") -> dict[str, int]:
    """Occurrence counts per time bucket, in chronological order."""
    trends: dict[str, int] = {}
    for record in sorted(records, key=lambda r: r.timestamp):
        key = bucket_key(record.timestamp, group_by)
        trends[key] = trends.get(key, 0) + 1
    return trends


# =============================================================================
# Aggregator
# =============================================================================

class ErrorAggregator:
    """
    Classifies, persists and counts errors.

    Example:
        aggregator = ErrorAggregator(repository, event_bus, config)
        aggregator.attach()   # track scheduler task failures

        try:
            risky()
        except Exception as e:
            aggregator.track_error(e, {"route": "/api/v1/products"})
    """

    def __init__(
        self,
        repository: ErrorRecordRepository,
        event_bus: EventBus,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.event_bus = event_bus
        self.config = config or MonitoringConfig()
        self._clock = clock

        self._counters: dict[tuple[str, str], _OccurrenceWindow] = {}
        self._counters_lock = threading.Lock()
        self._attached = False

    # =========================================================================
    # Tracking
    # =========================================================================

    def track_error(
        self,
        error: BaseException,
        context: Optional[dict[str, Any]] = None,
    ) -> Optional[ErrorRecord]:
        """
        Track an error occurrence.

        Builds the ErrorRecord, persists it, updates its counter, evaluates
        the threshold and publishes `error:tracked`. Never raises; returns
        None only if the record itself could not be built.
        """
        try:
            record = self._process_error(error, context or {})
        except Exception:
            logger.exception("Error tracking error")
            return None

        try:
            self.repository.add(record)
        except Exception as e:
            logger.error(f"Error storing error {record.type}: {e}")

        try:
            counter = self._record_occurrence(record)
            self._check_thresholds(record, counter)
            self.event_bus.publish(error_tracked(record))
            self._log_error(record)
        except Exception:
            logger.exception("Error tracking error")

        return record

    def _process_error(self, error: BaseException, context: dict[str, Any]) -> ErrorRecord:
        stack = None
        if error.__traceback__ is not None:
            stack = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        metadata = {"code": getattr(error, "code", None), "status": status_of(error)}
        extra = getattr(error, "metadata", None)
        if isinstance(extra, dict):
            metadata.update(extra)

        return ErrorRecord(
            type=type(error).__name__,
            message=str(error) or type(error).__name__,
            severity=classify_severity(error),
            timestamp=self._clock(),
            stack=stack,
            context={
                **context,
                "environment": self.config.environment,
                "python_version": platform.python_version(),
                "platform": sys.platform,
            },
            metadata=metadata,
        )

    def _record_occurrence(self, record: ErrorRecord) -> ThresholdCounter:
        with self._counters_lock:
            window = self._counters.get(record.key)
            if window is None:
                window = self._counters[record.key] = _OccurrenceWindow()
            window.add(record.timestamp, self.config.threshold_window)
            return window.snapshot()

    def _check_thresholds(self, record: ErrorRecord, counter: ThresholdCounter) -> None:
        threshold = self.config.threshold_for(record.severity)
        in_window = self._clock() - counter.last_seen <= self.config.threshold_window

        if counter.count >= threshold and in_window:
            logger.warning(
                f"Error threshold exceeded: {record.type}: {record.message} "
                f"({counter.count} {record.severity.value} occurrences, threshold {threshold})"
            )
            self.event_bus.publish(error_threshold_exceeded(
                record,
                occurrences=counter.count,
                first_seen=counter.first_seen,
                last_seen=counter.last_seen,
            ))

    def _log_error(self, record: ErrorRecord) -> None:
        summary = f"{record.type}: {record.message}"
        if record.severity == Severity.CRITICAL:
            logger.error(f"Critical error: {summary}")
        elif record.severity == Severity.HIGH:
            logger.error(f"High severity error: {summary}")
        elif record.severity == Severity.MEDIUM:
            logger.warning(f"Medium severity error: {summary}")
        else:
            logger.info(f"Low severity error: {summary}")

    def counter_for(self, error_type: str, message: str) -> Optional[ThresholdCounter]:
        """Current in-window counter for a key, if one exists."""
        with self._counters_lock:
            window = self._counters.get((error_type, message))
            return window.snapshot() if window else None

    # =========================================================================
    # Event reactions
    # =========================================================================

    def attach(self) -> None:
        """Track scheduler task failures published on the bus."""
        if self._attached:
            return
        self.event_bus.subscribe(EventName.TASK_ERROR, self._handle_task_error)
        self._attached = True

    def detach(self) -> None:
        if not self._attached:
            return
        self.event_bus.unsubscribe(EventName.TASK_ERROR, self._handle_task_error)
        self._attached = False

    def _handle_task_error(self, event: Event) -> None:
        task = event.payload["task"]
        self.track_error(
            SchedulerTaskError(task=task, error=event.payload["error"]),
            {"task": task},
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def _find(self, start: Optional[datetime], end: Optional[datetime]) -> list[ErrorRecord]:
        try:
            return self.repository.find_between(start, end)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to read error records: {e}") from e

    def get_statistics(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        group_by: str = "type",
    ) -> ErrorStatistics:
        """
        Statistics for records in [start, end].

        Defaults to the whole retention period up to now.

        Raises:
            PersistenceError: If the records cannot be read
        """
        now = self._clock()
        start = start or now - self.config.error_retention
        end = end or now
        if start > end:
            raise ValidationError("start must not be after end")
        return calculate_statistics(self._find(start, end), group_by)

    def get_trends(self, period: str = "24h", group_by: str = "hour") -> dict[str, int]:
        """
        Occurrences per time bucket over a look-back period.

        Unknown periods fall back to 24h.

        Raises:
            ValidationError: If group_by is not hour, day, week or month
            PersistenceError: If the records cannot be read
        """
        if group_by not in TREND_BUCKETS:
            raise ValidationError(
                f"Invalid trend grouping: {group_by!r} (expected one of {', '.join(TREND_BUCKETS)})"
            )
        lookback = TREND_PERIODS.get(period, TREND_PERIODS["24h"])
        return calculate_trends(self._find(self._clock() - lookback, None), group_by)

    # =========================================================================
    # Retention
    # =========================================================================

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """
        Delete records strictly older than the retention cutoff and evict
        counters last seen before it.

        Returns:
            Number of persisted records removed

        Raises:
            PersistenceError: If the delete fails
        """
        cutoff = (now or self._clock()) - self.config.error_retention
        try:
            removed = self.repository.delete_older_than(cutoff)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to clean up error records: {e}") from e

        with self._counters_lock:
            stale = [key for key, window in self._counters.items() if window.last_seen < cutoff]
            for key in stale:
                del self._counters[key]

        logger.info(f"Cleaned up {removed} error records older than {cutoff.isoformat()}")
        return removed
