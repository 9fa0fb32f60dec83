"""
Event factories for the monitoring core.

Each function builds a properly structured Event for one EventName, so the
payload shape of every event is defined in exactly one place.

Payloads:
- system:task_error          {task, error}
- system:high_memory_usage   {usage}
- system:health_check_failed {error}
- system:daily_report        {report}
- error:tracked              {error}
- error:threshold_exceeded   {error, occurrences, period: {start, end}}
- inventory:low              {product_id, quantity, reorder_point}
- inventory:expiring         {product_id, expiry_date}
- notification:created       {notification_id, type, recipient_ids}
"""

from datetime import date, datetime
from typing import Any

from monitoring.event_bus import Event, EventName
from shared.models import ErrorRecord, Notification


# =============================================================================
# System Events
# =============================================================================

def task_error(task: str, error: str, source: str = "scheduler") -> Event:
    """Published when a scheduled job handler fails."""
    return Event(
        event_type=EventName.TASK_ERROR,
        source=source,
        payload={"task": task, "error": error},
    )


def high_memory_usage(usage: dict[str, Any], source: str = "health-check") -> Event:
    """Published when memory pressure exceeds the configured ratio."""
    return Event(
        event_type=EventName.HIGH_MEMORY_USAGE,
        source=source,
        payload={"usage": usage},
    )


def health_check_failed(error: str, source: str = "health-check") -> Event:
    return Event(
        event_type=EventName.HEALTH_CHECK_FAILED,
        source=source,
        payload={"error": error},
    )


def daily_report(report: dict[str, Any], source: str = "daily-cleanup") -> Event:
    return Event(
        event_type=EventName.DAILY_REPORT,
        source=source,
        payload={"report": report},
    )


# =============================================================================
# Error Tracking Events
# =============================================================================

def error_tracked(record: ErrorRecord, source: str = "error-aggregator") -> Event:
    return Event(
        event_type=EventName.ERROR_TRACKED,
        source=source,
        payload={"error": record},
    )


def error_threshold_exceeded(
    record: ErrorRecord,
    occurrences: int,
    first_seen: datetime,
    last_seen: datetime,
    source: str = "error-aggregator",
) -> Event:
    """
    Published when an error key reaches its severity threshold within the
    time window. `record` is the occurrence that crossed the threshold.
    """
    return Event(
        event_type=EventName.ERROR_THRESHOLD_EXCEEDED,
        source=source,
        payload={
            "error": record,
            "occurrences": occurrences,
            "period": {"start": first_seen, "end": last_seen},
        },
    )


# =============================================================================
# Inventory Events
# =============================================================================

def inventory_low(
    product_id: str,
    quantity: int,
    reorder_point: int,
    product_name: str = "",
    source: str = "inventory-sweep",
) -> Event:
    return Event(
        event_type=EventName.INVENTORY_LOW,
        source=source,
        payload={
            "product_id": product_id,
            "product_name": product_name,
            "quantity": quantity,
            "reorder_point": reorder_point,
        },
    )


def inventory_expiring(
    product_id: str,
    expiry_date: date,
    product_name: str = "",
    source: str = "inventory-sweep",
) -> Event:
    return Event(
        event_type=EventName.INVENTORY_EXPIRING,
        source=source,
        payload={
            "product_id": product_id,
            "product_name": product_name,
            "expiry_date": expiry_date,
        },
    )


# =============================================================================
# Notification Events
# =============================================================================

def notification_created(notification: Notification, source: str = "notification-dispatcher") -> Event:
    return Event(
        event_type=EventName.NOTIFICATION_CREATED,
        source=source,
        payload={
            "notification_id": notification.id,
            "type": notification.type.value,
            "recipient_ids": notification.recipient_ids(),
        },
    )
