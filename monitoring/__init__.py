"""
Monitoring and alerting core.

- Services publish events on the in-process bus when something happens
- The error aggregator and the notification dispatcher subscribe and react
- The scheduler runs the recurring jobs that look for trouble
"""

from monitoring.error_aggregator import ErrorAggregator, classify_severity
from monitoring.event_bus import Event, EventBus, EventName
from monitoring.notification_dispatcher import DispatchResult, NotificationDispatcher
from monitoring.runtime import MonitoringRuntime, build_runtime
from monitoring.scheduler import CronSchedule, TaskScheduler

__all__ = [
    "CronSchedule",
    "DispatchResult",
    "ErrorAggregator",
    "Event",
    "EventBus",
    "EventName",
    "MonitoringRuntime",
    "NotificationDispatcher",
    "TaskScheduler",
    "build_runtime",
    "classify_severity",
]
