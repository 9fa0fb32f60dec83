"""
Error taxonomy for the monitoring core.

Caller mistakes (ValidationError, NotFoundError, InvalidScheduleError,
DuplicateTaskError) propagate to the immediate caller. Background failures
(SchedulerTaskError, DeliveryError, PersistenceError on the tracking path)
are caught and logged at their local boundary.
"""

from typing import Any, Optional


class MonitoringError(Exception):
    """Base class for all monitoring core errors."""

    status: Optional[int] = None

    def __init__(self, message: str, **metadata: Any):
        super().__init__(message)
        self.message = message
        self.metadata = metadata


class ValidationError(MonitoringError):
    """Bad input to a dispatcher or aggregator operation."""
    status = 400


class NotFoundError(MonitoringError):
    """A referenced entity does not exist."""
    status = 404


class InvalidScheduleError(MonitoringError):
    """A schedule expression could not be parsed."""
    status = 400

    def __init__(self, expression: str):
        super().__init__(f"Invalid cron expression: {expression!r}", expression=expression)
        self.expression = expression


class DuplicateTaskError(MonitoringError):
    """A task with the same name is already registered."""
    status = 409

    def __init__(self, name: str):
        super().__init__(f"Task already registered: {name}", task=name)
        self.name = name


class SchedulerTaskError(MonitoringError):
    """
    A scheduled job handler failed.

    Never raised out of the scheduler; built from the `system:task_error`
    payload so the failure can be tracked like any other error.
    """
    status = 500

    def __init__(self, task: str, error: str):
        super().__init__(f"Scheduled task {task} failed: {error}", task=task)
        self.task = task
        self.error = error


class PersistenceError(MonitoringError):
    """A storage call failed."""
    status = 503


class DeliveryError(MonitoringError):
    """A single recipient's message could not be sent."""

    def __init__(self, recipient: str, reason: str):
        super().__init__(f"Delivery to {recipient} failed: {reason}", recipient=recipient)
        self.recipient = recipient
        self.reason = reason
