"""
The default recurring jobs.

- daily-cleanup  (0 0 * * *)   error retention, read-notification retention,
                               daily report
- hourly-checks  (0 * * * *)   low-stock and expiry sweeps
- health-check   (*/5 * * * *) memory pressure and storage reachability

Jobs only query state and publish events; the aggregator and the dispatcher
decide what happens next. A job that fails raises, and the scheduler turns
that into `system:task_error`.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

import psutil

from monitoring.error_aggregator import ErrorAggregator
from monitoring.event_bus import EventBus
from monitoring.events import (
    daily_report,
    health_check_failed,
    high_memory_usage,
    inventory_expiring,
    inventory_low,
)
from monitoring.notification_dispatcher import NotificationDispatcher
from monitoring.scheduler import TaskScheduler
from shared.config import MonitoringConfig
from shared.models import utcnow
from shared.repositories import InventoryRepository, StorageProbe

logger = logging.getLogger("jobs")


DAILY_CLEANUP = "daily-cleanup"
HOURLY_CHECKS = "hourly-checks"
HEALTH_CHECK = "health-check"

MemoryProbe = Callable[[], dict[str, Any]]


def read_memory_usage() -> dict[str, Any]:
    """System memory usage; `ratio` is the share of memory in use (0..1)."""
    memory = psutil.virtual_memory()
    return {
        "total": memory.total,
        "available": memory.available,
        "used": memory.total - memory.available,
        "ratio": round(memory.percent / 100, 4),
    }


class DefaultJobs:
    """
    Handlers for the default scheduled tasks.

    Collaborators are injected so each job can be exercised directly in
    tests without a running scheduler.
    """

    def __init__(
        self,
        aggregator: ErrorAggregator,
        dispatcher: NotificationDispatcher,
        inventory: InventoryRepository,
        storage: StorageProbe,
        event_bus: EventBus,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
        memory_probe: MemoryProbe = read_memory_usage,
    ):
        self.aggregator = aggregator
        self.dispatcher = dispatcher
        self.inventory = inventory
        self.storage = storage
        self.event_bus = event_bus
        self.config = config or MonitoringConfig()
        self._clock = clock
        self._memory_probe = memory_probe

    # =========================================================================
    # daily-cleanup
    # =========================================================================

    def cleanup_and_report(self) -> dict[str, Any]:
        """Apply retention to errors and read notifications, then report the last 24h."""
        now = self._clock()
        errors_removed = self.aggregator.cleanup(now)
        notifications_removed = self.dispatcher.cleanup_read_notifications(
            now - self.config.notification_retention
        )

        start = now - timedelta(hours=24)
        stats = self.aggregator.get_statistics(start, now)
        report = {
            "generated_at": now.isoformat(),
            "period": {"start": start.isoformat(), "end": now.isoformat()},
            "errors": stats.model_dump(),
            "errors_removed": errors_removed,
            "notifications_removed": notifications_removed,
        }

        logger.info(
            f"Daily report: {stats.total} errors in the last 24h "
            f"({errors_removed} old errors and {notifications_removed} read notifications removed)"
        )
        self.event_bus.publish(daily_report(report))
        return report

    # =========================================================================
    # hourly-checks
    # =========================================================================

    def inventory_sweep(self) -> dict[str, int]:
        """Publish one event per low-stock product and per product nearing expiry."""
        low_stock = self.inventory.find_low_stock()
        for product in low_stock:
            self.event_bus.publish(inventory_low(
                product_id=product.id,
                product_name=product.name,
                quantity=product.quantity,
                reorder_point=product.reorder_point,
            ))

        today = self._clock().date()
        until = today + timedelta(days=self.config.expiry_warning_days)
        expiring = self.inventory.find_expiring(today, until)
        for product in expiring:
            self.event_bus.publish(inventory_expiring(
                product_id=product.id,
                product_name=product.name,
                expiry_date=product.expiry_date,
            ))

        logger.info(f"Inventory sweep: {len(low_stock)} low stock, {len(expiring)} expiring")
        return {"low_stock": len(low_stock), "expiring": len(expiring)}

    # =========================================================================
    # health-check
    # =========================================================================

    def health_probe(self) -> dict[str, Any]:
        """
        Check memory pressure and storage reachability.

        Raises:
            Exception: Whatever the storage ping raised, after publishing
                `system:health_check_failed`
        """
        usage = self._memory_probe()
        if usage["ratio"] > self.config.memory_pressure_ratio:
            logger.warning(f"High memory usage: {usage['ratio']:.0%}")
            self.event_bus.publish(high_memory_usage(usage))

        try:
            self.storage.ping()
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            self.event_bus.publish(health_check_failed(str(e)))
            raise

        return {"memory": usage, "storage": "ok"}


def register_default_jobs(
    scheduler: TaskScheduler,
    jobs: DefaultJobs,
    config: MonitoringConfig,
) -> list[str]:
    """
    Register the default jobs unless scheduling is disabled.

    Returns:
        Names of the tasks registered (empty when disabled)
    """
    if not config.default_jobs_enabled:
        logger.info(f"Default jobs disabled (environment={config.environment})")
        return []

    scheduler.register(DAILY_CLEANUP, config.daily_cleanup_schedule, jobs.cleanup_and_report)
    scheduler.register(HOURLY_CHECKS, config.inventory_sweep_schedule, jobs.inventory_sweep)
    scheduler.register(HEALTH_CHECK, config.health_check_schedule, jobs.health_probe)
    return [DAILY_CLEANUP, HOURLY_CHECKS, HEALTH_CHECK]
