"""
Wiring for the monitoring core.

MonitoringRuntime constructs every service with its collaborators and owns
the lifecycle: start() subscribes the reactions, registers the default jobs
and starts the scheduler thread; stop() undoes it in reverse order.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from monitoring.error_aggregator import ErrorAggregator
from monitoring.event_bus import EventBus
from monitoring.jobs import DefaultJobs, register_default_jobs
from monitoring.notification_dispatcher import NotificationDispatcher
from monitoring.scheduler import TaskScheduler
from shared.channels import EmailTransport, build_transport
from shared.config import MonitoringConfig
from shared.data_store import DataStore
from shared.repositories import (
    InMemoryErrorRecordRepository,
    InMemoryNotificationRepository,
    InMemoryTaskMetadataStore,
)
from shared.templates import TemplateRenderer

logger = logging.getLogger("runtime")


@dataclass
class MonitoringRuntime:
    """Every service of the monitoring core, wired together."""
    config: MonitoringConfig
    event_bus: EventBus
    data_store: DataStore
    transport: EmailTransport
    scheduler: TaskScheduler
    aggregator: ErrorAggregator
    dispatcher: NotificationDispatcher
    jobs: DefaultJobs
    started: bool = False

    def start(self, run_scheduler: bool = True) -> None:
        """
        Subscribe reactions, register the default jobs and start the timer.

        Args:
            run_scheduler: Start the scheduler thread. The CLI passes False
                to fire tasks by hand.
        """
        if self.started:
            logger.warning("Monitoring runtime already started")
            return

        self.aggregator.attach()
        self.dispatcher.start()
        if not self.scheduler.list_tasks():
            register_default_jobs(self.scheduler, self.jobs, self.config)
        if run_scheduler:
            self.scheduler.run_in_background()

        self.started = True
        logger.info(f"Monitoring runtime started (environment={self.config.environment})")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        if not self.started:
            return

        self.scheduler.shutdown(wait=True, timeout=timeout)
        self.dispatcher.stop()
        self.aggregator.detach()

        self.started = False
        logger.info("Monitoring runtime stopped")


def build_runtime(
    config: Optional[MonitoringConfig] = None,
    data_store: Optional[DataStore] = None,
    transport: Optional[EmailTransport] = None,
) -> MonitoringRuntime:
    """Construct the services with in-memory storage and the configured transport."""
    config = config or MonitoringConfig.from_env()
    data_store = data_store or DataStore(config.data_dir)
    transport = transport or build_transport(config.smtp)

    event_bus = EventBus()
    scheduler = TaskScheduler(event_bus, metadata_store=InMemoryTaskMetadataStore())
    aggregator = ErrorAggregator(InMemoryErrorRecordRepository(), event_bus, config)
    dispatcher = NotificationDispatcher(
        repository=InMemoryNotificationRepository(),
        users=data_store,
        renderer=TemplateRenderer(company_name=config.company_name),
        transport=transport,
        event_bus=event_bus,
        config=config,
    )
    jobs = DefaultJobs(
        aggregator=aggregator,
        dispatcher=dispatcher,
        inventory=data_store,
        storage=data_store,
        event_bus=event_bus,
        config=config,
    )

    return MonitoringRuntime(
        config=config,
        event_bus=event_bus,
        data_store=data_store,
        transport=transport,
        scheduler=scheduler,
        aggregator=aggregator,
        dispatcher=dispatcher,
        jobs=jobs,
    )
