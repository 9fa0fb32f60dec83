"""
Notification dispatcher.

Creates notifications, tracks per-recipient read state and fans email out to
every recipient. It also subscribes to the monitoring events that should
reach a person (low stock, expiring stock, error thresholds, failed jobs)
and turns them into notifications.

Design decisions:
- Validation happens before anything is persisted: a rejected notification
  leaves no trace
- Fan-out is per recipient and isolated: one failing address never aborts
  the batch, every recipient gets its own DeliveryResult
- Recipients for event-driven notifications come from the user directory
  (subscriptions), never from the event payload
- When nobody is subscribed to a type the reaction is logged and skipped
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional, Union

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from monitoring.event_bus import Event, EventBus, EventName
from monitoring.events import notification_created
from shared.channels import DeliveryResult, EmailTransport
from shared.config import MonitoringConfig
from shared.errors import DeliveryError, NotFoundError, PersistenceError, ValidationError
from shared.models import (
    MAX_NOTIFICATION_LENGTH,
    Notification,
    NotificationType,
    Order,
    Product,
    RecipientState,
    utcnow,
)
from shared.repositories import NotificationRepository, UserDirectory
from shared.templates import TemplateRenderer, template_name_for

logger = logging.getLogger("notification_dispatcher")


SORTABLE_FIELDS = ("created_at", "type")
MAX_PAGE_SIZE = 100


@dataclass
class DispatchResult:
    """A persisted notification plus one delivery outcome per recipient."""
    notification: Notification
    deliveries: list[DeliveryResult] = field(default_factory=list)

    @property
    def failed_deliveries(self) -> list[DeliveryResult]:
        return [d for d in self.deliveries if not d.success]


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int
    has_more: bool


class NotificationPage(BaseModel):
    """One page of a user's notifications."""
    items: list[Notification] = Field(default_factory=list)
    pagination: Pagination


def _truncate(message: str) -> str:
    if len(message) <= MAX_NOTIFICATION_LENGTH:
        return message
    return message[:MAX_NOTIFICATION_LENGTH - 3] + "..."


def low_stock_message(name: str, quantity: int, reorder_point: int) -> str:
    if quantity == 0:
        return f"{name} is out of stock (reorder point {reorder_point})"
    return f"{name} is running low: {quantity} left (reorder point {reorder_point})"


class NotificationDispatcher:
    """
    Event-driven notification dispatcher.

    Example:
        dispatcher = NotificationDispatcher(repo, data_store, renderer, transport, bus)
        dispatcher.start()   # react to monitoring events

        result = dispatcher.create_notification(
            NotificationType.SYSTEM, "Maintenance at 22:00", ["user-001"], send_email=True,
        )
        dispatcher.mark_as_read(result.notification.id, "user-001")
    """

    def __init__(
        self,
        repository: NotificationRepository,
        users: UserDirectory,
        renderer: TemplateRenderer,
        transport: EmailTransport,
        event_bus: EventBus,
        config: Optional[MonitoringConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.users = users
        self.renderer = renderer
        self.transport = transport
        self.event_bus = event_bus
        self.config = config or MonitoringConfig()
        self._clock = clock

        self._started = False
        self._handlers: dict[EventName, Callable[[Event], None]] = {
            EventName.INVENTORY_LOW: self._handle_inventory_low,
            EventName.INVENTORY_EXPIRING: self._handle_inventory_expiring,
            EventName.ERROR_THRESHOLD_EXCEEDED: self._handle_threshold_exceeded,
            EventName.TASK_ERROR: self._handle_task_error,
            EventName.HEALTH_CHECK_FAILED: self._handle_health_check_failed,
            EventName.HIGH_MEMORY_USAGE: self._handle_high_memory_usage,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Subscribe to the events that produce notifications."""
        if self._started:
            logger.warning("NotificationDispatcher already started")
            return

        for event_name, handler in self._handlers.items():
            self.event_bus.subscribe(event_name, handler)

        self._started = True
        logger.info("NotificationDispatcher started - subscribed to events")

    def stop(self) -> None:
        if not self._started:
            return

        for event_name, handler in self._handlers.items():
            self.event_bus.unsubscribe(event_name, handler)

        self._started = False
        logger.info("NotificationDispatcher stopped")

    # =========================================================================
    # Creation and fan-out
    # =========================================================================

    def create_notification(
        self,
        notification_type: Union[NotificationType, str],
        message: str,
        recipient_ids: Iterable[str],
        send_email: bool = False,
        error_id: Optional[str] = None,
    ) -> DispatchResult:
        """
        Persist a notification with one unread entry per recipient and,
        optionally, email every recipient.

        Duplicate recipient ids are collapsed, keeping the first occurrence.

        Raises:
            ValidationError: Empty recipients, empty or over-long message,
                unknown type. Nothing is persisted.
            PersistenceError: If the notification cannot be stored
        """
        try:
            ntype = NotificationType(notification_type)
        except ValueError:
            raise ValidationError(f"Unknown notification type: {notification_type}")

        if isinstance(recipient_ids, str):
            raise ValidationError("Recipients must be a list of user ids, not a single string")
        recipients = list(dict.fromkeys(recipient_ids or ()))
        if not recipients:
            raise ValidationError("A notification needs at least one recipient")
        if not message or not message.strip():
            raise ValidationError("Notification message must not be empty")

        try:
            notification = Notification(
                type=ntype,
                message=message,
                created_at=self._clock(),
                recipients=[RecipientState(user_id=user_id) for user_id in recipients],
                error_id=error_id,
            )
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid notification: {e.errors()[0]['msg']}") from e

        try:
            self.repository.add(notification)
        except PersistenceError:
            raise
        except Exception as e:
            raise PersistenceError(f"Failed to store notification: {e}") from e

        logger.info(
            f"Created {ntype.value} notification {notification.id} "
            f"for {len(recipients)} recipient(s)"
        )

        deliveries = self._fan_out(notification) if send_email else []

        self.event_bus.publish(notification_created(notification))
        return DispatchResult(notification=notification, deliveries=deliveries)

    def _fan_out(self, notification: Notification) -> list[DeliveryResult]:
        """Send the notification to each recipient, isolating every failure."""
        template_name = template_name_for(notification.type)
        subject = None if template_name == "notification" else self.renderer.subject(template_name)
        if subject is None:
            subject = f"New Notification: {notification.type.value}"

        results = []
        for user_id in notification.recipient_ids():
            results.append(self._deliver(notification, user_id, template_name, subject))

        failed = sum(1 for r in results if not r.success)
        if failed:
            logger.warning(
                f"Notification {notification.id}: {failed} of {len(results)} deliveries failed"
            )
        return results

    def _deliver(
        self,
        notification: Notification,
        user_id: str,
        template_name: str,
        subject: str,
    ) -> DeliveryResult:
        address = user_id
        try:
            user = self.users.get_user(user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            address = user.email or user_id

            body = self.renderer.render(template_name, {
                "first_name": user.first_name,
                "last_name": user.last_name,
                "message": notification.message,
                "type": notification.type.value,
                "date": notification.created_at.strftime("%Y-%m-%d"),
            })
            result = self.transport.send(user.email, subject, body)
        except Exception as e:
            err = DeliveryError(address, str(e))
            logger.error(f"Failed to send notification {notification.id} to {user_id}: {err}")
            return DeliveryResult(
                success=False,
                recipient=address,
                subject=subject,
                user_id=user_id,
                error=str(err),
            )

        result.user_id = user_id
        if not result.success:
            err = DeliveryError(address, result.error or "unknown error")
            logger.error(f"Failed to send notification {notification.id} to {user_id}: {err}")
            result.error = str(err)
        return result

    # =========================================================================
    # Read state
    # =========================================================================

    def mark_as_read(self, notification_id: str, user_id: str) -> RecipientState:
        """
        Mark one recipient's entry as read.

        Idempotent: marking an already-read entry keeps its original read_at.

        Raises:
            NotFoundError: Unknown notification, or the user is not a recipient
        """
        if self.repository.get(notification_id) is None:
            raise NotFoundError(f"Notification not found: {notification_id}")

        state = self.repository.mark_read(notification_id, user_id, self._clock())
        if state is None:
            raise NotFoundError(f"Notification {notification_id} not assigned to user {user_id}")
        return state

    def mark_all_as_read(self, user_id: str) -> int:
        updated = self.repository.mark_all_read(user_id, self._clock())
        logger.info(f"Marked {updated} notification(s) read for {user_id}")
        return updated

    def get_unread_count(self, user_id: str) -> int:
        return self.repository.count_unread(user_id)

    # =========================================================================
    # Queries and maintenance
    # =========================================================================

    def list_notifications(
        self,
        user_id: str,
        read: Optional[bool] = None,
        notification_type: Optional[Union[NotificationType, str]] = None,
        sort_by: str = "created_at",
        order: str = "desc",
        page: int = 1,
        limit: int = 20,
    ) -> NotificationPage:
        """
        A page of the user's notifications.

        Raises:
            ValidationError: Bad sort field, order, page or limit
        """
        if sort_by not in SORTABLE_FIELDS:
            raise ValidationError(f"Cannot sort notifications by {sort_by!r}")
        if order.lower() not in ("asc", "desc"):
            raise ValidationError(f"Sort order must be 'asc' or 'desc', got {order!r}")
        if page < 1:
            raise ValidationError("page must be >= 1")
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")

        ntype = None
        if notification_type is not None:
            try:
                ntype = NotificationType(notification_type)
            except ValueError:
                raise ValidationError(f"Unknown notification type: {notification_type}")

        matches = self.repository.find_for_user(user_id, read=read, notification_type=ntype)
        if sort_by == "type":
            matches.sort(key=lambda n: n.type.value, reverse=order.lower() == "desc")
        else:
            matches.sort(key=lambda n: n.created_at, reverse=order.lower() == "desc")

        total = len(matches)
        total_pages = (total + limit - 1) // limit
        start = (page - 1) * limit
        return NotificationPage(
            items=matches[start:start + limit],
            pagination=Pagination(
                page=page,
                limit=limit,
                total=total,
                total_pages=total_pages,
                has_more=page < total_pages,
            ),
        )

    def delete_notification(self, notification_id: str) -> None:
        if not self.repository.delete(notification_id):
            raise NotFoundError(f"Notification not found: {notification_id}")
        logger.info(f"Deleted notification {notification_id}")

    def cleanup_read_notifications(self, older_than: Optional[datetime] = None) -> int:
        """Delete fully-read notifications created before the cutoff."""
        cutoff = older_than or self._clock() - self.config.notification_retention
        removed = self.repository.delete_read_older_than(cutoff)
        logger.info(f"Cleaned up {removed} read notifications older than {cutoff.isoformat()}")
        return removed

    # =========================================================================
    # Producers
    # =========================================================================

    def send_low_stock_alert(self, product: Product) -> Optional[DispatchResult]:
        """Notify LOW_STOCK subscribers about one product."""
        return self._notify_subscribers(
            NotificationType.LOW_STOCK,
            low_stock_message(product.name, product.quantity, product.reorder_point),
        )

    def send_order_update(self, order: Order) -> Optional[DispatchResult]:
        """Notify the order's owner of its current status, if they opted in."""
        user = self.users.get_user(order.user_id)
        if user is None:
            logger.error(f"User not found for order {order.order_number}: {order.user_id}")
            return None
        if not user.wants(NotificationType.ORDER_STATUS):
            logger.info(f"User {user.id} has disabled ORDER_STATUS notifications")
            return None

        return self.create_notification(
            NotificationType.ORDER_STATUS,
            f"Order {order.order_number} is now {order.status}",
            [user.id],
            send_email=self.config.email_enabled,
        )

    def _notify_subscribers(
        self,
        notification_type: NotificationType,
        message: str,
        error_id: Optional[str] = None,
    ) -> Optional[DispatchResult]:
        recipients = self.users.recipients_for(notification_type)
        if not recipients:
            logger.info(f"No subscribers for {notification_type.value}, skipping: {message}")
            return None

        return self.create_notification(
            notification_type,
            _truncate(message),
            recipients,
            send_email=self.config.email_enabled,
            error_id=error_id,
        )

    # =========================================================================
    # Event Handlers
    # =========================================================================

    def _handle_inventory_low(self, event: Event) -> None:
        payload = event.payload
        name = payload.get("product_name") or payload["product_id"]
        logger.info(f"Handling inventory:low for {payload['product_id']}")
        self._notify_subscribers(
            NotificationType.LOW_STOCK,
            low_stock_message(name, payload["quantity"], payload["reorder_point"]),
        )

    def _handle_inventory_expiring(self, event: Event) -> None:
        payload = event.payload
        name = payload.get("product_name") or payload["product_id"]
        logger.info(f"Handling inventory:expiring for {payload['product_id']}")
        self._notify_subscribers(
            NotificationType.QUALITY_ALERT,
            f"{name} expires on {payload['expiry_date']}",
        )

    def _handle_threshold_exceeded(self, event: Event) -> None:
        record = event.payload["error"]
        occurrences = event.payload["occurrences"]
        self._notify_subscribers(
            NotificationType.SYSTEM,
            f"Error threshold exceeded ({record.severity.value}, {occurrences} occurrences): "
            f"{record.type}: {record.message}",
            error_id=record.id,
        )

    def _handle_task_error(self, event: Event) -> None:
        self._notify_subscribers(
            NotificationType.SYSTEM,
            f"Scheduled task {event.payload['task']} failed: {event.payload['error']}",
        )

    def _handle_health_check_failed(self, event: Event) -> None:
        self._notify_subscribers(
            NotificationType.SYSTEM,
            f"Health check failed: {event.payload['error']}",
        )

    def _handle_high_memory_usage(self, event: Event) -> None:
        usage = event.payload["usage"]
        self._notify_subscribers(
            NotificationType.SYSTEM,
            f"High memory usage: {usage.get('ratio', 0):.0%} of system memory in use",
        )
