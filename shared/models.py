"""
Domain models for the monitoring and alerting core.

Design decisions:
- Using Pydantic for validation and serialization
- Error records are frozen: they are written once and only ever deleted
- Inventory entities (Product, User, Order) are read-only views of data owned
  by the CRUD backend; we only model the fields the monitoring jobs need
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


MAX_NOTIFICATION_LENGTH = 500


def utcnow() -> datetime:
    """Timezone-aware current UTC time used throughout the core."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================

class Severity(str, Enum):
    """
    Coarse priority of a tracked error.
    Each severity has its own occurrence threshold (see MonitoringConfig).
    """
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class NotificationType(str, Enum):
    """Kinds of notifications users can receive."""
    LOW_STOCK = "LOW_STOCK"
    STOCK_OUT = "STOCK_OUT"
    PRICE_CHANGE = "PRICE_CHANGE"
    NEW_SHIPMENT = "NEW_SHIPMENT"
    ORDER_STATUS = "ORDER_STATUS"
    QUALITY_ALERT = "QUALITY_ALERT"
    SYSTEM = "SYSTEM"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


# =============================================================================
# Error tracking
# =============================================================================

class ErrorRecord(BaseModel):
    """
    A single tracked error occurrence.

    Owned by the ErrorAggregator. Records are immutable once created and are
    removed only by retention cleanup.
    """
    id: str = Field(default_factory=new_id)
    type: str = Field(..., description="Classifier, usually the exception class name")
    message: str
    severity: Severity
    timestamp: datetime = Field(default_factory=utcnow)
    stack: Optional[str] = None
    context: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> tuple[str, str]:
        """Threshold counter key."""
        return (self.type, self.message)


# =============================================================================
# Notifications
# =============================================================================

class RecipientState(BaseModel):
    """Per-recipient read state of a notification."""
    user_id: str
    is_read: bool = False
    read_at: Optional[datetime] = None


class Notification(BaseModel):
    """
    A notification addressed to one or more users.

    Read state is tracked independently per recipient. The message length
    and the non-empty recipient list are enforced here, at creation.
    """
    id: str = Field(default_factory=new_id)
    type: NotificationType
    message: str = Field(..., min_length=1, max_length=MAX_NOTIFICATION_LENGTH)
    created_at: datetime = Field(default_factory=utcnow)
    recipients: list[RecipientState] = Field(..., min_length=1)
    error_id: Optional[str] = Field(
        default=None,
        description="Triggering ErrorRecord, informational only"
    )

    @field_validator("recipients")
    @classmethod
    def _unique_recipients(cls, value: list[RecipientState]) -> list[RecipientState]:
        seen = set()
        for state in value:
            if state.user_id in seen:
                raise ValueError(f"duplicate recipient: {state.user_id}")
            seen.add(state.user_id)
        return value

    def recipient(self, user_id: str) -> Optional[RecipientState]:
        for state in self.recipients:
            if state.user_id == user_id:
                return state
        return None

    def recipient_ids(self) -> list[str]:
        return [state.user_id for state in self.recipients]

    def is_fully_read(self) -> bool:
        return all(state.is_read for state in self.recipients)


# =============================================================================
# Inventory (read-only, owned by the CRUD backend)
# =============================================================================

class Product(BaseModel):
    """Product entity with the stock fields the inventory sweep needs."""
    id: str = Field(..., description="Unique product identifier")
    name: str
    sku: Optional[str] = None
    quantity: int = Field(default=0, ge=0)
    reorder_point: int = Field(default=0, ge=0)
    expiry_date: Optional[date] = None
    is_active: bool = True

    def is_low_stock(self) -> bool:
        return self.is_active and self.quantity <= self.reorder_point


class User(BaseModel):
    """
    A user who can receive notifications.

    `subscriptions` lists the notification types the user opted into; it is
    what the dispatcher's preference lookup consults.
    """
    id: str
    email: str
    first_name: str
    last_name: str = ""
    role: str = "STAFF"
    subscriptions: list[NotificationType] = Field(default_factory=list)

    def wants(self, notification_type: NotificationType) -> bool:
        return notification_type in self.subscriptions


class Order(BaseModel):
    """Order summary used for ORDER_STATUS notifications."""
    id: str
    order_number: str
    user_id: str
    status: OrderStatus = OrderStatus.PENDING

    model_config = ConfigDict(use_enum_values=True)
