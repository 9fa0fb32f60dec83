"""
Shared infrastructure for the monitoring core.

- Domain models (ErrorRecord, Notification, Product, User, Order)
- Configuration and the error taxonomy
- Repository interfaces with in-memory implementations
- JSON-backed inventory data store
- Email transports and notification templates
"""

from shared.channels import DeliveryResult, EmailChannel, SmtpEmailChannel
from shared.config import MonitoringConfig
from shared.data_store import DataStore
from shared.models import (
    ErrorRecord,
    Notification,
    NotificationType,
    Order,
    Product,
    RecipientState,
    Severity,
    User,
)

__all__ = [
    "DataStore",
    "DeliveryResult",
    "EmailChannel",
    "ErrorRecord",
    "MonitoringConfig",
    "Notification",
    "NotificationType",
    "Order",
    "Product",
    "RecipientState",
    "Severity",
    "SmtpEmailChannel",
    "User",
]
