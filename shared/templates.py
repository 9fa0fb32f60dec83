"""
Notification email templates.

Templates are simple strings with {variable} placeholders rendered with
Python's string formatting. The dispatcher only sees the renderer interface
`render(template_name, data) -> body` plus `subject(template_name)`; a Jinja2
or database-backed renderer could replace this one without touching the core.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from shared.models import NotificationType


@dataclass
class NotificationTemplate:
    """A named email template with a default subject and a body."""
    name: str
    subject: str
    body: str

    def render(self, **kwargs) -> str:
        return self.body.format(**kwargs)


# =============================================================================
# Template Definitions
# =============================================================================

TEMPLATES: dict[str, NotificationTemplate] = {

    "notification": NotificationTemplate(
        name="notification",
        subject="New Notification",
        body="""Hi {first_name},

You have a new {type} notification:

{message}

Sent on {date}.

{company_name} (c) {year}
""",
    ),

    "low_stock": NotificationTemplate(
        name="low_stock",
        subject="Low Stock Alert",
        body="""Hi {first_name},

Stock is running low:

{message}

Please review the reorder settings for the affected products.

{company_name} (c) {year}
""",
    ),

    "order_status": NotificationTemplate(
        name="order_status",
        subject="Order Status Update",
        body="""Hi {first_name},

{message}

Sent on {date}.

{company_name} (c) {year}
""",
    ),

    "quality_alert": NotificationTemplate(
        name="quality_alert",
        subject="Quality Control Alert",
        body="""Hi {first_name},

A quality control alert was raised:

{message}

Please inspect the affected stock before it ships.

{company_name} (c) {year}
""",
    ),
}


# Which template each notification type is delivered with
TEMPLATE_FOR_TYPE: dict[NotificationType, str] = {
    NotificationType.LOW_STOCK: "low_stock",
    NotificationType.STOCK_OUT: "low_stock",
    NotificationType.ORDER_STATUS: "order_status",
    NotificationType.QUALITY_ALERT: "quality_alert",
}


def get_template(name: str) -> Optional[NotificationTemplate]:
    """Get a template by name."""
    return TEMPLATES.get(name)


def template_name_for(notification_type: NotificationType) -> str:
    return TEMPLATE_FOR_TYPE.get(notification_type, "notification")


class TemplateRenderer:
    """
    Renders a template name plus data into a deliverable message body.

    Common variables (year, company name) are filled in here so callers only
    pass what is specific to the message.
    """

    def __init__(
        self,
        templates: Optional[dict[str, NotificationTemplate]] = None,
        company_name: str = "Inventory Management System",
    ):
        self.templates = templates if templates is not None else TEMPLATES
        self.company_name = company_name

    def render(self, template_name: str, data: dict[str, Any]) -> str:
        """
        Render a template.

        Raises:
            ValueError: If the template does not exist
            KeyError: If the template needs a variable missing from data
        """
        template = self.templates.get(template_name)
        if not template:
            raise ValueError(f"No template found: {template_name}")

        context = {
            "year": datetime.now(timezone.utc).year,
            "company_name": self.company_name,
            **data,
        }
        return template.render(**context)

    def subject(self, template_name: str) -> Optional[str]:
        """Default subject of a template, or None if it does not exist."""
        template = self.templates.get(template_name)
        return template.subject if template else None
