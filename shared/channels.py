"""
Email delivery channels.

The dispatcher talks to a transport through one method:
`send(address, subject, body) -> DeliveryResult`. Two transports exist:
- EmailChannel: logs messages and records them in memory (development, tests)
- SmtpEmailChannel: sends through an SMTP relay

Design decisions:
- Transports never raise for a failed send; they return a failed result
- Recent attempts are recorded, successful or not, for test assertions;
  the history is bounded so a long-running process does not grow it forever
- Failures can be simulated per recipient or by rate
"""

import logging
import random
import smtplib
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from email.mime.text import MIMEText
from typing import Iterable, Optional

from shared.config import SmtpSettings
from shared.models import utcnow

logger = logging.getLogger("notifications")


@dataclass
class DeliveryResult:
    """
    Result of one delivery attempt to one recipient.

    Captures success/failure and metadata for debugging and testing.
    """
    success: bool
    recipient: str
    subject: Optional[str]
    body: str = ""
    user_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def __str__(self) -> str:
        status = "sent" if self.success else "failed"
        return f"{status} EMAIL to {self.recipient}: {self.subject}"


class EmailTransport(ABC):
    """Anything that can deliver a rendered message to an address."""

    def __init__(self, max_history: int = 1000):
        self.sent_messages: deque[DeliveryResult] = deque(maxlen=max_history)
        self._history_lock = threading.Lock()

    @abstractmethod
    def send(self, to: str, subject: str, body: str) -> DeliveryResult: ...

    def _remember(self, result: DeliveryResult) -> DeliveryResult:
        with self._history_lock:
            self.sent_messages.append(result)
        return result

    def get_sent_count(self) -> int:
        return len(self.sent_messages)

    def get_history(self) -> list[DeliveryResult]:
        """Recent attempts, oldest first."""
        with self._history_lock:
            return list(self.sent_messages)

    def get_successful_sends(self) -> list[DeliveryResult]:
        return [m for m in self.get_history() if m.success]

    def find_message_to(self, recipient: str) -> Optional[DeliveryResult]:
        for msg in self.get_history():
            if msg.recipient == recipient:
                return msg
        return None

    def clear_history(self):
        with self._history_lock:
            self.sent_messages.clear()


class EmailChannel(EmailTransport):
    """
    Mock email channel.

    Logs email sends and tracks them for test assertions.
    Can simulate failures for testing error handling.
    """

    def __init__(
        self,
        fail_rate: float = 0.0,
        failing_recipients: Optional[Iterable[str]] = None,
        max_history: int = 1000,
    ):
        """
        Initialize the email channel.

        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
            failing_recipients: Addresses that always fail, for testing.
            max_history: How many recent attempts to keep in sent_messages.
        """
        super().__init__(max_history)
        self.fail_rate = fail_rate
        self.failing_recipients = set(failing_recipients or ())

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        if to in self.failing_recipients or random.random() < self.fail_rate:
            result = DeliveryResult(
                success=False,
                recipient=to,
                subject=subject,
                body=body,
                error="Simulated email delivery failure",
            )
            logger.error(f"[EMAIL FAILED] To: {to} | Subject: {subject} | Error: {result.error}")
        else:
            result = DeliveryResult(success=True, recipient=to, subject=subject, body=body)
            logger.info(f"[EMAIL] To: {to} | Subject: {subject}")
            logger.debug(f"[EMAIL BODY] {body}")

        return self._remember(result)


class SmtpEmailChannel(EmailTransport):
    """Sends mail through an SMTP relay using STARTTLS when a user is set."""

    def __init__(self, settings: SmtpSettings, timeout: float = 10.0, max_history: int = 1000):
        super().__init__(max_history)
        self.settings = settings
        self.timeout = timeout

    def send(self, to: str, subject: str, body: str) -> DeliveryResult:
        msg = MIMEText(body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.settings.from_name} <{self.settings.from_email}>"
        msg["To"] = to

        try:
            with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.timeout) as server:
                if self.settings.user:
                    server.starttls()
                    server.login(self.settings.user, self.settings.password)
                server.sendmail(self.settings.from_email, [to], msg.as_string())
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"[SMTP FAILED] To: {to} | Subject: {subject} | Error: {e}")
            return self._remember(DeliveryResult(
                success=False, recipient=to, subject=subject, body=body, error=str(e),
            ))

        logger.info(f"[SMTP] To: {to} | Subject: {subject}")
        return self._remember(DeliveryResult(success=True, recipient=to, subject=subject, body=body))

    def verify_connection(self) -> bool:
        """Check that the relay accepts connections."""
        try:
            with smtplib.SMTP(self.settings.host, self.settings.port, timeout=self.timeout) as server:
                server.noop()
            return True
        except (smtplib.SMTPException, OSError) as e:
            logger.error(f"SMTP connection verification failed: {e}")
            return False


def build_transport(settings: SmtpSettings) -> EmailTransport:
    """SMTP when a host is configured, otherwise the logging channel."""
    if settings.configured:
        return SmtpEmailChannel(settings)
    logger.info("No SMTP host configured, emails will only be logged")
    return EmailChannel()
