"""
Tests for the email transports.

These tests verify that the mock channel records recent attempts and that the
SMTP channel turns relay errors into failed results.
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from shared.channels import (
    DeliveryResult,
    EmailChannel,
    SmtpEmailChannel,
    build_transport,
)
from shared.config import SmtpSettings


class TestEmailChannel:
    """Tests for the mock email channel."""

    def test_send_success(self, email_channel: EmailChannel):
        result = email_channel.send("alice@example.com", "Subject", "Body")

        assert result.success
        assert result.recipient == "alice@example.com"
        assert result.error is None
        assert email_channel.get_sent_count() == 1

    def test_send_logs_message(self, email_channel: EmailChannel, caplog):
        with caplog.at_level("INFO", logger="notifications"):
            email_channel.send("alice@example.com", "Low Stock Alert", "Body")

        assert "[EMAIL] To: alice@example.com" in caplog.text

    def test_failing_recipient(self):
        channel = EmailChannel(failing_recipients=["bad@example.com"])

        ok = channel.send("good@example.com", "S", "B")
        bad = channel.send("bad@example.com", "S", "B")

        assert ok.success
        assert not bad.success
        assert bad.error == "Simulated email delivery failure"
        assert len(channel.get_successful_sends()) == 1
        assert channel.get_sent_count() == 2

    def test_fail_rate_one_always_fails(self):
        channel = EmailChannel(fail_rate=1.0)
        assert not channel.send("x@example.com", "S", "B").success

    def test_find_message_to(self, email_channel: EmailChannel):
        email_channel.send("a@example.com", "First", "B")
        email_channel.send("b@example.com", "Second", "B")

        assert email_channel.find_message_to("b@example.com").subject == "Second"
        assert email_channel.find_message_to("c@example.com") is None

    def test_clear_history(self, email_channel: EmailChannel):
        email_channel.send("a@example.com", "S", "B")
        email_channel.clear_history()
        assert email_channel.get_sent_count() == 0

    def test_history_is_bounded(self):
        channel = EmailChannel(max_history=100)

        for i in range(250):
            channel.send(f"user{i}@example.com", "S", "B")

        assert channel.get_sent_count() == 100
        assert channel.get_history()[0].recipient == "user150@example.com"
        assert channel.find_message_to("user0@example.com") is None

    def test_default_history_bound(self, email_channel: EmailChannel):
        for i in range(1200):
            email_channel.send(f"user{i}@example.com", "S", "B")

        assert email_channel.get_sent_count() == 1000

    def test_result_str(self):
        result = DeliveryResult(success=False, recipient="a@example.com", subject="Hello")
        assert str(result) == "failed EMAIL to a@example.com: Hello"


class TestSmtpEmailChannel:
    """Tests for the SMTP channel with smtplib patched out."""

    @pytest.fixture
    def settings(self) -> SmtpSettings:
        return SmtpSettings(host="smtp.example.com", port=2525, user="mailer", password="secret")

    def test_send_uses_starttls_and_login(self, settings: SmtpSettings):
        server = MagicMock()
        with patch("shared.channels.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            result = SmtpEmailChannel(settings).send("alice@example.com", "Hello", "Body")

        assert result.success
        smtp.assert_called_once_with("smtp.example.com", 2525, timeout=10.0)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        args = server.sendmail.call_args.args
        assert args[0] == settings.from_email
        assert args[1] == ["alice@example.com"]
        assert "Subject: Hello" in args[2]

    def test_send_without_user_skips_login(self):
        server = MagicMock()
        with patch("shared.channels.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            SmtpEmailChannel(SmtpSettings(host="relay")).send("a@example.com", "S", "B")

        server.starttls.assert_not_called()
        server.login.assert_not_called()

    def test_relay_error_is_failed_result(self, settings: SmtpSettings):
        with patch("shared.channels.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
            channel = SmtpEmailChannel(settings)
            result = channel.send("alice@example.com", "Hello", "Body")

        assert not result.success
        assert "busy" in result.error
        assert channel.get_sent_count() == 1

    def test_verify_connection_failure(self, settings: SmtpSettings):
        with patch("shared.channels.smtplib.SMTP", side_effect=OSError("refused")):
            assert SmtpEmailChannel(settings).verify_connection() is False

    def test_history_is_bounded(self, settings: SmtpSettings):
        with patch("shared.channels.smtplib.SMTP"):
            channel = SmtpEmailChannel(settings, max_history=3)
            for i in range(5):
                channel.send(f"user{i}@example.com", "S", "B")

        assert [m.recipient for m in channel.get_history()] == [
            "user2@example.com", "user3@example.com", "user4@example.com",
        ]


class TestBuildTransport:
    def test_without_host_uses_logging_channel(self):
        assert isinstance(build_transport(SmtpSettings()), EmailChannel)

    def test_with_host_uses_smtp(self):
        assert isinstance(build_transport(SmtpSettings(host="relay")), SmtpEmailChannel)
