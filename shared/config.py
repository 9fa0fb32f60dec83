"""
Configuration for the monitoring core.

All knobs live in one validated Pydantic model. Values come from keyword
arguments (tests) or from the environment via `MonitoringConfig.from_env()`.
"""

import logging
import os
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from shared.models import Severity


LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"

# Environments where the default jobs must not be armed
EPHEMERAL_ENVIRONMENTS = {"test", "testing"}


def default_thresholds() -> dict[Severity, int]:
    return {
        Severity.CRITICAL: 1,   # immediate notification
        Severity.HIGH: 5,
        Severity.MEDIUM: 10,
        Severity.LOW: 20,
    }


class SmtpSettings(BaseModel):
    """Outgoing mail server settings."""
    host: str = ""
    port: int = Field(default=587, gt=0)
    user: str = ""
    password: str = ""
    from_email: str = "noreply@example.com"
    from_name: str = "Inventory System"

    @property
    def configured(self) -> bool:
        return bool(self.host)


class MonitoringConfig(BaseModel):
    """Every setting the scheduler, aggregator and dispatcher read."""

    environment: str = "development"
    scheduling_enabled: Optional[bool] = Field(
        default=None,
        description="Force default jobs on/off; derived from environment when unset"
    )

    # Error aggregation
    error_retention_days: int = Field(default=7, ge=1)
    severity_thresholds: dict[Severity, int] = Field(default_factory=default_thresholds)
    threshold_window_seconds: int = Field(default=3600, gt=0)

    # Notifications
    notification_retention_days: int = Field(default=90, ge=1)
    email_enabled: bool = True
    company_name: str = "Inventory Management System"
    smtp: SmtpSettings = Field(default_factory=SmtpSettings)

    # Jobs
    memory_pressure_ratio: float = Field(default=0.9, gt=0, le=1)
    expiry_warning_days: int = Field(default=30, ge=0)
    daily_cleanup_schedule: str = "0 0 * * *"
    inventory_sweep_schedule: str = "0 * * * *"
    health_check_schedule: str = "*/5 * * * *"

    log_level: str = "INFO"
    data_dir: Optional[Path] = None

    @field_validator("severity_thresholds")
    @classmethod
    def _complete_thresholds(cls, value: dict[Severity, int]) -> dict[Severity, int]:
        merged = default_thresholds()
        merged.update(value)
        for severity, threshold in merged.items():
            if threshold < 1:
                raise ValueError(f"threshold for {severity.value} must be >= 1")
        return merged

    @property
    def threshold_window(self) -> timedelta:
        return timedelta(seconds=self.threshold_window_seconds)

    @property
    def error_retention(self) -> timedelta:
        return timedelta(days=self.error_retention_days)

    @property
    def notification_retention(self) -> timedelta:
        return timedelta(days=self.notification_retention_days)

    @property
    def default_jobs_enabled(self) -> bool:
        if self.scheduling_enabled is not None:
            return self.scheduling_enabled
        return self.environment.lower() not in EPHEMERAL_ENVIRONMENTS

    def threshold_for(self, severity: Severity) -> int:
        return self.severity_thresholds[severity]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "MonitoringConfig":
        """
        Build a config from environment variables.

        Unset variables keep the model defaults; malformed values raise
        pydantic's ValidationError.
        """
        env = os.environ if environ is None else environ
        values: dict = {}

        simple = {
            "APP_ENV": "environment",
            "SCHEDULING_ENABLED": "scheduling_enabled",
            "ERROR_RETENTION_DAYS": "error_retention_days",
            "THRESHOLD_WINDOW_SECONDS": "threshold_window_seconds",
            "NOTIFICATION_RETENTION_DAYS": "notification_retention_days",
            "EMAIL_ENABLED": "email_enabled",
            "COMPANY_NAME": "company_name",
            "MEMORY_PRESSURE_RATIO": "memory_pressure_ratio",
            "EXPIRY_WARNING_DAYS": "expiry_warning_days",
            "DAILY_CLEANUP_SCHEDULE": "daily_cleanup_schedule",
            "INVENTORY_SWEEP_SCHEDULE": "inventory_sweep_schedule",
            "HEALTH_CHECK_SCHEDULE": "health_check_schedule",
            "LOG_LEVEL": "log_level",
            "DATA_DIR": "data_dir",
        }
        for var, field_name in simple.items():
            if env.get(var):
                values[field_name] = env[var]

        thresholds = {}
        for severity in Severity:
            raw = env.get(f"THRESHOLD_{severity.name}")
            if raw:
                thresholds[severity] = int(raw)
        if thresholds:
            values["severity_thresholds"] = thresholds

        smtp = {}
        for var, field_name in {
            "SMTP_HOST": "host",
            "SMTP_PORT": "port",
            "SMTP_USER": "user",
            "SMTP_PASS": "password",
            "SMTP_FROM_EMAIL": "from_email",
            "SMTP_FROM_NAME": "from_name",
        }.items():
            if env.get(var):
                smtp[field_name] = env[var]
        if smtp:
            values["smtp"] = smtp

        return cls(**values)


def configure_logging(level: str = "INFO") -> None:
    """Process-wide logging setup shared by the API and the CLI."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%H:%M:%S",
    )
