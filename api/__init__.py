"""
HTTP API for the monitoring core.

This package provides a single FastAPI application that exposes:
- Notification listing, creation and read state
- Error statistics and trends
- Scheduled task status and control
"""

from api.main import app

__all__ = ["app"]
