"""
Operator HTTP surface for the monitoring core.

This application provides thin adapters over the runtime services:
1. Notification endpoints (/notifications/...)
2. Error statistics and trends (/errors/...)
3. Scheduled task control (/tasks/...)
4. A health check that reflects the scheduler and storage state

The acting user is given by the X-User-Id header; authentication happens
upstream.

Run with:
    uv run uvicorn api.main:app --reload

Then visit http://localhost:8000/docs for interactive API documentation.
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from monitoring.error_aggregator import ErrorStatistics
from monitoring.notification_dispatcher import NotificationPage
from monitoring.runtime import MonitoringRuntime, build_runtime
from monitoring.scheduler import TaskRun, TaskSnapshot
from shared.config import configure_logging
from shared.errors import MonitoringError
from shared.models import Notification, NotificationType, RecipientState

configure_logging(os.environ.get("LOG_LEVEL", "INFO"))

logger = logging.getLogger("api")


# Module-level runtime (swapped out by tests through reset_runtime)
_runtime: Optional[MonitoringRuntime] = None


def get_runtime() -> MonitoringRuntime:
    """Get the monitoring runtime instance."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def reset_runtime(runtime: Optional[MonitoringRuntime] = None) -> None:
    """Replace the runtime (for testing)."""
    global _runtime
    _runtime = runtime


# =============================================================================
# Request / Response models
# =============================================================================

class CreateNotificationRequest(BaseModel):
    type: NotificationType
    message: str
    user_ids: list[str] = Field(default_factory=list)
    send_email: bool = False


class DeliveryOutcome(BaseModel):
    user_id: Optional[str]
    recipient: str
    success: bool
    error: Optional[str] = None


class CreateNotificationResponse(BaseModel):
    notification: Notification
    deliveries: list[DeliveryOutcome]


class CountResponse(BaseModel):
    count: int


# Application lifespan
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the monitoring runtime with the app and stop it on shutdown."""
    logger.info("Starting Inventory Monitoring API")
    runtime = get_runtime()
    runtime.start()
    yield
    logger.info("Shutting down")
    runtime.stop()


app = FastAPI(
    title="Inventory Monitoring API",
    description="""
    Operator surface for the monitoring and alerting core.

    - `/notifications` - per-user notifications and read state
    - `/errors` - tracked error statistics and trends
    - `/tasks` - scheduled task status and control
    """,
    version="1.0.0",
    lifespan=lifespan,
)


@app.exception_handler(MonitoringError)
async def handle_monitoring_error(request: Request, exc: MonitoringError) -> JSONResponse:
    status = exc.status or 500
    if status >= 500:
        get_runtime().aggregator.track_error(exc, {"path": request.url.path, "method": request.method})
    return JSONResponse(status_code=status, content={"detail": exc.message})


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


# =============================================================================
# Health Check
# =============================================================================

@app.get("/health", tags=["Health"])
def health_check(runtime: MonitoringRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Health check endpoint."""
    storage = "ok"
    try:
        runtime.data_store.ping()
    except MonitoringError as e:
        storage = e.message

    return {
        "status": "healthy" if storage == "ok" else "degraded",
        "environment": runtime.config.environment,
        "scheduler_running": runtime.scheduler.is_running,
        "tasks": len(runtime.scheduler.list_tasks()),
        "storage": storage,
    }


# =============================================================================
# Notifications
# =============================================================================

@app.get("/notifications", response_model=NotificationPage, tags=["Notifications"])
def list_notifications(
    x_user_id: str = Header(...),
    read: Optional[bool] = None,
    notification_type: Optional[NotificationType] = Query(default=None, alias="type"),
    sort_by: str = "created_at",
    order: str = "desc",
    page: int = 1,
    limit: int = 20,
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    """Notifications addressed to the current user."""
    return runtime.dispatcher.list_notifications(
        x_user_id,
        read=read,
        notification_type=notification_type,
        sort_by=sort_by,
        order=order,
        page=page,
        limit=limit,
    )


@app.post(
    "/notifications",
    response_model=CreateNotificationResponse,
    status_code=201,
    tags=["Notifications"],
)
def create_notification(
    request: CreateNotificationRequest,
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    """Create a notification and optionally email every recipient."""
    result = runtime.dispatcher.create_notification(
        request.type,
        request.message,
        request.user_ids,
        send_email=request.send_email,
    )
    return CreateNotificationResponse(
        notification=result.notification,
        deliveries=[
            DeliveryOutcome(
                user_id=d.user_id,
                recipient=d.recipient,
                success=d.success,
                error=d.error,
            )
            for d in result.deliveries
        ],
    )


@app.put("/notifications/read-all", response_model=CountResponse, tags=["Notifications"])
def mark_all_as_read(
    x_user_id: str = Header(...),
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    return CountResponse(count=runtime.dispatcher.mark_all_as_read(x_user_id))


@app.get("/notifications/unread-count", response_model=CountResponse, tags=["Notifications"])
def get_unread_count(
    x_user_id: str = Header(...),
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    return CountResponse(count=runtime.dispatcher.get_unread_count(x_user_id))


@app.put("/notifications/{notification_id}/read", response_model=RecipientState, tags=["Notifications"])
def mark_as_read(
    notification_id: str,
    x_user_id: str = Header(...),
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    return runtime.dispatcher.mark_as_read(notification_id, x_user_id)


@app.delete("/notifications/{notification_id}", status_code=204, tags=["Notifications"])
def delete_notification(
    notification_id: str,
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    runtime.dispatcher.delete_notification(notification_id)


# =============================================================================
# Errors
# =============================================================================

@app.get("/errors/statistics", response_model=ErrorStatistics, tags=["Errors"])
def error_statistics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    group_by: str = "type",
    runtime: MonitoringRuntime = Depends(get_runtime),
):
    """Tracked error counts by severity, type and a chosen field."""
    return runtime.aggregator.get_statistics(_as_utc(start), _as_utc(end), group_by)


@app.get("/errors/trends", tags=["Errors"])
def error_trends(
    period: str = "24h",
    group_by: str = "hour",
    runtime: MonitoringRuntime = Depends(get_runtime),
) -> dict[str, int]:
    """Error counts per hour, day, ISO week or month."""
    return runtime.aggregator.get_trends(period, group_by)


# =============================================================================
# Scheduled tasks
# =============================================================================

@app.get("/tasks", response_model=list[TaskSnapshot], tags=["Tasks"])
def list_tasks(runtime: MonitoringRuntime = Depends(get_runtime)):
    return runtime.scheduler.list_tasks()


@app.post("/tasks/{name}/run", response_model=TaskRun, tags=["Tasks"])
def run_task(name: str, runtime: MonitoringRuntime = Depends(get_runtime)):
    """Fire a task now. Skipped if it is already running."""
    return runtime.scheduler.fire(name)


@app.post("/tasks/{name}/stop", response_model=TaskSnapshot, tags=["Tasks"])
def stop_task(name: str, runtime: MonitoringRuntime = Depends(get_runtime)):
    runtime.scheduler.stop(name)
    return runtime.scheduler.get_task(name).snapshot()


@app.post("/tasks/{name}/start", response_model=TaskSnapshot, tags=["Tasks"])
def start_task(name: str, runtime: MonitoringRuntime = Depends(get_runtime)):
    runtime.scheduler.start(name)
    return runtime.scheduler.get_task(name).snapshot()
