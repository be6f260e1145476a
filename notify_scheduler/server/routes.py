from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from notify_scheduler.models import (
    DispatchSummary,
    NotificationType,
    Phase,
    QueueResult,
    QueueStats,
    SchedulerStatus,
    TickReport,
)
from notify_scheduler.scheduler import NotificationScheduler

router = APIRouter()


class QueueRequest(BaseModel):
    user_id: str
    notification_type: NotificationType
    payload: dict[str, Any] = Field(default_factory=dict)


def get_scheduler(request: Request) -> NotificationScheduler:
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="scheduler not ready")
    return scheduler


# Endpoints are plain `def`: the scheduler does blocking store and mail I/O,
# so FastAPI runs them in its threadpool.
@router.get("/stats", response_model=QueueStats)
def get_stats(scheduler: NotificationScheduler = Depends(get_scheduler)):
    return scheduler.get_queue_stats()


@router.get("/status", response_model=SchedulerStatus)
def get_status(scheduler: NotificationScheduler = Depends(get_scheduler)):
    return scheduler.status()


@router.post("/tick", response_model=TickReport)
def run_tick(
    now: datetime | None = Query(None, description="Override the tick time (ISO 8601)"),
    scheduler: NotificationScheduler = Depends(get_scheduler),
):
    return scheduler.tick(now)


@router.post("/trigger/{phase}")
def trigger_phase(phase: Phase, scheduler: NotificationScheduler = Depends(get_scheduler)):
    return scheduler.run_phase(phase)


@router.post("/notifications", response_model=QueueResult)
def queue_notification(body: QueueRequest, scheduler: NotificationScheduler = Depends(get_scheduler)):
    return scheduler.queue_notification(body.user_id, body.notification_type, body.payload)


@router.post("/reap", response_model=DispatchSummary)
def reap_stuck(scheduler: NotificationScheduler = Depends(get_scheduler)):
    return scheduler.reclaim_stuck()
