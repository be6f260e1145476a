"""Notification delivery scheduler: persisted queue, windows, rate limits and retries."""
from notify_scheduler.clock import Clock, FixedClock, SystemClock
from notify_scheduler.config import Settings, settings
from notify_scheduler.models import (
    NotificationType,
    Phase,
    QueueEntry,
    QueueResult,
    QueueStats,
    QueueStatus,
    TickReport,
)
from notify_scheduler.scheduler import NotificationScheduler

__all__ = [
    "Clock",
    "FixedClock",
    "NotificationScheduler",
    "NotificationType",
    "Phase",
    "QueueEntry",
    "QueueResult",
    "QueueStats",
    "QueueStatus",
    "Settings",
    "SystemClock",
    "TickReport",
    "settings",
]
