"""
MODULE OVERVIEW:
The typed data structures shared by every part of the scheduler, powered by Pydantic v2.

WHAT IS HAPPENING HERE:
`QueueEntry` is the durable record a Queue Store keeps for one notification.
The result models (`QueueResult`, `DispatchSummary`, `PhaseRunResult`,
`TickReport`, `QueueStats`) are what the scheduler hands back to callers and
what the ops server serialises, so producers, the CLI and the HTTP surface all
share one contract.
"""
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class NotificationType(str, Enum):
    ACHIEVEMENT_DIGEST = "achievement_digest"
    STREAK_MILESTONE = "streak_milestone"
    WEEKLY_SUMMARY = "weekly_summary"
    RE_ENGAGEMENT = "re_engagement"

    @property
    def is_immediate(self) -> bool:
        return self in IMMEDIATE_TYPES


IMMEDIATE_TYPES = frozenset({NotificationType.STREAK_MILESTONE, NotificationType.RE_ENGAGEMENT})
WINDOWED_TYPES = frozenset({NotificationType.ACHIEVEMENT_DIGEST, NotificationType.WEEKLY_SUMMARY})


class QueueStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"

    @property
    def is_terminal(self) -> bool:
        return self in (QueueStatus.SENT, QueueStatus.FAILED, QueueStatus.RATE_LIMITED)


class Phase(str, Enum):
    IMMEDIATE = "immediate"
    DAILY_DIGEST = "daily_digest"
    WEEKLY_GENERATE = "weekly_generate"
    WEEKLY_SEND = "weekly_send"
    INACTIVITY_SCAN = "inactivity_scan"


# Which queued types each dispatch phase drains.
PHASE_TYPES: dict[Phase, tuple[NotificationType, ...]] = {
    Phase.IMMEDIATE: (NotificationType.STREAK_MILESTONE, NotificationType.RE_ENGAGEMENT),
    Phase.DAILY_DIGEST: (NotificationType.ACHIEVEMENT_DIGEST,),
    Phase.WEEKLY_SEND: (NotificationType.WEEKLY_SUMMARY,),
}


class QueueEntry(BaseModel):
    id: str | None = None
    user_id: str
    notification_type: NotificationType
    payload: dict[str, Any] = Field(default_factory=dict)
    status: QueueStatus = QueueStatus.QUEUED
    queued_at: datetime
    scheduled_for: datetime
    attempts: int = 0
    max_attempts: int = 3
    last_attempt_at: datetime | None = None
    last_error: str | None = None

    @model_validator(mode="after")
    def _check_invariants(self) -> "QueueEntry":
        if self.scheduled_for < self.queued_at:
            raise ValueError("scheduled_for must not be earlier than queued_at")
        if self.attempts > self.max_attempts:
            raise ValueError("attempts must not exceed max_attempts")
        return self


class PermissionDecision(BaseModel):
    allowed: bool
    reason: str | None = None


class OutgoingMessage(BaseModel):
    to_address: str
    subject: str
    body: str


class QueueResult(BaseModel):
    queued: bool
    reason: str | None = None
    detail: str | None = None
    entry_id: str | None = None
    merged: bool = False


class DispatchResult(BaseModel):
    entry_id: str
    user_id: str
    notification_type: NotificationType
    status: QueueStatus
    error: str | None = None


class DispatchSummary(BaseModel):
    processed: int = 0
    failed: int = 0
    retried: int = 0
    rate_limited: int = 0
    skipped: int = 0
    results: list[DispatchResult] = Field(default_factory=list)
    error: str | None = None

    def merge(self, other: "DispatchSummary") -> "DispatchSummary":
        errors = [e for e in (self.error, other.error) if e]
        return DispatchSummary(
            processed=self.processed + other.processed,
            failed=self.failed + other.failed,
            retried=self.retried + other.retried,
            rate_limited=self.rate_limited + other.rate_limited,
            skipped=self.skipped + other.skipped,
            results=self.results + other.results,
            error="; ".join(errors) or None,
        )


class PhaseRunItem(BaseModel):
    user_id: str
    status: str  # queued, skipped, error
    reason: str | None = None
    days_inactive: int | None = None


class PhaseRunResult(BaseModel):
    queued: int = 0
    skipped: int = 0
    already_ran: bool = False
    results: list[PhaseRunItem] = Field(default_factory=list)
    error: str | None = None


class TickReport(BaseModel):
    now: datetime
    phases: list[Phase]
    immediate: DispatchSummary | None = None
    daily: DispatchSummary | None = None
    summary_generation: PhaseRunResult | None = None
    weekly: DispatchSummary | None = None
    inactive_check: PhaseRunResult | None = None


class QueueStats(BaseModel):
    total: int = 0
    queued: int = 0
    processing: int = 0
    sent: int = 0
    failed: int = 0
    rate_limited: int = 0


class SchedulerStatus(BaseModel):
    current_time: datetime
    day_of_week: str
    active_phases: list[Phase]
    next_runs: dict[Phase, datetime]
