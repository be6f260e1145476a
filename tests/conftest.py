from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable

import pytest

from notify_scheduler import FixedClock, NotificationScheduler, Settings
from notify_scheduler.collaborators import (
    ActivityTracker,
    MailTransport,
    MessageComposer,
    PermissionOracle,
    WeeklyStatsSupplier,
)
from notify_scheduler.models import NotificationType, OutgoingMessage, PermissionDecision, QueueEntry
from notify_scheduler.stores import InMemoryQueueStore


def ts(day: int, hour: int = 0, minute: int = 0, second: int = 0) -> datetime:
    # February 2026: the 1st and 8th are Sundays, the 2nd is a Monday.
    return datetime(2026, 2, day, hour, minute, second, tzinfo=timezone.utc)


class FakeOracle(PermissionOracle):
    def __init__(self):
        self.denied: dict[str, str] = {}
        self.broken = False
        self.calls: list[tuple[str, NotificationType]] = []

    def can_send(self, user_id: str, notification_type: NotificationType) -> PermissionDecision:
        self.calls.append((user_id, notification_type))
        if self.broken:
            raise RuntimeError("profile lookup failed")
        if user_id in self.denied:
            return PermissionDecision(allowed=False, reason=self.denied[user_id])
        return PermissionDecision(allowed=True)


class FakeTransport(MailTransport):
    """Records sends; raises queued-up exceptions first, one per call."""

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.failures: list[Exception] = []
        self.timeouts: list[float | None] = []

    def fail_with(self, *errors: Exception) -> None:
        self.failures.extend(errors)

    def send(self, to_address: str, subject: str, body: str, timeout: float | None = None) -> str:
        self.timeouts.append(timeout)
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append((to_address, subject, body))
        return f"msg-{len(self.sent)}"


class EntryIdComposer(MessageComposer):
    """Puts the entry id in the body so tests can tell which entry was delivered."""

    def compose(self, entry: QueueEntry) -> OutgoingMessage:
        return OutgoingMessage(to_address=f"{entry.user_id}@example.com", subject=entry.notification_type.value, body=entry.id)


class StaticWeeklyStats(WeeklyStatsSupplier):
    def __init__(self, users: list[str]):
        self.users = users
        self.broken = False

    def eligible_users(self) -> Iterable[str]:
        if self.broken:
            raise RuntimeError("users collection unavailable")
        return list(self.users)

    def weekly_stats(self, user_id: str, week_start: datetime, week_end: datetime) -> dict[str, Any]:
        return {"steps_completed": 4, "photos_added": 2}

    def community_stats(self) -> dict[str, Any]:
        return {"active_users": 450}


class StaticActivity(ActivityTracker):
    def __init__(self, last_active: dict[str, datetime]):
        self.last_active = last_active

    def last_activity(self, now: datetime) -> Iterable[tuple[str, datetime]]:
        return list(self.last_active.items())

    def reengagement_context(self, user_id: str) -> dict[str, Any]:
        return {"recent_projects": ["Space Marine squad"]}


@pytest.fixture
def config() -> Settings:
    return Settings(_env_file=None, TIMEZONE="UTC", DAILY_CAP=2, MAX_ATTEMPTS=3, HOURLY_CAP=None)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(ts(2, 14, 0))


@pytest.fixture
def store() -> InMemoryQueueStore:
    return InMemoryQueueStore()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def weekly_stats() -> StaticWeeklyStats:
    return StaticWeeklyStats(["alice", "bob"])


@pytest.fixture
def activity() -> StaticActivity:
    return StaticActivity({})


@pytest.fixture
def scheduler(store, oracle, transport, weekly_stats, activity, clock, config) -> NotificationScheduler:
    return NotificationScheduler(
        store=store,
        oracle=oracle,
        transport=transport,
        composer=EntryIdComposer(),
        weekly_stats=weekly_stats,
        activity=activity,
        clock=clock,
        config=config,
    )
