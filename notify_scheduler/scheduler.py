"""
MODULE OVERVIEW:
`NotificationScheduler` wires the core parts to their collaborators and
exposes the three calls the rest of the application needs:
`queue_notification`, `tick` and `get_queue_stats`.
"""
from datetime import datetime
from typing import Any

from notify_scheduler.aggregator import BatchAggregator
from notify_scheduler.clock import Clock, SystemClock
from notify_scheduler.collaborators import (
    ActivityTracker,
    AllowAllPermissionOracle,
    MailTransport,
    MessageComposer,
    NoEligibleUsers,
    NoInactiveUsers,
    PermissionOracle,
    PlainTextComposer,
    QueueStore,
    WeeklyStatsSupplier,
)
from notify_scheduler.config import Settings, settings
from notify_scheduler.coordinator import TickCoordinator
from notify_scheduler.dispatch import DispatchEngine
from notify_scheduler.models import (
    DispatchSummary,
    NotificationType,
    Phase,
    PhaseRunResult,
    QueueResult,
    QueueStats,
    SchedulerStatus,
    TickReport,
)
from notify_scheduler.producer import NotificationQueue
from notify_scheduler.rate_limiter import RateLimiter, StoreRateLimiter
from notify_scheduler.stores import SQLiteQueueStore
from notify_scheduler.transport import HttpMailTransport, LoggingMailTransport
from notify_scheduler.windows import WindowScheduler


class NotificationScheduler:
    def __init__(
        self,
        store: QueueStore,
        oracle: PermissionOracle,
        transport: MailTransport,
        composer: MessageComposer | None = None,
        weekly_stats: WeeklyStatsSupplier | None = None,
        activity: ActivityTracker | None = None,
        rate_limiter: RateLimiter | None = None,
        clock: Clock | None = None,
        config: Settings = settings,
    ):
        self.config = config
        self.store = store
        self.clock = clock or SystemClock(config.tz)
        self.windows = WindowScheduler(config)
        self.rate_limiter = rate_limiter or StoreRateLimiter(store, config, self.windows)
        self.aggregator = BatchAggregator(store, self.windows, config)
        self.queue = NotificationQueue(
            store, oracle, self.rate_limiter, self.windows, self.aggregator, self.clock, config
        )
        self.engine = DispatchEngine(
            store, transport, composer or PlainTextComposer(), self.rate_limiter, self.windows, config
        )
        self.coordinator = TickCoordinator(
            self.queue,
            self.engine,
            store,
            weekly_stats or NoEligibleUsers(),
            activity or NoInactiveUsers(),
            self.windows,
            config,
        )

    def _now(self, now: datetime | None) -> datetime:
        return self.windows.localize(now or self.clock.now())

    def queue_notification(
        self, user_id: str, notification_type: NotificationType | str, payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> QueueResult:
        return self.queue.queue_notification(user_id, notification_type, payload, self._now(now))

    def tick(self, now: datetime | None = None) -> TickReport:
        return self.coordinator.tick(self._now(now))

    def get_queue_stats(self) -> QueueStats:
        return self.queue.get_queue_stats()

    def process_due(
        self, notification_type: NotificationType | str | None = None, now: datetime | None = None
    ) -> DispatchSummary:
        notification_type = NotificationType(notification_type) if notification_type else None
        return self.engine.process_due(notification_type, self._now(now))

    def run_phase(self, phase: Phase | str, now: datetime | None = None) -> DispatchSummary | PhaseRunResult:
        return self.coordinator.run_phase(phase, self._now(now))

    def reclaim_stuck(self, now: datetime | None = None) -> DispatchSummary:
        return self.engine.reclaim_stuck(self._now(now))

    def status(self, now: datetime | None = None) -> SchedulerStatus:
        now = self._now(now)
        active = self.windows.compute_active_phases(now)
        return SchedulerStatus(
            current_time=now,
            day_of_week=self.windows.day_name(now),
            active_phases=[phase for phase in Phase if phase in active],
            next_runs=self.windows.next_run_times(now),
        )

    def queue_achievement_digest(self, user_id: str, achievements: list[dict[str, Any]]) -> QueueResult:
        return self.queue.queue_achievement_digest(user_id, achievements, self._now(None))

    def queue_streak_milestone(
        self, user_id: str, milestone: dict[str, Any], streak_data: dict[str, Any] | None = None
    ) -> QueueResult:
        return self.queue.queue_streak_milestone(user_id, milestone, streak_data, self._now(None))

    def queue_weekly_summary(
        self, user_id: str, weekly_data: dict[str, Any], community_stats: dict[str, Any] | None = None
    ) -> QueueResult:
        return self.queue.queue_weekly_summary(user_id, weekly_data, community_stats, self._now(None))

    def queue_re_engagement(self, user_id: str, days_inactive: int, user_data: dict[str, Any] | None = None) -> QueueResult:
        return self.queue.queue_re_engagement(user_id, days_inactive, user_data, self._now(None))

    def batch_process(self, actions: list[dict[str, Any]]) -> list[dict[str, Any]]:
        return self.queue.batch_process(actions, self._now(None))


def from_settings(config: Settings = settings, **collaborators: Any) -> NotificationScheduler:
    """Build a scheduler over the SQLite store at DATABASE_PATH.

    Without MAIL_API_KEY messages are only logged. Any collaborator can be
    overridden by keyword (oracle=, weekly_stats=, activity=, composer=, ...).
    """
    if "store" not in collaborators:
        collaborators["store"] = SQLiteQueueStore(config.DATABASE_PATH)
    if "transport" not in collaborators:
        if config.MAIL_API_KEY:
            collaborators["transport"] = HttpMailTransport(
                config.MAIL_API_URL, config.MAIL_API_KEY, config.MAIL_FROM, config.SEND_TIMEOUT_S
            )
        else:
            collaborators["transport"] = LoggingMailTransport()
    if "oracle" not in collaborators:
        collaborators["oracle"] = AllowAllPermissionOracle()
    return NotificationScheduler(config=config, **collaborators)
