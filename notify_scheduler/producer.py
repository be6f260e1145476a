"""
MODULE OVERVIEW:
The producer-facing side of the scheduler.

WHAT IS HAPPENING HERE:
`queue_notification` is what the rest of the application calls when something
notable happens to a user. It is the ingestion + preference-check stage of
the pipeline:
  1. Ask the Permission Oracle. A refusal never creates an entry.
  2. Advisory cap check. Digest-class types are refused when the user
     already hit today's cap; immediate-class types (streaks, re-engagement)
     skip this check and are only limited at dispatch time.
  3. Achievement digests go through the Batch Aggregator; everything else
     gets a fresh entry scheduled by the Window Scheduler.

Refusals come back as a `QueueResult` with a reason, never as exceptions.
"""
from datetime import datetime
from typing import Any

from loguru import logger

from notify_scheduler.aggregator import BatchAggregator
from notify_scheduler.clock import Clock, SystemClock
from notify_scheduler.collaborators import PermissionOracle, QueueStore
from notify_scheduler.config import Settings, settings
from notify_scheduler.errors import ErrorKind
from notify_scheduler.models import NotificationType, QueueEntry, QueueResult, QueueStats, QueueStatus
from notify_scheduler.rate_limiter import RateLimiter
from notify_scheduler.windows import WindowScheduler

BATCH_ACTIONS = {
    "achievement": NotificationType.ACHIEVEMENT_DIGEST,
    "streak": NotificationType.STREAK_MILESTONE,
    "weekly": NotificationType.WEEKLY_SUMMARY,
    "reengagement": NotificationType.RE_ENGAGEMENT,
}


class NotificationQueue:
    def __init__(
        self,
        store: QueueStore,
        oracle: PermissionOracle,
        rate_limiter: RateLimiter,
        windows: WindowScheduler | None = None,
        aggregator: BatchAggregator | None = None,
        clock: Clock | None = None,
        config: Settings = settings,
    ):
        self.store = store
        self.oracle = oracle
        self.rate_limiter = rate_limiter
        self.config = config
        self.windows = windows or WindowScheduler(config)
        self.aggregator = aggregator or BatchAggregator(store, self.windows, config)
        self.clock = clock or SystemClock(config.tz)

    def _check_permission(self, user_id: str, notification_type: NotificationType) -> tuple[bool, str | None]:
        try:
            decision = self.oracle.can_send(user_id, notification_type)
        except Exception as e:
            logger.warning(f"user_id={user_id} type={notification_type.value} event=permission_check_failed reason='{e}'")
            return False, "permission check failed"
        return decision.allowed, decision.reason

    def queue_notification(
        self,
        user_id: str,
        notification_type: NotificationType | str,
        payload: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> QueueResult:
        notification_type = NotificationType(notification_type)
        payload = dict(payload or {})
        now = self.windows.localize(now or self.clock.now())

        allowed, reason = self._check_permission(user_id, notification_type)
        if not allowed:
            logger.info(f"user_id={user_id} type={notification_type.value} event=rejected reason='{reason}'")
            return QueueResult(queued=False, reason=ErrorKind.PERMISSION_DENIED.value, detail=reason)

        if not notification_type.is_immediate and self.rate_limiter.would_exceed(user_id, now):
            logger.info(f"user_id={user_id} type={notification_type.value} event=rejected reason=rate_limited")
            return QueueResult(
                queued=False, reason=ErrorKind.RATE_LIMITED.value, detail="daily email limit reached"
            )

        if notification_type is NotificationType.ACHIEVEMENT_DIGEST:
            return self.aggregator.merge_or_create(user_id, payload, now)

        entry = QueueEntry(
            user_id=user_id,
            notification_type=notification_type,
            payload=payload,
            queued_at=now,
            scheduled_for=self.windows.compute_scheduled_time(notification_type, now),
            max_attempts=self.config.MAX_ATTEMPTS,
        )
        entry_id = self.store.create(entry)
        logger.info(
            f"entry_id={entry_id} user_id={user_id} type={notification_type.value} event=queued "
            f"scheduled_for={entry.scheduled_for.isoformat()}"
        )
        return QueueResult(queued=True, entry_id=entry_id)

    # ==========================
    # PER-TYPE HELPERS
    # ==========================
    def queue_achievement_digest(
        self, user_id: str, achievements: list[dict[str, Any]], now: datetime | None = None
    ) -> QueueResult:
        """Queue every achievement; they all land in the same daily digest."""
        if not achievements:
            return QueueResult(queued=False, detail="no achievements to send")
        result = QueueResult(queued=False)
        for achievement in achievements:
            result = self.queue_notification(user_id, NotificationType.ACHIEVEMENT_DIGEST, achievement, now)
            if not result.queued:
                break
        return result

    def queue_streak_milestone(
        self, user_id: str, milestone: dict[str, Any], streak_data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> QueueResult:
        if not milestone:
            return QueueResult(queued=False, detail="no milestone to send")
        payload = {"milestone": milestone, "streak": streak_data or {}}
        return self.queue_notification(user_id, NotificationType.STREAK_MILESTONE, payload, now)

    def queue_weekly_summary(
        self, user_id: str, weekly_data: dict[str, Any], community_stats: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> QueueResult:
        payload = {"weekly": weekly_data, "community": community_stats or {}}
        return self.queue_notification(user_id, NotificationType.WEEKLY_SUMMARY, payload, now)

    def queue_re_engagement(
        self, user_id: str, days_inactive: int, user_data: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> QueueResult:
        payload = {"days_inactive": days_inactive, **(user_data or {})}
        return self.queue_notification(user_id, NotificationType.RE_ENGAGEMENT, payload, now)

    def batch_process(self, actions: list[dict[str, Any]], now: datetime | None = None) -> list[dict[str, Any]]:
        """Queue a list of {"type", "user_id", "payload"} actions; one result per action."""
        results = []
        for action in actions:
            action_type = action.get("type")
            user_id = action.get("user_id")
            try:
                if action_type not in BATCH_ACTIONS:
                    raise ValueError(f"Unknown action type: {action_type}")
                if not user_id:
                    raise ValueError("user_id is required")
                result = self.queue_notification(user_id, BATCH_ACTIONS[action_type], action.get("payload"), now)
                results.append({"action": action_type, "user_id": user_id, **result.model_dump()})
            except Exception as e:
                logger.warning(f"user_id={user_id} action={action_type} event=batch_action_failed reason='{e}'")
                results.append({"action": action_type, "user_id": user_id, "queued": False, "error": str(e)})
        return results

    def get_queue_stats(self) -> QueueStats:
        counts = self.store.status_counts()
        return QueueStats(
            total=sum(counts.values()),
            queued=counts.get(QueueStatus.QUEUED, 0),
            processing=counts.get(QueueStatus.PROCESSING, 0),
            sent=counts.get(QueueStatus.SENT, 0),
            failed=counts.get(QueueStatus.FAILED, 0),
            rate_limited=counts.get(QueueStatus.RATE_LIMITED, 0),
        )
