"""
MODULE OVERVIEW:
Folds every achievement a user unlocks into one daily digest entry.

WHAT IS HAPPENING HERE:
The merge key is (user_id, calendar day of scheduled_for), not the day the
event arrived. An achievement queued at 20:02 is already scheduled for
tomorrow's 20:00 window, so it joins tomorrow's digest and leaves today's
(possibly already sending) entry alone.

The append itself is a conditional write on the store: it only succeeds
while the candidate is still Queued. If a dispatch claimed the digest
between our lookup and our append, the event moves on to the next window
instead of being lost inside a message that is already on its way out.
"""
from datetime import datetime
from typing import Any

from loguru import logger

from notify_scheduler.collaborators import QueueStore
from notify_scheduler.config import Settings, settings
from notify_scheduler.models import NotificationType, QueueEntry, QueueResult
from notify_scheduler.windows import WindowScheduler

DIGEST = NotificationType.ACHIEVEMENT_DIGEST
PAYLOAD_KEY = "achievements"


class BatchAggregator:
    def __init__(self, store: QueueStore, windows: WindowScheduler | None = None, config: Settings = settings):
        self.store = store
        self.config = config
        self.windows = windows or WindowScheduler(config)

    def merge_or_create(self, user_id: str, achievement_event: dict[str, Any], now: datetime) -> QueueResult:
        now = self.windows.localize(now)
        scheduled_for = self.windows.compute_scheduled_time(DIGEST, now)

        for _ in range(2):
            start, end = self.windows.day_bounds(scheduled_for)
            candidate = self.store.find_merge_candidate(user_id, DIGEST, start, end)
            if candidate is None:
                break
            if self.store.append_to_payload(candidate.id, PAYLOAD_KEY, achievement_event):
                logger.info(
                    f"entry_id={candidate.id} user_id={user_id} event=digest_merged "
                    f"scheduled_for={candidate.scheduled_for.isoformat()}"
                )
                return QueueResult(queued=True, entry_id=candidate.id, merged=True)
            logger.info(f"entry_id={candidate.id} user_id={user_id} event=digest_claimed_during_merge")
            scheduled_for = self.windows.compute_scheduled_time(DIGEST, candidate.scheduled_for)

        entry = QueueEntry(
            user_id=user_id,
            notification_type=DIGEST,
            payload={PAYLOAD_KEY: [achievement_event]},
            queued_at=now,
            scheduled_for=scheduled_for,
            max_attempts=self.config.MAX_ATTEMPTS,
        )
        entry_id = self.store.create(entry)
        logger.info(
            f"entry_id={entry_id} user_id={user_id} event=digest_created scheduled_for={scheduled_for.isoformat()}"
        )
        return QueueResult(queued=True, entry_id=entry_id)
