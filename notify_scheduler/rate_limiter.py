"""
MODULE OVERVIEW:
Per-user daily send cap.

WHAT IS HAPPENING HERE:
The limiter is consulted twice for every notification. At queue time the
check is advisory: it only keeps obviously over-cap requests out of the
queue. At dispatch time the check is authoritative and runs immediately
before the send, because several entries may have been queued for the same
user in between.

`StoreRateLimiter` counts by querying the Queue Store for entries that
reached Sent inside the user's local calendar day, so the Sent rows
themselves are the counter. Other strategies (counter table, cache) only
need to implement the same three methods.
"""
from abc import ABC, abstractmethod
from datetime import datetime

from loguru import logger

from notify_scheduler.collaborators import QueueStore
from notify_scheduler.config import Settings, settings
from notify_scheduler.models import QueueStatus
from notify_scheduler.windows import WindowScheduler


class RateLimiter(ABC):
    @abstractmethod
    def count_sent_today(self, user_id: str, now: datetime) -> int:
        ...

    @abstractmethod
    def would_exceed(self, user_id: str, now: datetime) -> bool:
        ...

    def record_sent(self, user_id: str, now: datetime) -> None:
        """Hook for counter-based strategies. Query-based counting needs nothing here."""


class StoreRateLimiter(RateLimiter):
    def __init__(self, store: QueueStore, config: Settings = settings, windows: WindowScheduler | None = None):
        self.store = store
        self.daily_cap = config.DAILY_CAP
        self.hourly_cap = config.HOURLY_CAP
        self.windows = windows or WindowScheduler(config)

    def count_sent_today(self, user_id: str, now: datetime) -> int:
        start, end = self.windows.day_bounds(now)
        return self.store.count_status(user_id, QueueStatus.SENT, start, end)

    def count_sent_this_hour(self, user_id: str, now: datetime) -> int:
        start, end = self.windows.hour_bounds(now)
        return self.store.count_status(user_id, QueueStatus.SENT, start, end)

    def remaining_today(self, user_id: str, now: datetime) -> int:
        return max(0, self.daily_cap - self.count_sent_today(user_id, now))

    def would_exceed(self, user_id: str, now: datetime) -> bool:
        sent_today = self.count_sent_today(user_id, now)
        if sent_today >= self.daily_cap:
            logger.debug(f"user_id={user_id} event=cap_reached window=day sent={sent_today} cap={self.daily_cap}")
            return True
        if self.hourly_cap is not None:
            sent_this_hour = self.count_sent_this_hour(user_id, now)
            if sent_this_hour >= self.hourly_cap:
                logger.debug(
                    f"user_id={user_id} event=cap_reached window=hour sent={sent_this_hour} cap={self.hourly_cap}"
                )
                return True
        return False
