"""
MODULE OVERVIEW:
The Window Scheduler. Pure functions of wall-clock time.

WHAT IS HAPPENING HERE:
Two questions are answered here and nowhere else:
  1. "If I queue a notification of type T now, when does it become due?"
     (`compute_scheduled_time`)
  2. "Which processing phases should this tick run?" (`compute_active_phases`)

Canonical hours are local to `settings.TIMEZONE`. A tick fires every few
minutes, so a phase is "in window" while the minute-of-hour sits inside the
tolerance band [0, PHASE_TOLERANCE_MINUTES). Nothing here reads the system
clock; callers always pass `now` in.
"""
from datetime import date, datetime, time, timedelta
from typing import Callable

from notify_scheduler.config import Settings, settings
from notify_scheduler.models import NotificationType, Phase

DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


class WindowScheduler:
    def __init__(self, config: Settings = settings):
        self.config = config
        self.tz = config.tz

    def localize(self, moment: datetime) -> datetime:
        """Express `moment` in the scheduler's zone. Naive values are taken as local."""
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.tz)
        return moment.astimezone(self.tz)

    def at(self, day: date, hour: int) -> datetime:
        return datetime.combine(day, time(hour), tzinfo=self.tz)

    def day_bounds(self, moment: datetime) -> tuple[datetime, datetime]:
        """[start, end) of the local calendar day containing `moment`."""
        day = self.localize(moment).date()
        return self.at(day, 0), self.at(day + timedelta(days=1), 0)

    def hour_bounds(self, moment: datetime) -> tuple[datetime, datetime]:
        start = self.localize(moment).replace(minute=0, second=0, microsecond=0)
        return start, start + timedelta(hours=1)

    def _next_at(self, now: datetime, hour: int, on_day: Callable[[int], bool] = lambda weekday: True) -> datetime:
        # Strictly after `now`: a request landing exactly on the hour rolls forward.
        local = self.localize(now)
        for offset in range(8):
            candidate = self.at(local.date() + timedelta(days=offset), hour)
            if candidate > local and on_day(candidate.weekday()):
                return candidate
        raise ValueError(f"no window found for hour={hour}")

    def _is_weekly_day(self, weekday: int) -> bool:
        return weekday == self.config.WEEKLY_DAY

    def compute_scheduled_time(self, notification_type: NotificationType, now: datetime) -> datetime:
        notification_type = NotificationType(notification_type)
        if notification_type.is_immediate:
            return self.localize(now) + timedelta(minutes=self.config.IMMEDIATE_DELAY_MINUTES)
        if notification_type is NotificationType.ACHIEVEMENT_DIGEST:
            return self._next_at(now, self.config.DIGEST_HOUR)
        if notification_type is NotificationType.WEEKLY_SUMMARY:
            return self._next_at(now, self.config.WEEKLY_SEND_HOUR, self._is_weekly_day)
        raise ValueError(f"Unknown notification type: {notification_type}")

    def compute_active_phases(self, now: datetime) -> set[Phase]:
        local = self.localize(now)
        phases = {Phase.IMMEDIATE}
        if local.minute >= self.config.PHASE_TOLERANCE_MINUTES:
            return phases

        if local.hour == self.config.DIGEST_HOUR:
            phases.add(Phase.DAILY_DIGEST)

        if self._is_weekly_day(local.weekday()):
            if local.hour == self.config.WEEKLY_GENERATE_HOUR:
                phases.add(Phase.WEEKLY_GENERATE)
            if local.hour == self.config.WEEKLY_SEND_HOUR:
                phases.add(Phase.WEEKLY_SEND)
        elif local.hour == self.config.INACTIVITY_SCAN_HOUR:
            # Skipped on the weekly day so it never competes with summary generation.
            phases.add(Phase.INACTIVITY_SCAN)

        return phases

    def window_key(self, phase: Phase, now: datetime) -> str:
        """Identifies one occurrence of a phase window, e.g. 'weekly_generate:2026-02-01'."""
        return f"{Phase(phase).value}:{self.localize(now).date().isoformat()}"

    def retry_time(self, notification_type: NotificationType, now: datetime, attempts: int) -> datetime:
        """Linear backoff, pushed forward to the next window for windowed types."""
        backoff = self.localize(now) + timedelta(minutes=attempts * self.config.RETRY_BACKOFF_MINUTES)
        if NotificationType(notification_type).is_immediate:
            return backoff
        return self.compute_scheduled_time(notification_type, backoff)

    def next_run_times(self, now: datetime) -> dict[Phase, datetime]:
        local = self.localize(now)
        step = self.config.PHASE_TOLERANCE_MINUTES
        next_tick = local.replace(second=0, microsecond=0) + timedelta(minutes=step - local.minute % step)
        return {
            Phase.IMMEDIATE: next_tick,
            Phase.DAILY_DIGEST: self._next_at(local, self.config.DIGEST_HOUR),
            Phase.WEEKLY_GENERATE: self._next_at(local, self.config.WEEKLY_GENERATE_HOUR, self._is_weekly_day),
            Phase.WEEKLY_SEND: self._next_at(local, self.config.WEEKLY_SEND_HOUR, self._is_weekly_day),
            Phase.INACTIVITY_SCAN: self._next_at(
                local, self.config.INACTIVITY_SCAN_HOUR, lambda weekday: not self._is_weekly_day(weekday)
            ),
        }

    def day_name(self, now: datetime) -> str:
        return DAY_NAMES[self.localize(now).weekday()]
