"""
MODULE OVERVIEW:
The Tick Coordinator: the single periodic entry point.

WHAT IS HAPPENING HERE:
An external trigger (cron, Cloud Scheduler, `runner.py tick`) calls `tick(now)`
every few minutes. There is no sleeping or looping in here. Each tick:
  - always drains due immediate-class entries (streaks, re-engagement),
  - asks the Window Scheduler which other phases are in window,
  - runs those phases.

Dispatch phases are naturally safe to repeat inside one window: a claimed
entry is no longer Queued. The two one-shot phases (weekly generation and
the inactivity scan) queue new entries, so they first claim a last-run marker
for the window in the Queue Store; an overlapping tick loses that claim and
does nothing.
"""
from datetime import datetime, timedelta

from loguru import logger

from notify_scheduler.collaborators import ActivityTracker, QueueStore, WeeklyStatsSupplier
from notify_scheduler.config import Settings, settings
from notify_scheduler.dispatch import DispatchEngine
from notify_scheduler.errors import describe
from notify_scheduler.models import (
    PHASE_TYPES,
    DispatchSummary,
    NotificationType,
    Phase,
    PhaseRunItem,
    PhaseRunResult,
    QueueStatus,
    TickReport,
)
from notify_scheduler.producer import NotificationQueue
from notify_scheduler.windows import WindowScheduler

PHASE_ORDER = list(Phase)
SUPERSEDED_NOTE = "superseded by the weekly summary generated at {generated_at}"


class TickCoordinator:
    def __init__(
        self,
        queue: NotificationQueue,
        engine: DispatchEngine,
        store: QueueStore,
        weekly_stats: WeeklyStatsSupplier,
        activity: ActivityTracker,
        windows: WindowScheduler | None = None,
        config: Settings = settings,
    ):
        self.queue = queue
        self.engine = engine
        self.store = store
        self.weekly_stats = weekly_stats
        self.activity = activity
        self.config = config
        self.windows = windows or WindowScheduler(config)

    def tick(self, now: datetime) -> TickReport:
        now = self.windows.localize(now)
        phases = self.windows.compute_active_phases(now)
        report = TickReport(now=now, phases=[phase for phase in PHASE_ORDER if phase in phases])

        report.immediate = self.dispatch_phase(Phase.IMMEDIATE, now)
        if Phase.DAILY_DIGEST in phases:
            report.daily = self.dispatch_phase(Phase.DAILY_DIGEST, now)
        if Phase.WEEKLY_GENERATE in phases:
            report.summary_generation = self.generate_weekly_summaries(now)
        if Phase.WEEKLY_SEND in phases:
            report.weekly = self.dispatch_phase(Phase.WEEKLY_SEND, now)
        if Phase.INACTIVITY_SCAN in phases:
            report.inactive_check = self.check_inactive_users(now)

        if len(phases) > 1:
            logger.info(f"event=tick now={now.isoformat()} phases={','.join(p.value for p in report.phases)}")
        return report

    def dispatch_phase(self, phase: Phase, now: datetime) -> DispatchSummary:
        summary = DispatchSummary()
        for notification_type in PHASE_TYPES[phase]:
            summary = summary.merge(self.engine.process_due(notification_type, now))
        return summary

    def _claim_window(self, phase: Phase, now: datetime) -> bool:
        window_key = self.windows.window_key(phase, now)
        if self.store.claim_phase_run(phase, window_key):
            return True
        logger.info(f"phase={phase.value} window={window_key} event=already_ran")
        return False

    def _supersede_queued_summaries(self, user_id: str, send_at: datetime, now: datetime) -> int:
        """Close summaries still queued for this send day, e.g. last week's failed send pushed forward."""
        start, end = self.windows.day_bounds(send_at)
        superseded = 0
        while True:
            stale = self.store.find_merge_candidate(user_id, NotificationType.WEEKLY_SUMMARY, start, end)
            if stale is None or not self.store.claim(stale.id):
                return superseded
            self.store.update(
                stale.id,
                {"status": QueueStatus.FAILED, "last_error": SUPERSEDED_NOTE.format(generated_at=now.isoformat())},
                expected_status=QueueStatus.PROCESSING,
            )
            logger.info(f"entry_id={stale.id} user_id={user_id} event=weekly_summary_superseded")
            superseded += 1

    def generate_weekly_summaries(self, now: datetime, force: bool = False) -> PhaseRunResult:
        """Assemble last week's stats for every eligible user and queue the send.

        Runs in the generate window, so every entry lands on the send window
        later the same day. A summary still queued for that send (last week's
        failed send, pushed forward by its retry) is closed first, so each user
        gets one summary, carrying this week's numbers.
        """
        now = self.windows.localize(now)
        result = PhaseRunResult()
        try:
            if not force and not self._claim_window(Phase.WEEKLY_GENERATE, now):
                return PhaseRunResult(already_ran=True)
            users = list(self.weekly_stats.eligible_users())
            community = self.weekly_stats.community_stats()
        except Exception as e:
            logger.exception("phase=weekly_generate event=error")
            return PhaseRunResult(error=describe(e))

        week_start = now - timedelta(days=7)
        send_at = self.windows.compute_scheduled_time(NotificationType.WEEKLY_SUMMARY, now)
        for user_id in users:
            try:
                stats = self.weekly_stats.weekly_stats(user_id, week_start, now)
                payload = {
                    "weekly": stats,
                    "community": community,
                    "week_start": week_start.date().isoformat(),
                    "week_end": now.date().isoformat(),
                    "generated_at": now.isoformat(),
                }
                self._supersede_queued_summaries(user_id, send_at, now)
                queued = self.queue.queue_notification(user_id, NotificationType.WEEKLY_SUMMARY, payload, now)
            except Exception as e:
                logger.exception(f"user_id={user_id} phase=weekly_generate event=user_error")
                result.skipped += 1
                result.results.append(PhaseRunItem(user_id=user_id, status="error", reason=describe(e)))
                continue
            if queued.queued:
                result.queued += 1
                result.results.append(PhaseRunItem(user_id=user_id, status="queued"))
            else:
                result.skipped += 1
                result.results.append(PhaseRunItem(user_id=user_id, status="skipped", reason=queued.reason))

        logger.info(
            f"phase=weekly_generate event=complete eligible={len(users)} queued={result.queued} skipped={result.skipped}"
        )
        return result

    def check_inactive_users(self, now: datetime, force: bool = False) -> PhaseRunResult:
        """Queue re-engagement mail for users idle exactly one of the milestone day counts."""
        now = self.windows.localize(now)
        milestones = set(self.config.INACTIVITY_MILESTONE_DAYS)
        result = PhaseRunResult()
        try:
            if not force and not self._claim_window(Phase.INACTIVITY_SCAN, now):
                return PhaseRunResult(already_ran=True)
            candidates = list(self.activity.last_activity(now))
        except Exception as e:
            logger.exception("phase=inactivity_scan event=error")
            return PhaseRunResult(error=describe(e))

        for user_id, last_active in candidates:
            days_inactive = (now - self.windows.localize(last_active)) // timedelta(days=1)
            # Only the exact milestone days, so a quiet user is not mailed daily.
            if days_inactive not in milestones:
                continue
            try:
                payload = {"days_inactive": days_inactive, **self.activity.reengagement_context(user_id)}
                queued = self.queue.queue_notification(user_id, NotificationType.RE_ENGAGEMENT, payload, now)
            except Exception as e:
                logger.exception(f"user_id={user_id} phase=inactivity_scan event=user_error")
                result.skipped += 1
                result.results.append(
                    PhaseRunItem(user_id=user_id, status="error", reason=describe(e), days_inactive=days_inactive)
                )
                continue
            status = "queued" if queued.queued else "skipped"
            if queued.queued:
                result.queued += 1
            else:
                result.skipped += 1
            result.results.append(
                PhaseRunItem(user_id=user_id, status=status, reason=queued.reason, days_inactive=days_inactive)
            )

        logger.info(
            f"phase=inactivity_scan event=complete checked={len(candidates)} queued={result.queued} "
            f"skipped={result.skipped}"
        )
        return result

    def run_phase(self, phase: Phase | str, now: datetime) -> DispatchSummary | PhaseRunResult:
        """Run one phase now, ignoring its window. Used by operators and tests."""
        phase = Phase(phase)
        if phase is Phase.WEEKLY_GENERATE:
            return self.generate_weekly_summaries(now, force=True)
        if phase is Phase.INACTIVITY_SCAN:
            return self.check_inactive_users(now, force=True)
        return self.dispatch_phase(phase, self.windows.localize(now))
