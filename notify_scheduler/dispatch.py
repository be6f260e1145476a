"""
MODULE OVERVIEW:
The Dispatch/Retry Engine: turns due queue entries into sent emails.

WHAT IS HAPPENING HERE:
For each due entry:
  1. Claim it (Queued -> Processing). A lost claim means another tick owns it.
  2. Re-check the user's daily cap. Over the cap -> RateLimited, never retried.
  3. Compose the message and hand it to the Mail Transport with a timeout.
  4. Success -> Sent.
  5. Failure -> classify. Permanent errors and exhausted retries -> Failed;
     anything else goes back to Queued with linear backoff. A digest retry
     lands on a later 20:00 window and takes over any digest already queued
     there, so the user still gets one digest that day.

`process_due` never raises. Every failure is written onto the entry itself
and echoed in the returned `DispatchSummary`.
"""
from datetime import datetime, timedelta

from loguru import logger

from notify_scheduler.aggregator import PAYLOAD_KEY
from notify_scheduler.collaborators import MailTransport, MessageComposer, QueueStore
from notify_scheduler.config import Settings, settings
from notify_scheduler.errors import ErrorKind, classify_error, describe, is_retryable
from notify_scheduler.models import (
    DispatchResult,
    DispatchSummary,
    NotificationType,
    QueueEntry,
    QueueStatus,
)
from notify_scheduler.rate_limiter import RateLimiter
from notify_scheduler.windows import WindowScheduler

RATE_LIMITED_ERROR = f"{ErrorKind.RATE_LIMITED.value}: daily email limit reached"
STUCK_ERROR = f"{ErrorKind.UNKNOWN.value}: abandoned while processing"
MERGED_NOTE = "merged into digest {entry_id}"


def _result(entry: QueueEntry, status: QueueStatus, error: str | None = None) -> DispatchResult:
    return DispatchResult(
        entry_id=entry.id,
        user_id=entry.user_id,
        notification_type=entry.notification_type,
        status=status,
        error=error,
    )


class DispatchEngine:
    def __init__(
        self,
        store: QueueStore,
        transport: MailTransport,
        composer: MessageComposer,
        rate_limiter: RateLimiter,
        windows: WindowScheduler | None = None,
        config: Settings = settings,
    ):
        self.store = store
        self.transport = transport
        self.composer = composer
        self.rate_limiter = rate_limiter
        self.config = config
        self.windows = windows or WindowScheduler(config)

    def process_due(self, notification_type: NotificationType | None, now: datetime) -> DispatchSummary:
        now = self.windows.localize(now)
        label = notification_type.value if notification_type else "all"
        try:
            due = self.store.query_due(notification_type, now, limit=self.config.DISPATCH_BATCH_SIZE)
        except Exception as e:
            logger.exception(f"type={label} event=query_due_failed")
            return DispatchSummary(error=describe(e))

        summary = DispatchSummary()
        for entry in due:
            try:
                result = self._dispatch_one(entry, now)
            except Exception as e:
                # Store trouble mid-entry: the entry may stay in Processing until reaped.
                logger.exception(f"entry_id={entry.id} type={label} event=dispatch_error")
                summary.failed += 1
                summary.results.append(_result(entry, QueueStatus.PROCESSING, describe(e)))
                continue

            if result is None:
                summary.skipped += 1
                continue
            summary.results.append(result)
            if result.status == QueueStatus.SENT:
                summary.processed += 1
            elif result.status == QueueStatus.RATE_LIMITED:
                summary.rate_limited += 1
                summary.failed += 1
            elif result.status == QueueStatus.QUEUED:
                summary.retried += 1
                summary.failed += 1
            else:
                summary.failed += 1

        if due:
            logger.info(
                f"type={label} event=dispatch_complete due={len(due)} sent={summary.processed} "
                f"failed={summary.failed} retried={summary.retried} rate_limited={summary.rate_limited} "
                f"skipped={summary.skipped}"
            )
        return summary

    def _dispatch_one(self, entry: QueueEntry, now: datetime) -> DispatchResult | None:
        if not self.store.claim(entry.id, claimed_at=now):
            logger.debug(f"entry_id={entry.id} event=claim_lost")
            return None

        # The snapshot from query_due may be stale; the claimed row is the truth.
        entry = self.store.get(entry.id) or entry
        if entry.scheduled_for > now:
            self.store.update(entry.id, {"status": QueueStatus.QUEUED}, expected_status=QueueStatus.PROCESSING)
            logger.debug(f"entry_id={entry.id} event=claim_released reason=rescheduled")
            return None

        if self.rate_limiter.would_exceed(entry.user_id, now):
            self.store.update(
                entry.id,
                {"status": QueueStatus.RATE_LIMITED, "last_error": RATE_LIMITED_ERROR},
                expected_status=QueueStatus.PROCESSING,
            )
            logger.warning(f"entry_id={entry.id} user_id={entry.user_id} event=rate_limited")
            return _result(entry, QueueStatus.RATE_LIMITED, RATE_LIMITED_ERROR)

        attempts = entry.attempts + 1
        try:
            message = self.composer.compose(entry)
            message_id = self.transport.send(
                message.to_address, message.subject, message.body, timeout=self.config.SEND_TIMEOUT_S
            )
        except Exception as e:
            return self._record_failure(entry, e, attempts, now)

        self.store.update(
            entry.id,
            {"status": QueueStatus.SENT, "attempts": attempts, "last_attempt_at": now, "last_error": None},
            expected_status=QueueStatus.PROCESSING,
        )
        self.rate_limiter.record_sent(entry.user_id, now)
        logger.info(
            f"entry_id={entry.id} user_id={entry.user_id} type={entry.notification_type.value} "
            f"event=sent attempt={attempts} message_id={message_id}"
        )
        return _result(entry, QueueStatus.SENT)

    def _record_failure(self, entry: QueueEntry, exc: Exception, attempts: int, now: datetime) -> DispatchResult:
        kind = classify_error(exc)
        error = describe(exc)
        patch = {"attempts": attempts, "last_attempt_at": now, "last_error": error}

        absorbed = None
        if not is_retryable(kind) or attempts >= entry.max_attempts:
            patch["status"] = QueueStatus.FAILED
            logger.warning(
                f"entry_id={entry.id} user_id={entry.user_id} event=failed kind={kind.value} "
                f"attempt={attempts}/{entry.max_attempts} reason='{exc}'"
            )
        else:
            patch["status"] = QueueStatus.QUEUED
            patch["scheduled_for"] = self.windows.retry_time(entry.notification_type, now, attempts)
            absorbed = self._absorb_queued_digest(entry, patch)
            logger.warning(
                f"entry_id={entry.id} user_id={entry.user_id} event=retry_scheduled kind={kind.value} "
                f"attempt={attempts}/{entry.max_attempts} retry_at={patch['scheduled_for'].isoformat()}"
            )

        kept = self.store.update(entry.id, patch, expected_status=QueueStatus.PROCESSING)
        self._settle_absorbed(absorbed, entry, kept)
        return _result(entry, patch["status"], error)

    def _absorb_queued_digest(self, entry: QueueEntry, patch: dict) -> QueueEntry | None:
        """Pull a digest already queued on the retry day into the retried entry.

        A digest retry lands on a later window, where a newer digest for the
        same user may already be waiting. Claiming that digest first stops
        producers from appending to it while its achievements move over, so
        the user still ends up with one digest per day.
        """
        if entry.notification_type is not NotificationType.ACHIEVEMENT_DIGEST:
            return None
        start, end = self.windows.day_bounds(patch["scheduled_for"])
        other = self.store.find_merge_candidate(entry.user_id, entry.notification_type, start, end)
        if other is None:
            return None
        if not self.store.claim(other.id):
            logger.warning(f"entry_id={entry.id} other_entry_id={other.id} event=digest_fold_claim_lost")
            return None
        other = self.store.get(other.id) or other
        achievements = entry.payload.get(PAYLOAD_KEY, []) + other.payload.get(PAYLOAD_KEY, [])
        patch["payload"] = {**other.payload, **entry.payload, PAYLOAD_KEY: achievements}
        return other

    def _settle_absorbed(self, absorbed: QueueEntry | None, entry: QueueEntry, kept: bool) -> None:
        if absorbed is None:
            return
        if not kept:
            # The retried entry was taken over elsewhere; give the other digest back.
            self.store.update(absorbed.id, {"status": QueueStatus.QUEUED}, expected_status=QueueStatus.PROCESSING)
            return
        self.store.update(
            absorbed.id,
            {"status": QueueStatus.FAILED, "last_error": MERGED_NOTE.format(entry_id=entry.id)},
            expected_status=QueueStatus.PROCESSING,
        )
        logger.info(
            f"entry_id={entry.id} merged_entry_id={absorbed.id} user_id={entry.user_id} event=digest_folded "
            f"scheduled_for={absorbed.scheduled_for.isoformat()}"
        )

    def reclaim_stuck(self, now: datetime) -> DispatchSummary:
        """Return entries abandoned in Processing (e.g. a crash mid-send) to the queue.

        Each reclaim counts as a spent attempt; an entry out of attempts is
        marked Failed instead. A reclaimed entry may be delivered twice if the
        crash happened after the provider accepted it.
        """
        now = self.windows.localize(now)
        threshold = now - timedelta(minutes=self.config.STUCK_PROCESSING_MINUTES)
        summary = DispatchSummary()
        try:
            stuck = self.store.find_stuck(threshold)
        except Exception as e:
            logger.exception("event=find_stuck_failed")
            return DispatchSummary(error=describe(e))

        for entry in stuck:
            attempts = min(entry.attempts + 1, entry.max_attempts)
            patch = {"attempts": attempts, "last_error": STUCK_ERROR}
            absorbed = None
            try:
                if attempts >= entry.max_attempts:
                    patch["status"] = QueueStatus.FAILED
                else:
                    patch["status"] = QueueStatus.QUEUED
                    patch["scheduled_for"] = self.windows.retry_time(entry.notification_type, now, attempts)
                    absorbed = self._absorb_queued_digest(entry, patch)
                reclaimed = self.store.update(entry.id, patch, expected_status=QueueStatus.PROCESSING)
                self._settle_absorbed(absorbed, entry, reclaimed)
            except Exception as e:
                logger.exception(f"entry_id={entry.id} event=reclaim_failed")
                summary.results.append(_result(entry, QueueStatus.PROCESSING, describe(e)))
                continue
            if not reclaimed:
                summary.skipped += 1
                continue
            logger.warning(f"entry_id={entry.id} user_id={entry.user_id} event=reclaimed status={patch['status'].value}")
            summary.results.append(_result(entry, patch["status"], STUCK_ERROR))
            if patch["status"] == QueueStatus.FAILED:
                summary.failed += 1
            else:
                summary.retried += 1
        return summary
