from __future__ import annotations

import threading

import httpx

from conftest import ts
from notify_scheduler import NotificationScheduler
from notify_scheduler.collaborators import PlainTextComposer
from notify_scheduler.errors import QueueStoreError, TransportPermanent, TransportTransient
from notify_scheduler.models import NotificationType, QueueEntry, QueueStatus

STREAK = NotificationType.STREAK_MILESTONE
DIGEST = NotificationType.ACHIEVEMENT_DIGEST


def test_due_entry_is_sent_once(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", STREAK, {"streak": 7})

    early = scheduler.process_due(STREAK, now=ts(2, 14, 1))
    summary = scheduler.process_due(STREAK, now=ts(2, 14, 5))
    again = scheduler.process_due(STREAK, now=ts(2, 14, 10))

    assert early.processed == 0 and transport.sent == []
    assert summary.processed == 1 and summary.failed == 0
    assert again.processed == 0
    assert transport.sent == [("alice@example.com", "streak_milestone", queued.entry_id)]
    assert transport.timeouts == [10.0]

    entry = store.get(queued.entry_id)
    assert entry.status == QueueStatus.SENT
    assert entry.attempts == 1
    assert entry.last_attempt_at == ts(2, 14, 5)
    assert entry.last_error is None


def test_transient_failures_back_off_then_fail(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", STREAK, {})
    transport.fail_with(
        TransportTransient("provider timeout"),
        TransportTransient("provider timeout"),
        TransportTransient("provider timeout"),
    )

    first = scheduler.process_due(STREAK, now=ts(2, 14, 5))
    entry = store.get(queued.entry_id)
    assert first.retried == 1
    assert entry.status == QueueStatus.QUEUED
    assert entry.attempts == 1
    assert entry.scheduled_for == ts(2, 15, 5)
    assert entry.last_error == "TransportTransient: provider timeout"

    # Not due again before the backoff expires.
    assert scheduler.process_due(STREAK, now=ts(2, 15, 0)).retried == 0

    scheduler.process_due(STREAK, now=ts(2, 15, 5))
    entry = store.get(queued.entry_id)
    assert entry.attempts == 2
    assert entry.scheduled_for == ts(2, 17, 5)

    last = scheduler.process_due(STREAK, now=ts(2, 17, 5))
    entry = store.get(queued.entry_id)
    assert last.failed == 1 and last.retried == 0
    assert entry.status == QueueStatus.FAILED
    assert entry.attempts == 3
    assert transport.sent == []

    assert scheduler.process_due(STREAK, now=ts(3, 12, 0)).processed == 0


def test_permanent_failure_is_not_retried(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", STREAK, {})
    transport.fail_with(TransportPermanent("invalid recipient"))

    summary = scheduler.process_due(STREAK, now=ts(2, 14, 5))

    entry = store.get(queued.entry_id)
    assert summary.failed == 1 and summary.retried == 0
    assert entry.status == QueueStatus.FAILED
    assert entry.attempts == 1
    assert entry.last_error == "TransportPermanent: invalid recipient"


def test_unclassified_errors_are_retried(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", STREAK, {})
    transport.fail_with(RuntimeError("boom"))

    scheduler.process_due(STREAK, now=ts(2, 14, 5))

    entry = store.get(queued.entry_id)
    assert entry.status == QueueStatus.QUEUED
    assert entry.last_error == "Unknown: boom"


def test_httpx_network_errors_count_as_transient(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", STREAK, {})
    transport.fail_with(httpx.ConnectError("connection refused"))

    scheduler.process_due(STREAK, now=ts(2, 14, 5))

    assert store.get(queued.entry_id).last_error.startswith("TransportTransient")


def test_cap_is_enforced_again_at_dispatch(scheduler, store, transport) -> None:
    ids = [scheduler.queue_notification("alice", STREAK, {"n": n}).entry_id for n in range(3)]

    summary = scheduler.process_due(STREAK, now=ts(2, 14, 5))

    assert summary.processed == 2
    assert summary.rate_limited == 1
    assert len(transport.sent) == 2
    statuses = sorted(store.get(entry_id).status.value for entry_id in ids)
    assert statuses == ["rate_limited", "sent", "sent"]
    limited = next(store.get(i) for i in ids if store.get(i).status == QueueStatus.RATE_LIMITED)
    assert limited.last_error == "RateLimited: daily email limit reached"

    # Rate limited entries are dropped, not retried tomorrow.
    assert scheduler.process_due(STREAK, now=ts(3, 14, 5)).processed == 0


def test_compose_failure_is_recorded_on_the_entry(store, oracle, transport, clock, config) -> None:
    scheduler = NotificationScheduler(store=store, oracle=oracle, transport=transport, clock=clock, config=config)
    queued = scheduler.queue_notification("alice", STREAK, {})  # no to_address in payload

    summary = scheduler.process_due(STREAK, now=ts(2, 14, 5))

    entry = store.get(queued.entry_id)
    assert summary.failed == 1
    assert entry.status == QueueStatus.FAILED
    assert entry.last_error.startswith("TransportPermanent: no recipient address")


def test_plain_text_composer_lists_digest_achievements(store, oracle, transport, clock, config) -> None:
    composer = PlainTextComposer(address_lookup=lambda user_id: f"{user_id}@mail.example.com")
    scheduler = NotificationScheduler(
        store=store, oracle=oracle, transport=transport, composer=composer, clock=clock, config=config
    )
    scheduler.queue_notification("alice", DIGEST, {"name": "First model"})
    scheduler.queue_notification("alice", DIGEST, {"id": "ten-models"})

    summary = scheduler.process_due(DIGEST, now=ts(2, 20, 1))

    assert summary.processed == 1
    to_address, subject, body = transport.sent[0]
    assert to_address == "alice@mail.example.com"
    assert subject == "Your achievements today"
    assert "- First model\n- ten-models" in body


def test_store_failure_is_reported_not_raised(scheduler, store, monkeypatch) -> None:
    def broken(*args, **kwargs):
        raise QueueStoreError("database is locked")

    monkeypatch.setattr(store, "query_due", broken)

    summary = scheduler.process_due(STREAK, now=ts(2, 14, 5))

    assert summary.error == "Unknown: database is locked"
    assert summary.processed == 0


def test_each_entry_is_claimed_by_exactly_one_worker(scheduler, store, transport) -> None:
    for n in range(20):
        scheduler.queue_notification(f"user-{n}", STREAK, {})

    barrier = threading.Barrier(4)
    summaries = []

    def worker():
        barrier.wait()
        summaries.append(scheduler.process_due(STREAK, now=ts(2, 14, 5)))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(s.processed for s in summaries) == 20
    assert len(transport.sent) == 20
    assert len({body for _, _, body in transport.sent}) == 20


def _digests(store, user_id):
    return [e for e in store.all() if e.notification_type == DIGEST and e.user_id == user_id]


def test_digest_retry_stays_on_the_evening_window(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", DIGEST, {"id": "a"})
    # Lands after tonight's window opened, so it starts tomorrow's digest.
    tomorrow = scheduler.queue_notification("alice", DIGEST, {"id": "b"}, now=ts(2, 20, 0, 30))
    assert tomorrow.entry_id != queued.entry_id
    transport.fail_with(TransportTransient("503"))

    summary = scheduler.process_due(DIGEST, now=ts(2, 20, 1))

    assert summary.retried == 1
    retried = store.get(queued.entry_id)
    assert retried.status == QueueStatus.QUEUED
    assert retried.scheduled_for == ts(3, 20, 0)
    assert retried.payload["achievements"] == [{"id": "a"}, {"id": "b"}]
    folded = store.get(tomorrow.entry_id)
    assert folded.status == QueueStatus.FAILED
    assert folded.last_error == f"merged into digest {queued.entry_id}"
    assert [e.id for e in _digests(store, "alice") if e.status == QueueStatus.QUEUED] == [queued.entry_id]

    later = scheduler.queue_notification("alice", DIGEST, {"id": "c"}, now=ts(3, 10, 0))
    assert later.entry_id == queued.entry_id
    sent = scheduler.process_due(DIGEST, now=ts(3, 20, 1))

    assert sent.processed == 1
    assert transport.sent == [("alice@example.com", "achievement_digest", queued.entry_id)]
    assert store.get(queued.entry_id).payload["achievements"] == [{"id": "a"}, {"id": "b"}, {"id": "c"}]


def test_digest_retry_without_a_queued_digest_keeps_its_payload(scheduler, store, transport) -> None:
    queued = scheduler.queue_notification("alice", DIGEST, {"id": "a"})
    scheduler.queue_notification("bob", DIGEST, {"id": "b"}, now=ts(2, 20, 0, 30))
    transport.fail_with(TransportTransient("503"))

    scheduler.process_due(DIGEST, now=ts(2, 20, 1))

    assert store.get(queued.entry_id).payload["achievements"] == [{"id": "a"}]
    assert all(e.status == QueueStatus.QUEUED for e in _digests(store, "bob"))


def test_rescheduled_entry_is_released_after_claim(scheduler, store, transport, monkeypatch) -> None:
    queued = scheduler.queue_notification("alice", STREAK, {})
    stale = store.get(queued.entry_id)
    # Another worker pushed the entry out after our query_due read it.
    store.update(queued.entry_id, {"scheduled_for": ts(2, 18, 0)})
    monkeypatch.setattr(store, "query_due", lambda *args, **kwargs: [stale])

    summary = scheduler.process_due(STREAK, now=ts(2, 14, 5))

    assert summary.skipped == 1
    assert transport.sent == []
    assert store.get(queued.entry_id).status == QueueStatus.QUEUED


def test_reclaim_stuck_requeues_abandoned_entries(scheduler, store) -> None:
    entry_id = store.create(
        QueueEntry(
            user_id="alice",
            notification_type=STREAK,
            queued_at=ts(2, 13, 0),
            scheduled_for=ts(2, 13, 2),
            status=QueueStatus.PROCESSING,
            last_attempt_at=ts(2, 13, 5),
        )
    )
    fresh_id = store.create(
        QueueEntry(
            user_id="bob",
            notification_type=STREAK,
            queued_at=ts(2, 13, 50),
            scheduled_for=ts(2, 13, 52),
            status=QueueStatus.PROCESSING,
            last_attempt_at=ts(2, 13, 55),
        )
    )

    summary = scheduler.reclaim_stuck(now=ts(2, 14, 0))

    assert summary.retried == 1
    entry = store.get(entry_id)
    assert entry.status == QueueStatus.QUEUED
    assert entry.attempts == 1
    assert entry.scheduled_for == ts(2, 15, 0)
    assert entry.last_error == "Unknown: abandoned while processing"
    assert store.get(fresh_id).status == QueueStatus.PROCESSING


def test_reclaim_stuck_fails_entries_out_of_attempts(scheduler, store) -> None:
    entry_id = store.create(
        QueueEntry(
            user_id="alice",
            notification_type=STREAK,
            queued_at=ts(2, 10, 0),
            scheduled_for=ts(2, 10, 2),
            status=QueueStatus.PROCESSING,
            attempts=2,
            last_attempt_at=ts(2, 12, 0),
        )
    )

    summary = scheduler.reclaim_stuck(now=ts(2, 14, 0))

    assert summary.failed == 1
    assert store.get(entry_id).status == QueueStatus.FAILED
    assert store.get(entry_id).attempts == 3


def test_reclaimed_digest_takes_over_the_next_days_digest(scheduler, store) -> None:
    entry_id = store.create(
        QueueEntry(
            user_id="alice",
            notification_type=DIGEST,
            payload={"achievements": [{"id": "a"}]},
            queued_at=ts(2, 10, 0),
            scheduled_for=ts(2, 20, 0),
            status=QueueStatus.PROCESSING,
            last_attempt_at=ts(2, 20, 1),
        )
    )
    tomorrow = scheduler.queue_notification("alice", DIGEST, {"id": "b"}, now=ts(2, 20, 2))

    summary = scheduler.reclaim_stuck(now=ts(2, 21, 0))

    assert summary.retried == 1
    entry = store.get(entry_id)
    assert entry.status == QueueStatus.QUEUED
    assert entry.scheduled_for == ts(3, 20, 0)
    assert entry.payload["achievements"] == [{"id": "a"}, {"id": "b"}]
    assert store.get(tomorrow.entry_id).status == QueueStatus.FAILED
    assert [e.id for e in _digests(store, "alice") if e.status == QueueStatus.QUEUED] == [entry_id]
