"""
MODULE OVERVIEW:
An in-process Queue Store.

WHAT IS HAPPENING HERE:
All rows live in one dict guarded by a single lock, so `claim` is a real
compare-and-swap even when two ticks run on different threads. Every read
hands out a copy: callers can never mutate a stored entry behind the store's
back, which is how a document database behaves too.
"""
import threading
import uuid
from datetime import datetime
from typing import Any

from notify_scheduler.collaborators import QueueStore
from notify_scheduler.errors import QueueStoreError
from notify_scheduler.models import NotificationType, Phase, QueueEntry, QueueStatus


class InMemoryQueueStore(QueueStore):
    def __init__(self):
        self._entries: dict[str, QueueEntry] = {}
        self._phase_runs: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def _require(self, entry_id: str) -> QueueEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise QueueStoreError(f"unknown queue entry: {entry_id}") from None

    def create(self, entry: QueueEntry) -> str:
        with self._lock:
            entry_id = str(uuid.uuid4())
            self._entries[entry_id] = entry.model_copy(update={"id": entry_id}, deep=True)
            return entry_id

    def get(self, entry_id: str) -> QueueEntry | None:
        with self._lock:
            entry = self._entries.get(entry_id)
            return entry.model_copy(deep=True) if entry else None

    def all(self) -> list[QueueEntry]:
        with self._lock:
            return [entry.model_copy(deep=True) for entry in self._entries.values()]

    def find_merge_candidate(
        self, user_id: str, notification_type: NotificationType, start: datetime, end: datetime
    ) -> QueueEntry | None:
        with self._lock:
            for entry in self._entries.values():
                if (
                    entry.user_id == user_id
                    and entry.notification_type == notification_type
                    and entry.status == QueueStatus.QUEUED
                    and start <= entry.scheduled_for < end
                ):
                    return entry.model_copy(deep=True)
            return None

    def claim(self, entry_id: str, claimed_at: datetime | None = None) -> bool:
        patch: dict[str, Any] = {"status": QueueStatus.PROCESSING}
        if claimed_at is not None:
            patch["last_attempt_at"] = claimed_at
        return self.update(entry_id, patch, expected_status=QueueStatus.QUEUED)

    def update(self, entry_id: str, patch: dict[str, Any], expected_status: QueueStatus | None = None) -> bool:
        with self._lock:
            entry = self._require(entry_id)
            if expected_status is not None and entry.status != expected_status:
                return False
            # Re-validate so a patch can never break the entry invariants.
            self._entries[entry_id] = QueueEntry.model_validate({**entry.model_dump(), **patch, "id": entry_id})
            return True

    def append_to_payload(self, entry_id: str, key: str, item: Any) -> bool:
        with self._lock:
            entry = self._require(entry_id)
            if entry.status != QueueStatus.QUEUED:
                return False
            items = entry.payload.setdefault(key, [])
            items.append(item)
            return True

    def query_due(
        self, notification_type: NotificationType | None, now: datetime, limit: int | None = None
    ) -> list[QueueEntry]:
        with self._lock:
            due = [
                entry.model_copy(deep=True)
                for entry in self._entries.values()
                if entry.status == QueueStatus.QUEUED
                and entry.scheduled_for <= now
                and (notification_type is None or entry.notification_type == notification_type)
            ]
        due.sort(key=lambda entry: entry.scheduled_for)
        return due[:limit] if limit is not None else due

    def count_status(self, user_id: str, status: QueueStatus, start: datetime, end: datetime) -> int:
        with self._lock:
            return sum(
                1
                for entry in self._entries.values()
                if entry.user_id == user_id
                and entry.status == status
                and entry.last_attempt_at is not None
                and start <= entry.last_attempt_at < end
            )

    def status_counts(self) -> dict[QueueStatus, int]:
        counts = {status: 0 for status in QueueStatus}
        with self._lock:
            for entry in self._entries.values():
                counts[entry.status] += 1
        return counts

    def find_stuck(self, before: datetime) -> list[QueueEntry]:
        with self._lock:
            return [
                entry.model_copy(deep=True)
                for entry in self._entries.values()
                if entry.status == QueueStatus.PROCESSING
                and (entry.last_attempt_at is None or entry.last_attempt_at < before)
            ]

    def claim_phase_run(self, phase: Phase, window_key: str) -> bool:
        marker = (Phase(phase).value, window_key)
        with self._lock:
            if marker in self._phase_runs:
                return False
            self._phase_runs.add(marker)
            return True
