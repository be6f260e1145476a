"""
MODULE OVERVIEW:
SQLite-backed Queue Store used by the CLI and the ops server.

WHAT IS HAPPENING HERE:
The claim is a single conditional statement:

    UPDATE notification_queue SET status = 'processing'
    WHERE id = ? AND status = 'queued'

SQLite serialises writers, so when two ticks race exactly one of them sees
`rowcount == 1`. Read-modify-write operations (patch validation, digest
appends) run inside `BEGIN IMMEDIATE` so no other writer can slip in between
the read and the write. Timestamps are stored as UTC epoch seconds.
"""
import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from notify_scheduler.collaborators import QueueStore
from notify_scheduler.errors import QueueStoreError
from notify_scheduler.models import NotificationType, Phase, QueueEntry, QueueStatus

COLUMNS = (
    "id",
    "user_id",
    "notification_type",
    "payload",
    "status",
    "queued_at",
    "scheduled_for",
    "attempts",
    "max_attempts",
    "last_attempt_at",
    "last_error",
)
TIMESTAMP_COLUMNS = ("queued_at", "scheduled_for", "last_attempt_at")


def _to_epoch(value: datetime | None) -> float | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_epoch(value: float | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _to_row(entry: QueueEntry) -> dict[str, Any]:
    row = entry.model_dump(mode="json")
    row["payload"] = json.dumps(entry.payload)
    for column in TIMESTAMP_COLUMNS:
        row[column] = _to_epoch(getattr(entry, column))
    return row


def _from_row(row: sqlite3.Row) -> QueueEntry:
    data = dict(row)
    data["payload"] = json.loads(data["payload"])
    for column in TIMESTAMP_COLUMNS:
        data[column] = _from_epoch(data[column])
    return QueueEntry.model_validate(data)


class SQLiteQueueStore(QueueStore):
    def __init__(self, db_path: str | Path, timeout: float = 5.0):
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            # Every operation opens its own connection; an in-memory db would vanish between them.
            raise ValueError("SQLiteQueueStore needs a file path; use InMemoryQueueStore instead")
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        except sqlite3.Error as e:
            raise QueueStoreError(f"cannot open {self.db_path}: {e}") from e
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise QueueStoreError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS notification_queue (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    notification_type TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'queued',
                    queued_at REAL NOT NULL,
                    scheduled_for REAL NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    max_attempts INTEGER NOT NULL DEFAULT 3,
                    last_attempt_at REAL,
                    last_error TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_due
                ON notification_queue(status, notification_type, scheduled_for)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_queue_user
                ON notification_queue(user_id, status, last_attempt_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS phase_runs (
                    phase TEXT NOT NULL,
                    window_key TEXT NOT NULL,
                    PRIMARY KEY (phase, window_key)
                )
            """)

    def create(self, entry: QueueEntry) -> str:
        entry_id = str(uuid.uuid4())
        row = _to_row(entry.model_copy(update={"id": entry_id}))
        placeholders = ", ".join(f":{column}" for column in COLUMNS)
        with self._connect() as conn:
            conn.execute(f"INSERT INTO notification_queue ({', '.join(COLUMNS)}) VALUES ({placeholders})", row)
        return entry_id

    def get(self, entry_id: str) -> QueueEntry | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM notification_queue WHERE id = ?", (entry_id,)).fetchone()
        return _from_row(row) if row else None

    def find_merge_candidate(
        self, user_id: str, notification_type: NotificationType, start: datetime, end: datetime
    ) -> QueueEntry | None:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM notification_queue
                WHERE user_id = ? AND notification_type = ? AND status = ?
                  AND scheduled_for >= ? AND scheduled_for < ?
                ORDER BY queued_at LIMIT 1
                """,
                (user_id, NotificationType(notification_type).value, QueueStatus.QUEUED.value,
                 _to_epoch(start), _to_epoch(end)),
            ).fetchone()
        return _from_row(row) if row else None

    def claim(self, entry_id: str, claimed_at: datetime | None = None) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE notification_queue
                SET status = ?, last_attempt_at = COALESCE(?, last_attempt_at)
                WHERE id = ? AND status = ?
                """,
                (QueueStatus.PROCESSING.value, _to_epoch(claimed_at), entry_id, QueueStatus.QUEUED.value),
            )
            return cursor.rowcount == 1

    def update(self, entry_id: str, patch: dict[str, Any], expected_status: QueueStatus | None = None) -> bool:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM notification_queue WHERE id = ?", (entry_id,)).fetchone()
            if row is None:
                raise QueueStoreError(f"unknown queue entry: {entry_id}")
            current = _from_row(row)
            if expected_status is not None and current.status != expected_status:
                return False
            # Re-validate so a patch can never break the entry invariants.
            updated = QueueEntry.model_validate({**current.model_dump(), **patch, "id": entry_id})
            new_row = _to_row(updated)
            assignments = ", ".join(f"{column} = :{column}" for column in COLUMNS if column != "id")
            conn.execute(f"UPDATE notification_queue SET {assignments} WHERE id = :id", new_row)
            return True

    def append_to_payload(self, entry_id: str, key: str, item: Any) -> bool:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status, payload FROM notification_queue WHERE id = ?", (entry_id,)
            ).fetchone()
            if row is None:
                raise QueueStoreError(f"unknown queue entry: {entry_id}")
            if row["status"] != QueueStatus.QUEUED.value:
                return False
            payload = json.loads(row["payload"])
            payload.setdefault(key, []).append(item)
            conn.execute(
                "UPDATE notification_queue SET payload = ? WHERE id = ?", (json.dumps(payload), entry_id)
            )
            return True

    def query_due(
        self, notification_type: NotificationType | None, now: datetime, limit: int | None = None
    ) -> list[QueueEntry]:
        sql = "SELECT * FROM notification_queue WHERE status = ? AND scheduled_for <= ?"
        params: list[Any] = [QueueStatus.QUEUED.value, _to_epoch(now)]
        if notification_type is not None:
            sql += " AND notification_type = ?"
            params.append(NotificationType(notification_type).value)
        sql += " ORDER BY scheduled_for"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_from_row(row) for row in rows]

    def count_status(self, user_id: str, status: QueueStatus, start: datetime, end: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) FROM notification_queue
                WHERE user_id = ? AND status = ? AND last_attempt_at >= ? AND last_attempt_at < ?
                """,
                (user_id, QueueStatus(status).value, _to_epoch(start), _to_epoch(end)),
            ).fetchone()
        return row[0]

    def status_counts(self) -> dict[QueueStatus, int]:
        counts = {status: 0 for status in QueueStatus}
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM notification_queue GROUP BY status").fetchall()
        for row in rows:
            counts[QueueStatus(row["status"])] = row["n"]
        return counts

    def find_stuck(self, before: datetime) -> list[QueueEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM notification_queue
                WHERE status = ? AND (last_attempt_at IS NULL OR last_attempt_at < ?)
                """,
                (QueueStatus.PROCESSING.value, _to_epoch(before)),
            ).fetchall()
        return [_from_row(row) for row in rows]

    def claim_phase_run(self, phase: Phase, window_key: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO phase_runs (phase, window_key) VALUES (?, ?)",
                (Phase(phase).value, window_key),
            )
            return cursor.rowcount == 1
