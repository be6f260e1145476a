"""
MODULE OVERVIEW:
The abstract collaborators the scheduler depends on.

WHAT IS HAPPENING HERE:
The core never talks to a database, a mail provider or the user profile
collection directly. It only sees these interfaces. The Queue Store contract
is deliberately small: the one synchronization primitive it has to offer is a
compare-and-swap "claim" (plus the same conditional write for phase markers
and digest appends), which any relational, document or key-value store can
provide.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Iterable

from loguru import logger

from notify_scheduler.errors import TransportPermanent
from notify_scheduler.models import (
    NotificationType,
    OutgoingMessage,
    PermissionDecision,
    Phase,
    QueueEntry,
    QueueStatus,
)


class QueueStore(ABC):
    @abstractmethod
    def create(self, entry: QueueEntry) -> str:
        """Persist a new entry and return the id the store assigned to it."""

    @abstractmethod
    def get(self, entry_id: str) -> QueueEntry | None:
        ...

    @abstractmethod
    def find_merge_candidate(
        self, user_id: str, notification_type: NotificationType, start: datetime, end: datetime
    ) -> QueueEntry | None:
        """A Queued entry of this user/type with start <= scheduled_for < end."""

    @abstractmethod
    def claim(self, entry_id: str, claimed_at: datetime | None = None) -> bool:
        """Queued -> Processing, succeeding for exactly one caller.

        `claimed_at` is stored as `last_attempt_at` in the same write.
        """

    @abstractmethod
    def update(self, entry_id: str, patch: dict[str, Any], expected_status: QueueStatus | None = None) -> bool:
        """Apply `patch`; when `expected_status` is given, only if the entry still has it."""

    @abstractmethod
    def append_to_payload(self, entry_id: str, key: str, item: Any) -> bool:
        """Append `item` to payload[key] of a still-Queued entry."""

    @abstractmethod
    def query_due(
        self, notification_type: NotificationType | None, now: datetime, limit: int | None = None
    ) -> list[QueueEntry]:
        """Queued entries with scheduled_for <= now, oldest first."""

    @abstractmethod
    def count_status(self, user_id: str, status: QueueStatus, start: datetime, end: datetime) -> int:
        """Entries of `user_id` in `status` whose last attempt falls in [start, end)."""

    @abstractmethod
    def status_counts(self) -> dict[QueueStatus, int]:
        ...

    @abstractmethod
    def find_stuck(self, before: datetime) -> list[QueueEntry]:
        """Processing entries whose last attempt started before `before`."""

    @abstractmethod
    def claim_phase_run(self, phase: Phase, window_key: str) -> bool:
        """Record that a one-shot phase ran for `window_key`. False if it already had."""


class PermissionOracle(ABC):
    @abstractmethod
    def can_send(self, user_id: str, notification_type: NotificationType) -> PermissionDecision:
        ...


class MailTransport(ABC):
    @abstractmethod
    def send(self, to_address: str, subject: str, body: str, timeout: float | None = None) -> str:
        """Deliver one message and return the provider's message id.

        Raises TransportTransient or TransportPermanent on failure.
        """


class MessageComposer(ABC):
    @abstractmethod
    def compose(self, entry: QueueEntry) -> OutgoingMessage:
        ...


class WeeklyStatsSupplier(ABC):
    @abstractmethod
    def eligible_users(self) -> Iterable[str]:
        ...

    @abstractmethod
    def weekly_stats(self, user_id: str, week_start: datetime, week_end: datetime) -> dict[str, Any]:
        ...

    def community_stats(self) -> dict[str, Any]:
        return {}


class ActivityTracker(ABC):
    @abstractmethod
    def last_activity(self, now: datetime) -> Iterable[tuple[str, datetime]]:
        """(user_id, last_active) pairs for users who may have gone quiet."""

    def reengagement_context(self, user_id: str) -> dict[str, Any]:
        return {}


# ==========================
# DEFAULT IMPLEMENTATIONS
# ==========================

SUBJECTS = {
    NotificationType.ACHIEVEMENT_DIGEST: "Your achievements today",
    NotificationType.STREAK_MILESTONE: "Streak milestone reached",
    NotificationType.WEEKLY_SUMMARY: "Your weekly painting summary",
    NotificationType.RE_ENGAGEMENT: "We miss you at the painting table",
}


class PlainTextComposer(MessageComposer):
    """Builds a plain-text message. HTML rendering lives outside this library.

    The recipient comes from `address_lookup(user_id)` when one is supplied,
    otherwise from `payload["to_address"]`.
    """

    def __init__(self, address_lookup: Callable[[str], str | None] | None = None):
        self.address_lookup = address_lookup

    def _address(self, entry: QueueEntry) -> str | None:
        if self.address_lookup is not None:
            address = self.address_lookup(entry.user_id)
            if address:
                return address
        return entry.payload.get("to_address")

    def compose(self, entry: QueueEntry) -> OutgoingMessage:
        address = self._address(entry)
        if not address:
            raise TransportPermanent(f"no recipient address for user {entry.user_id}")

        lines = [SUBJECTS[entry.notification_type], ""]
        if entry.notification_type is NotificationType.ACHIEVEMENT_DIGEST:
            for achievement in entry.payload.get("achievements", []):
                lines.append(f"- {achievement.get('name', achievement.get('id', 'achievement'))}")
        else:
            for key, value in entry.payload.items():
                if key != "to_address":
                    lines.append(f"{key}: {value}")

        return OutgoingMessage(to_address=address, subject=SUBJECTS[entry.notification_type], body="\n".join(lines))


class AllowAllPermissionOracle(PermissionOracle):
    """Development stand-in: approves everything. Wire a real oracle in production."""

    def __init__(self):
        logger.warning("permission_oracle=allow_all event=configured reason='no eligibility rules wired'")

    def can_send(self, user_id: str, notification_type: NotificationType) -> PermissionDecision:
        return PermissionDecision(allowed=True)


class NoEligibleUsers(WeeklyStatsSupplier):
    def eligible_users(self) -> Iterable[str]:
        return []

    def weekly_stats(self, user_id: str, week_start: datetime, week_end: datetime) -> dict[str, Any]:
        return {}


class NoInactiveUsers(ActivityTracker):
    def last_activity(self, now: datetime) -> Iterable[tuple[str, datetime]]:
        return []
