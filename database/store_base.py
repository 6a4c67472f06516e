"""
Abstract Reminder Store — Interface for all storage backends.

Implementations:
  - SqlReminderStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryReminderStore (dict-based, single-process, no persistence)

Every state transition of a schedule goes through a conditional method on
this interface (claim, release, commit, finalize). Callers never read a
schedule, decide, and write it back: the backend decides atomically and
reports whether the transition happened.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Optional

from models.schemas import (
    Credential, MilestoneKind, NotificationRecord, NotificationSchedule, Owner,
)


class BaseReminderStore(ABC):
    """Interface that all reminder store backends must implement."""

    # ── Owners ────────────────────────────────────────────────

    @abstractmethod
    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        ...

    @abstractmethod
    async def upsert_owner(self, owner: Owner) -> Owner:
        ...

    # ── Credentials ───────────────────────────────────────────

    @abstractmethod
    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        ...

    @abstractmethod
    async def create_credential_with_schedules(
        self, credential: Credential, schedules: list[NotificationSchedule],
    ) -> Credential:
        """Persist the credential and all its schedules in one transaction."""
        ...

    @abstractmethod
    async def deactivate_credential(self, credential_id: str) -> bool:
        ...

    @abstractmethod
    async def list_active_credentials(self, owner_id: str) -> list[Credential]:
        """Active credentials of an owner, earliest expiry first."""
        ...

    # ── Schedules ─────────────────────────────────────────────

    @abstractmethod
    async def get_schedule(self, schedule_id: str) -> Optional[NotificationSchedule]:
        ...

    @abstractmethod
    async def list_schedules(self, credential_ids: list[str]) -> list[NotificationSchedule]:
        ...

    @abstractmethod
    async def find_due_schedules(
        self, now: datetime, today: date, claim_cutoff: datetime,
    ) -> list[NotificationSchedule]:
        """
        Pending schedules (backoff elapsed) and claimed schedules whose
        claim is older than `claim_cutoff`, with scheduled_date <= today,
        belonging to active credentials. Schedules the gate has already
        deferred are dropped once their credential has expired; a schedule
        that was never attempted stays due however late the scan runs.
        """
        ...

    @abstractmethod
    async def claim_schedule(
        self, schedule_id: str, claimant: str, now: datetime, claim_cutoff: datetime,
    ) -> bool:
        """Compare-and-swap pending (or stale claimed) → claimed. True if won."""
        ...

    @abstractmethod
    async def release_claim(self, schedule_id: str, claimant: str, error: str = "") -> bool:
        """claimed → pending, only if still held by `claimant`."""
        ...

    @abstractmethod
    async def defer_schedule(self, schedule_id: str, next_attempt_at: datetime, reason: str = "") -> Optional[int]:
        """Push a pending schedule's next eligibility; returns the new attempt count."""
        ...

    @abstractmethod
    async def commit_delivery(self, schedule_id: str, record: NotificationRecord) -> None:
        """
        Append the audit record and mark the schedule sent, atomically.
        Raises CommitError when the write fails, including a duplicate record.
        """
        ...

    @abstractmethod
    async def finalize_sent(self, schedule_id: str) -> bool:
        """Mark a schedule sent without a new record (record already exists)."""
        ...

    # ── Audit records ─────────────────────────────────────────

    @abstractmethod
    async def get_record(self, credential_id: str, milestone: MilestoneKind) -> Optional[NotificationRecord]:
        ...

    @abstractmethod
    async def list_records(
        self, owner_id: Optional[str] = None, credential_id: Optional[str] = None, limit: int = 100,
    ) -> list[NotificationRecord]:
        """Most recent first."""
        ...
