"""
InMemoryReminderStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database)
  - Full interface compatibility with SqlReminderStore
  - Conditional transitions are atomic within one event loop: no method
    awaits between reading a schedule and writing it
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
Never share one across processes; use the SQL backend for that.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from typing import Optional

from core.errors import CommitError
from database.store_base import BaseReminderStore
from models.schemas import (
    Credential, MilestoneKind, NotificationRecord, NotificationSchedule,
    Owner, ScheduleStatus,
)

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DuplicateRecordError(CommitError):
    """A delivery record for this (credential, milestone) already exists."""


class InMemoryReminderStore(BaseReminderStore):
    """
    Full-featured in-memory store with the same interface as SqlReminderStore.
    Hands out copies so callers cannot mutate stored state by accident.
    """

    def __init__(self):
        self._owners: dict[str, Owner] = {}                     # id → owner
        self._credentials: dict[str, Credential] = {}           # id → credential
        self._schedules: dict[str, NotificationSchedule] = {}   # id → schedule
        self._records: dict[str, NotificationRecord] = {}       # "cred_id:milestone" → record
        logger.info("inmemory_store_initialized")

    # ── Owners ────────────────────────────────────────────

    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        owner = self._owners.get(owner_id)
        return owner.model_copy() if owner else None

    async def upsert_owner(self, owner: Owner) -> Owner:
        self._owners[owner.id] = owner.model_copy()
        return owner

    # ── Credentials ───────────────────────────────────────

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        cred = self._credentials.get(credential_id)
        return cred.model_copy() if cred else None

    async def create_credential_with_schedules(
        self, credential: Credential, schedules: list[NotificationSchedule],
    ) -> Credential:
        keys = {s.milestone for s in schedules}
        if len(keys) != len(schedules):
            raise ValueError("duplicate milestone in schedule set")
        if credential.id in self._credentials:
            raise ValueError(f"credential {credential.id} already exists")
        # Build everything first, then publish in one step
        staged = {s.id: s.model_copy(update={"credential_id": credential.id}) for s in schedules}
        self._credentials[credential.id] = credential.model_copy()
        self._schedules.update(staged)
        logger.info("credential_created",
                    credential_id=credential.id,
                    owner_id=credential.owner_id,
                    schedules=len(schedules))
        return credential

    async def deactivate_credential(self, credential_id: str) -> bool:
        cred = self._credentials.get(credential_id)
        if not cred:
            return False
        cred.is_active = False
        return True

    async def list_active_credentials(self, owner_id: str) -> list[Credential]:
        creds = [
            c for c in self._credentials.values()
            if c.owner_id == owner_id and c.is_active
        ]
        creds.sort(key=lambda c: (c.expiry_date, c.created_at))
        return [c.model_copy() for c in creds]

    # ── Schedules ─────────────────────────────────────────

    async def get_schedule(self, schedule_id: str) -> Optional[NotificationSchedule]:
        s = self._schedules.get(schedule_id)
        return s.model_copy() if s else None

    async def list_schedules(self, credential_ids: list[str]) -> list[NotificationSchedule]:
        wanted = set(credential_ids)
        found = [s for s in self._schedules.values() if s.credential_id in wanted]
        found.sort(key=lambda s: (s.credential_id, s.scheduled_date))
        return [s.model_copy() for s in found]

    async def find_due_schedules(
        self, now: datetime, today: date, claim_cutoff: datetime,
    ) -> list[NotificationSchedule]:
        due = []
        for s in self._schedules.values():
            if s.scheduled_date > today:
                continue
            cred = self._credentials.get(s.credential_id)
            if not cred or not cred.is_active:
                continue
            if s.attempt_count > 0 and cred.expiry_date < today:
                continue
            if s.status == ScheduleStatus.PENDING:
                if s.next_attempt_at is None or s.next_attempt_at <= now:
                    due.append(s.model_copy())
            elif s.status == ScheduleStatus.CLAIMED:
                if s.claimed_at is not None and s.claimed_at < claim_cutoff:
                    due.append(s.model_copy())
        return due

    async def claim_schedule(
        self, schedule_id: str, claimant: str, now: datetime, claim_cutoff: datetime,
    ) -> bool:
        s = self._schedules.get(schedule_id)
        if not s:
            return False
        claimable = s.status == ScheduleStatus.PENDING or (
            s.status == ScheduleStatus.CLAIMED
            and s.claimed_at is not None
            and s.claimed_at < claim_cutoff
        )
        if not claimable:
            return False
        s.status = ScheduleStatus.CLAIMED
        s.claimed_by = claimant
        s.claimed_at = now
        s.updated_at = now
        return True

    async def release_claim(self, schedule_id: str, claimant: str, error: str = "") -> bool:
        s = self._schedules.get(schedule_id)
        if not s or s.status != ScheduleStatus.CLAIMED or s.claimed_by != claimant:
            return False
        s.status = ScheduleStatus.PENDING
        s.claimed_by = None
        s.claimed_at = None
        s.last_error = error
        s.updated_at = _utcnow()
        return True

    async def defer_schedule(self, schedule_id: str, next_attempt_at: datetime, reason: str = "") -> Optional[int]:
        s = self._schedules.get(schedule_id)
        if not s or s.status != ScheduleStatus.PENDING:
            return None
        s.attempt_count += 1
        s.next_attempt_at = next_attempt_at
        s.last_error = reason
        s.updated_at = _utcnow()
        return s.attempt_count

    async def commit_delivery(self, schedule_id: str, record: NotificationRecord) -> None:
        key = f"{record.credential_id}:{record.milestone.value}"
        if key in self._records:
            raise DuplicateRecordError(key)
        s = self._schedules.get(schedule_id)
        if not s:
            raise CommitError(f"Schedule {schedule_id} not found")
        self._records[key] = record.model_copy()
        if s.status != ScheduleStatus.SENT:
            s.status = ScheduleStatus.SENT
            s.last_error = ""
            s.updated_at = _utcnow()

    async def finalize_sent(self, schedule_id: str) -> bool:
        s = self._schedules.get(schedule_id)
        if not s or s.status == ScheduleStatus.SENT:
            return False
        s.status = ScheduleStatus.SENT
        s.updated_at = _utcnow()
        return True

    # ── Audit records ─────────────────────────────────────

    async def get_record(self, credential_id: str, milestone: MilestoneKind) -> Optional[NotificationRecord]:
        rec = self._records.get(f"{credential_id}:{MilestoneKind(milestone).value}")
        return rec.model_copy() if rec else None

    async def list_records(
        self, owner_id: Optional[str] = None, credential_id: Optional[str] = None, limit: int = 100,
    ) -> list[NotificationRecord]:
        found = [
            r for r in self._records.values()
            if (not owner_id or r.owner_id == owner_id)
            and (not credential_id or r.credential_id == credential_id)
        ]
        found.sort(key=lambda r: r.sent_at, reverse=True)
        return [r.model_copy() for r in found[:limit]]
