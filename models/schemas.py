"""
Core data models for the reminder engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class MilestoneKind(str, Enum):
    SIX_MONTHS = "6months"
    THREE_MONTHS = "3months"
    ONE_WEEK = "1week"


class ScheduleStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    SENT = "sent"


class OwnerStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ItemOutcome(str, Enum):
    SENT = "sent"
    SKIPPED = "skipped"
    FAILED = "failed"


# ──────────────────────────────────────────────────────────────
#  Owner — the person who holds credentials
# ──────────────────────────────────────────────────────────────

class Owner(BaseModel):
    id: str = Field(default_factory=_new_id)
    display_name: str = ""
    status: OwnerStatus = OwnerStatus.ACTIVE
    delivery_address: str = ""               # LINE user id
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Credential — a tracked item with an expiry date
# ──────────────────────────────────────────────────────────────

class Credential(BaseModel):
    id: str = Field(default_factory=_new_id)
    owner_id: str
    credential_type: str                      # free text, e.g. "薬剤師免許"
    expiry_date: date
    is_active: bool = True
    image_url: str = ""
    created_at: datetime = Field(default_factory=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Schedules & audit records
# ──────────────────────────────────────────────────────────────

class NotificationSchedule(BaseModel):
    id: str = Field(default_factory=_new_id)
    credential_id: str
    milestone: MilestoneKind
    scheduled_date: date
    status: ScheduleStatus = ScheduleStatus.PENDING
    claimed_by: Optional[str] = None
    claimed_at: Optional[datetime] = None
    attempt_count: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: str = ""
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class NotificationRecord(BaseModel):
    """Append-only proof that a milestone reminder was delivered."""
    id: str = Field(default_factory=_new_id)
    owner_id: str
    recipient_address: str
    credential_id: str
    milestone: MilestoneKind
    content: str
    channel_message_id: str = ""
    sent_at: datetime = Field(default_factory=_utcnow)
    is_read: bool = False


# ──────────────────────────────────────────────────────────────
#  Results
# ──────────────────────────────────────────────────────────────

class ItemResult(BaseModel):
    schedule_id: str
    credential_id: str = ""
    milestone: Optional[MilestoneKind] = None
    outcome: ItemOutcome
    reason: Optional[str] = None


class ScanSummary(BaseModel):
    claimant: str
    started_at: datetime
    results: list[ItemResult] = []

    @property
    def processed_count(self) -> int:
        return len(self.results)

    def count(self, outcome: ItemOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_response(self) -> dict:
        return {
            "processedCount": self.processed_count,
            "sent": self.count(ItemOutcome.SENT),
            "skipped": self.count(ItemOutcome.SKIPPED),
            "failed": self.count(ItemOutcome.FAILED),
            "perItemResults": [
                {
                    "scheduleId": r.schedule_id,
                    "credentialId": r.credential_id,
                    "milestone": r.milestone.value if r.milestone else None,
                    "outcome": r.outcome.value,
                    **({"reason": r.reason} if r.reason else {}),
                }
                for r in self.results
            ],
        }


class ManualSendResult(BaseModel):
    owner_id: str
    credential_id: str = ""
    milestone: MilestoneKind
    message: str = ""
    outcome: ItemOutcome
    reason: Optional[str] = None
