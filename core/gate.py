"""
Recipient Gate — decides whether a reminder may be delivered right now.

A rejection never consumes the schedule. It stays pending and is
re-checked after an exponential backoff, so an owner who becomes
reachable later still gets the reminder.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from database.store_base import BaseReminderStore
from models.schemas import Credential, Owner, OwnerStatus

logger = structlog.get_logger()


@dataclass
class GateDecision:
    allowed: bool
    owner: Optional[Owner] = None
    address: str = ""
    reason: str = ""


def backoff_delay(attempt: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Delay before re-checking after the given (1-based) rejected attempt."""
    attempt = max(attempt, 1)
    seconds = min(base_seconds * (2 ** (attempt - 1)), max_seconds)
    return timedelta(seconds=seconds)


class RecipientGate:

    def __init__(self, store: BaseReminderStore, backoff_base_seconds: int = 3600,
                 backoff_max_seconds: int = 604800):
        self.store = store
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds

    async def check(self, credential: Credential) -> GateDecision:
        if not credential.is_active:
            return GateDecision(allowed=False, reason="credential_inactive")

        owner = await self.store.get_owner(credential.owner_id)
        if owner is None:
            return GateDecision(allowed=False, reason="owner_not_found")
        if owner.status != OwnerStatus.ACTIVE:
            return GateDecision(allowed=False, owner=owner, reason="owner_inactive")
        if not owner.delivery_address.strip():
            return GateDecision(allowed=False, owner=owner, reason="no_delivery_address")

        return GateDecision(allowed=True, owner=owner, address=owner.delivery_address.strip())

    def next_attempt_at(self, now: datetime, attempt: int) -> datetime:
        return now + backoff_delay(attempt, self.backoff_base_seconds, self.backoff_max_seconds)

    async def defer(self, schedule_id: str, attempt_count: int, now: datetime, reason: str) -> Optional[int]:
        """Push a pending schedule back after a rejection; returns the new attempt count."""
        next_at = self.next_attempt_at(now, attempt_count + 1)
        new_count = await self.store.defer_schedule(schedule_id, next_at, reason)
        logger.info("reminder_deferred",
                    schedule_id=schedule_id,
                    reason=reason,
                    attempt=new_count,
                    next_attempt_at=next_at.isoformat())
        return new_count
