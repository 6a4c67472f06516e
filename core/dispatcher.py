"""
Delivery Dispatcher — moves one due schedule through gate, claim, send, commit.

Normal path:
    gate ─rejected─▶ defer (stays pending, backoff)
      │
    claim (conditional update) ─lost─▶ skipped
      │
    audit check ─record exists─▶ finalize sent, no resend
      │
    render ▶ send ─failed─▶ release claim (pending, last_error)
      │
    commit (record + sent in one transaction) ─failed─▶ stays claimed

Recovery path (schedule found claimed past the claim timeout):
    claim ▶ record exists? finalize sent : release to pending

Delivery is at-least-once. The window for a duplicate is a crash between
a successful send and its commit; the LINE retry key narrows it further.
"""
from __future__ import annotations

import os
import socket
import uuid
import structlog
from datetime import datetime, timedelta, timezone
from typing import Optional

from channels.base import DeliveryChannel
from core.audit import AuditLog
from core.errors import CommitError, NotFoundError
from core.gate import RecipientGate
from core.renderer import parse_milestone, render_message
from database.store_base import BaseReminderStore
from models.schemas import (
    ItemOutcome, ItemResult, ManualSendResult, NotificationRecord,
    NotificationSchedule, ScheduleStatus,
)

logger = structlog.get_logger()


def new_claimant_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Dispatcher:

    def __init__(
        self,
        store: BaseReminderStore,
        channel: DeliveryChannel,
        gate: RecipientGate = None,
        audit: AuditLog = None,
        claim_timeout_seconds: int = 900,
    ):
        self.store = store
        self.channel = channel
        self.gate = gate or RecipientGate(store)
        self.audit = audit or AuditLog(store)
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    def claim_cutoff(self, now: datetime) -> datetime:
        return now - self.claim_timeout

    # ── Scan dispatch ─────────────────────────────────────

    async def dispatch(self, schedule: NotificationSchedule, claimant: str,
                       now: Optional[datetime] = None) -> ItemResult:
        now = now or datetime.now(timezone.utc)
        if schedule.status == ScheduleStatus.CLAIMED:
            return await self._recover(schedule, claimant, now)
        return await self._deliver(schedule, claimant, now)

    async def _recover(self, schedule: NotificationSchedule, claimant: str, now: datetime) -> ItemResult:
        log = logger.bind(schedule_id=schedule.id, previous_claimant=schedule.claimed_by)

        if not await self.store.claim_schedule(schedule.id, claimant, now, self.claim_cutoff(now)):
            return self._result(schedule, ItemOutcome.SKIPPED, "claimed_elsewhere")

        if await self.audit.was_delivered(schedule.credential_id, schedule.milestone):
            await self.store.finalize_sent(schedule.id)
            log.info("abandoned_claim_finalized")
            return self._result(schedule, ItemOutcome.SENT, "recovered")

        await self.store.release_claim(schedule.id, claimant, "claim abandoned before delivery")
        log.warning("abandoned_claim_released")
        return self._result(schedule, ItemOutcome.SKIPPED, "abandoned_claim_released")

    async def _deliver(self, schedule: NotificationSchedule, claimant: str, now: datetime) -> ItemResult:
        log = logger.bind(schedule_id=schedule.id, milestone=schedule.milestone.value)

        credential = await self.store.get_credential(schedule.credential_id)
        if credential is None:
            log.warning("credential_missing", credential_id=schedule.credential_id)
            return self._result(schedule, ItemOutcome.SKIPPED, "credential_not_found")

        decision = await self.gate.check(credential)
        if not decision.allowed:
            await self.gate.defer(schedule.id, schedule.attempt_count, now, decision.reason)
            return self._result(schedule, ItemOutcome.SKIPPED, decision.reason)

        if not await self.store.claim_schedule(schedule.id, claimant, now, self.claim_cutoff(now)):
            log.info("claim_lost")
            return self._result(schedule, ItemOutcome.SKIPPED, "claimed_elsewhere")

        if await self.audit.was_delivered(schedule.credential_id, schedule.milestone):
            await self.store.finalize_sent(schedule.id)
            log.info("already_delivered_finalized")
            return self._result(schedule, ItemOutcome.SENT, "recovered")

        text = render_message(schedule.milestone, credential.credential_type, credential.expiry_date)
        result = await self.channel.send(decision.address, text, {"schedule_id": schedule.id})

        if not result.success:
            await self.store.release_claim(schedule.id, claimant, result.error)
            log.warning("delivery_failed", error=result.error)
            return self._result(schedule, ItemOutcome.FAILED, "delivery_error")

        record = NotificationRecord(
            owner_id=credential.owner_id,
            recipient_address=decision.address,
            credential_id=credential.id,
            milestone=schedule.milestone,
            content=text,
            channel_message_id=result.channel_message_id,
            sent_at=now,
        )
        try:
            await self.store.commit_delivery(schedule.id, record)
        except CommitError as e:
            # Left claimed; the audit check on reclaim settles it
            log.error("delivery_commit_failed", error=str(e))
            return self._result(schedule, ItemOutcome.FAILED, "commit_error")

        log.info("reminder_sent",
                 credential_id=credential.id,
                 owner_id=credential.owner_id,
                 message_id=result.channel_message_id)
        return self._result(schedule, ItemOutcome.SENT)

    @staticmethod
    def _result(schedule: NotificationSchedule, outcome: ItemOutcome, reason: str = None) -> ItemResult:
        return ItemResult(
            schedule_id=schedule.id,
            credential_id=schedule.credential_id,
            milestone=schedule.milestone,
            outcome=outcome,
            reason=reason,
        )

    # ── Manual test send ──────────────────────────────────

    async def send_test(self, owner_id: str, milestone: str) -> ManualSendResult:
        """
        Send one reminder of the given kind to an owner, outside any schedule.
        Uses the owner's active credential that expires first. Writes no
        record and leaves every schedule untouched.
        """
        kind = parse_milestone(milestone)

        owner = await self.store.get_owner(owner_id)
        if owner is None:
            raise NotFoundError(f"Owner {owner_id} not found")

        credentials = await self.store.list_active_credentials(owner_id)
        if not credentials:
            raise NotFoundError(f"Owner {owner_id} has no active credential")
        credential = credentials[0]

        decision = await self.gate.check(credential)
        if not decision.allowed:
            return ManualSendResult(
                owner_id=owner_id, credential_id=credential.id, milestone=kind,
                outcome=ItemOutcome.SKIPPED, reason=decision.reason,
            )

        text = render_message(kind, credential.credential_type, credential.expiry_date)
        result = await self.channel.send(decision.address, text, {"test": True})
        logger.info("test_reminder_sent", owner_id=owner_id, milestone=kind.value, success=result.success)

        return ManualSendResult(
            owner_id=owner_id,
            credential_id=credential.id,
            milestone=kind,
            message=text,
            outcome=ItemOutcome.SENT if result.success else ItemOutcome.FAILED,
            reason=None if result.success else result.error,
        )
