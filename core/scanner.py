"""
Due-Set Scanner — one pass over every schedule that is due right now.

Invoked from outside (HTTP trigger or cron script); it never runs a timer
of its own. Overlapping scans are safe because each schedule is claimed
with a conditional update before anything is sent.

Flow:
    find due schedules (pending & ready, or claimed past the timeout)
    → drop milestones superseded by a later milestone that is also due
    → dispatch the rest concurrently (bounded)
    → ScanSummary with one result per schedule
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import date, datetime, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from core.dispatcher import Dispatcher, new_claimant_id
from core.errors import ScanError
from core.planner import local_today
from database.store_base import BaseReminderStore
from models.schemas import (
    ItemOutcome, ItemResult, NotificationSchedule, ScanSummary, ScheduleStatus,
)

logger = structlog.get_logger()


def find_superseded(
    due: list[NotificationSchedule], siblings: list[NotificationSchedule], today: date,
) -> set[str]:
    """
    Ids of due pending schedules whose credential has a later milestone that
    is already due. Only the milestone closest to expiry is worth sending.
    """
    latest_due: dict[str, date] = {}
    for s in siblings:
        if s.scheduled_date <= today:
            current = latest_due.get(s.credential_id)
            if current is None or s.scheduled_date > current:
                latest_due[s.credential_id] = s.scheduled_date

    return {
        s.id for s in due
        if s.status == ScheduleStatus.PENDING
        and s.scheduled_date < latest_due.get(s.credential_id, s.scheduled_date)
    }


class DueSetScanner:

    def __init__(
        self,
        store: BaseReminderStore,
        dispatcher: Dispatcher,
        concurrency: int = 5,
        timezone_name: str = "Asia/Tokyo",
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.concurrency = max(1, concurrency)
        self.tz = ZoneInfo(timezone_name)

    async def scan(self, now: Optional[datetime] = None) -> ScanSummary:
        now = now or datetime.now(timezone.utc)
        today = local_today(self.tz, now)
        claimant = new_claimant_id()
        summary = ScanSummary(claimant=claimant, started_at=now)

        try:
            due = await self.store.find_due_schedules(now, today, self.dispatcher.claim_cutoff(now))
            siblings = await self.store.list_schedules(sorted({s.credential_id for s in due}))
        except Exception as e:
            logger.error("due_query_failed", error=str(e))
            raise ScanError(f"Due-set query failed: {e}") from e

        if not due:
            logger.info("scan_completed", claimant=claimant, processed=0)
            return summary

        superseded = find_superseded(due, siblings, today)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def run(schedule: NotificationSchedule) -> ItemResult:
            if schedule.id in superseded:
                return ItemResult(
                    schedule_id=schedule.id,
                    credential_id=schedule.credential_id,
                    milestone=schedule.milestone,
                    outcome=ItemOutcome.SKIPPED,
                    reason="superseded",
                )
            async with semaphore:
                try:
                    return await self.dispatcher.dispatch(schedule, claimant, now)
                except Exception as e:
                    logger.error("dispatch_error", schedule_id=schedule.id, error=str(e))
                    return ItemResult(
                        schedule_id=schedule.id,
                        credential_id=schedule.credential_id,
                        milestone=schedule.milestone,
                        outcome=ItemOutcome.FAILED,
                        reason="internal_error",
                    )

        summary.results = list(await asyncio.gather(*(run(s) for s in due)))

        logger.info("scan_completed",
                    claimant=claimant,
                    processed=summary.processed_count,
                    sent=summary.count(ItemOutcome.SENT),
                    skipped=summary.count(ItemOutcome.SKIPPED),
                    failed=summary.count(ItemOutcome.FAILED))
        return summary
