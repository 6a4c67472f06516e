"""
Schedule Planner — derives the reminder schedule for a credential.

Every credential gets three milestone schedules at registration time:
six months, three months and one week before its expiry date. Month
arithmetic clamps to the last day of the target month, so an expiry of
2025-12-31 yields 2025-06-30 for the six-month reminder.

Schedules are created together with the credential in one transaction;
milestone dates already in the past are kept and fire on the next scan.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta

from core.errors import NotFoundError, ValidationError
from database.store_base import BaseReminderStore
from models.schemas import Credential, MilestoneKind, NotificationSchedule

logger = structlog.get_logger()

MILESTONE_OFFSETS = {
    MilestoneKind.SIX_MONTHS: relativedelta(months=6),
    MilestoneKind.THREE_MONTHS: relativedelta(months=3),
    MilestoneKind.ONE_WEEK: timedelta(days=7),
}


def local_today(tz: ZoneInfo, now: Optional[datetime] = None) -> date:
    """Calendar date in `tz`; schedule dates are compared against this."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(tz).date()


def compute_schedule_dates(expiry_date: date) -> dict[MilestoneKind, date]:
    return {kind: expiry_date - offset for kind, offset in MILESTONE_OFFSETS.items()}


def plan_schedules(credential: Credential) -> list[NotificationSchedule]:
    dates = compute_schedule_dates(credential.expiry_date)
    return [
        NotificationSchedule(credential_id=credential.id, milestone=kind, scheduled_date=when)
        for kind, when in dates.items()
    ]


class CredentialService:
    """Registers credentials and keeps their reminder schedules consistent."""

    def __init__(self, store: BaseReminderStore, timezone_name: str = "Asia/Tokyo"):
        self.store = store
        self.tz = ZoneInfo(timezone_name)

    async def register_credential(
        self,
        owner_id: str,
        credential_type: str,
        expiry_date: date,
        image_url: str = "",
        today: Optional[date] = None,
    ) -> tuple[Credential, list[NotificationSchedule]]:
        credential_type = (credential_type or "").strip()
        if not credential_type:
            raise ValidationError("credential_type must not be empty")
        if not isinstance(expiry_date, date):
            raise ValidationError("expiry_date must be a date")

        owner = await self.store.get_owner(owner_id)
        if owner is None:
            raise NotFoundError(f"Owner {owner_id} not found")

        credential = Credential(
            owner_id=owner_id,
            credential_type=credential_type,
            expiry_date=expiry_date,
            image_url=image_url or "",
        )
        schedules = plan_schedules(credential)
        await self.store.create_credential_with_schedules(credential, schedules)

        today = today or local_today(self.tz)
        overdue = [s.milestone.value for s in schedules if s.scheduled_date <= today]
        if overdue:
            logger.info("milestones_already_due",
                        credential_id=credential.id, milestones=overdue)
        return credential, schedules

    async def deactivate_credential(self, credential_id: str) -> None:
        if not await self.store.deactivate_credential(credential_id):
            raise NotFoundError(f"Credential {credential_id} not found")
        logger.info("credential_deactivated", credential_id=credential_id)

    async def list_credentials(self, owner_id: str) -> list[Credential]:
        return await self.store.list_active_credentials(owner_id)

    async def list_schedules(self, credential_id: str) -> list[NotificationSchedule]:
        if await self.store.get_credential(credential_id) is None:
            raise NotFoundError(f"Credential {credential_id} not found")
        return await self.store.list_schedules([credential_id])
