"""Tests for schedule planning and credential registration."""
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from core.errors import NotFoundError, ValidationError
import core.planner
from core.planner import CredentialService, compute_schedule_dates, local_today, plan_schedules
from models.schemas import Credential, MilestoneKind, ScheduleStatus


class TestComputeScheduleDates:
    def test_year_end_expiry(self):
        dates = compute_schedule_dates(date(2025, 12, 31))
        assert dates == {
            MilestoneKind.SIX_MONTHS: date(2025, 6, 30),
            MilestoneKind.THREE_MONTHS: date(2025, 9, 30),
            MilestoneKind.ONE_WEEK: date(2025, 12, 24),
        }

    def test_month_end_clamps_into_short_month(self):
        dates = compute_schedule_dates(date(2025, 5, 31))
        assert dates[MilestoneKind.THREE_MONTHS] == date(2025, 2, 28)

    def test_leap_year(self):
        dates = compute_schedule_dates(date(2024, 8, 29))
        assert dates[MilestoneKind.SIX_MONTHS] == date(2024, 2, 29)

    def test_week_crosses_year_boundary(self):
        dates = compute_schedule_dates(date(2026, 1, 3))
        assert dates[MilestoneKind.ONE_WEEK] == date(2025, 12, 27)

    def test_milestones_ordered(self):
        dates = compute_schedule_dates(date(2027, 4, 15))
        assert dates[MilestoneKind.SIX_MONTHS] < dates[MilestoneKind.THREE_MONTHS] < dates[MilestoneKind.ONE_WEEK]


def test_plan_schedules_one_pending_per_milestone():
    cred = Credential(owner_id="o1", credential_type="免許", expiry_date=date(2025, 12, 31))
    schedules = plan_schedules(cred)
    assert len(schedules) == 3
    assert {s.milestone for s in schedules} == set(MilestoneKind)
    assert all(s.status == ScheduleStatus.PENDING for s in schedules)
    assert all(s.credential_id == cred.id for s in schedules)


class TestCredentialService:
    @pytest.mark.asyncio
    async def test_register_creates_three_schedules(self, service, store, owner):
        cred, schedules = await service.register_credential(owner.id, "薬剤師免許", date(2025, 12, 31))
        stored = await store.list_schedules([cred.id])
        assert len(stored) == 3
        assert sorted(s.scheduled_date for s in stored) == [
            date(2025, 6, 30), date(2025, 9, 30), date(2025, 12, 24),
        ]
        assert (await store.get_credential(cred.id)).is_active

    @pytest.mark.asyncio
    async def test_past_milestones_still_created(self, service, store, owner):
        cred, _ = await service.register_credential(
            owner.id, "薬剤師免許", date(2025, 10, 1), today=date(2025, 9, 1),
        )
        stored = await store.list_schedules([cred.id])
        assert len(stored) == 3
        assert all(s.status == ScheduleStatus.PENDING for s in stored)

    @pytest.mark.asyncio
    async def test_unknown_owner_rejected(self, service, store):
        with pytest.raises(NotFoundError):
            await service.register_credential("nobody", "免許", date(2026, 1, 1))
        assert store._credentials == {}
        assert store._schedules == {}

    @pytest.mark.asyncio
    async def test_blank_type_rejected(self, service, owner):
        with pytest.raises(ValidationError):
            await service.register_credential(owner.id, "   ", date(2026, 1, 1))

    @pytest.mark.asyncio
    async def test_failed_insert_leaves_nothing_behind(self, service, store, owner, monkeypatch):
        def broken_plan(credential):
            s = plan_schedules(credential)
            return s + [s[0].model_copy(update={"id": "dup"})]

        monkeypatch.setattr("core.planner.plan_schedules", broken_plan)
        with pytest.raises(ValueError):
            await service.register_credential(owner.id, "免許", date(2026, 1, 1))
        assert store._credentials == {}
        assert store._schedules == {}

    @pytest.mark.asyncio
    async def test_deactivate_and_list(self, service, owner):
        first, _ = await service.register_credential(owner.id, "A", date(2026, 5, 1))
        second, _ = await service.register_credential(owner.id, "B", date(2026, 2, 1))
        listed = await service.list_credentials(owner.id)
        assert [c.id for c in listed] == [second.id, first.id]

        await service.deactivate_credential(second.id)
        listed = await service.list_credentials(owner.id)
        assert [c.id for c in listed] == [first.id]

    @pytest.mark.asyncio
    async def test_deactivate_unknown(self, service):
        with pytest.raises(NotFoundError):
            await service.deactivate_credential("missing")

    @pytest.mark.asyncio
    async def test_list_schedules_unknown_credential(self, service):
        with pytest.raises(NotFoundError):
            await service.list_schedules("missing")


class TestLocalToday:
    def test_date_follows_timezone(self):
        now = datetime(2025, 6, 29, 16, 0, tzinfo=timezone.utc)
        assert local_today(ZoneInfo("Asia/Tokyo"), now) == date(2025, 6, 30)
        assert local_today(ZoneInfo("UTC"), now) == date(2025, 6, 29)

    @pytest.mark.asyncio
    async def test_registration_uses_configured_timezone(self, store, owner, monkeypatch):
        seen = []

        def fake_today(tz, now=None):
            seen.append(tz)
            return date(2025, 9, 1)

        monkeypatch.setattr(core.planner, "local_today", fake_today)
        service = CredentialService(store, timezone_name="America/New_York")
        await service.register_credential(owner.id, "免許", date(2025, 12, 31))
        assert seen == [ZoneInfo("America/New_York")]
