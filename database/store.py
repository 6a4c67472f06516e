"""
SqlReminderStore — Portable SQL queries for PostgreSQL, MySQL, SQLite.

Schedule state changes are conditional UPDATE statements; the affected
row count tells the caller whether its transition won. This keeps claim
exclusivity correct across processes without any in-memory locking.
"""
from __future__ import annotations

import structlog
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.exc import SQLAlchemyError

from core.errors import CommitError
from database.models import (
    OwnerRow, CredentialRow, ScheduleRow, NotificationRecordRow,
)
from database.session import get_session
from database.store_base import BaseReminderStore
from models.schemas import (
    Credential, MilestoneKind, NotificationRecord, NotificationSchedule,
    Owner, OwnerStatus, ScheduleStatus,
)

logger = structlog.get_logger()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlReminderStore(BaseReminderStore):
    """
    Persistent reminder store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    # ── Owner operations ───────────────────────────────────

    async def get_owner(self, owner_id: str) -> Optional[Owner]:
        async with get_session() as db:
            row = await db.get(OwnerRow, owner_id)
            return self._row_to_owner(row) if row else None

    async def upsert_owner(self, owner: Owner) -> Owner:
        async with get_session() as db:
            existing = await db.get(OwnerRow, owner.id)
            if existing:
                existing.display_name = owner.display_name
                existing.status = owner.status.value
                existing.delivery_address = owner.delivery_address
            else:
                db.add(OwnerRow(
                    id=owner.id,
                    display_name=owner.display_name,
                    status=owner.status.value,
                    delivery_address=owner.delivery_address,
                ))
            return owner

    # ── Credential operations ──────────────────────────────

    async def get_credential(self, credential_id: str) -> Optional[Credential]:
        async with get_session() as db:
            row = await db.get(CredentialRow, credential_id)
            return self._row_to_credential(row) if row else None

    async def create_credential_with_schedules(
        self, credential: Credential, schedules: list[NotificationSchedule],
    ) -> Credential:
        async with get_session() as db:
            db.add(CredentialRow(
                id=credential.id,
                owner_id=credential.owner_id,
                credential_type=credential.credential_type,
                expiry_date=credential.expiry_date,
                is_active=credential.is_active,
                image_url=credential.image_url,
            ))
            # Parent row must exist before the schedules reference it
            await db.flush()
            for s in schedules:
                db.add(ScheduleRow(
                    id=s.id,
                    credential_id=credential.id,
                    milestone=s.milestone.value,
                    scheduled_date=s.scheduled_date,
                    status=s.status.value,
                ))
            await db.flush()
        logger.info("credential_created",
                    credential_id=credential.id,
                    owner_id=credential.owner_id,
                    schedules=len(schedules))
        return credential

    async def deactivate_credential(self, credential_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(CredentialRow)
                .where(CredentialRow.id == credential_id)
                .values(is_active=False, updated_at=datetime.now(timezone.utc))
            )
            return result.rowcount == 1

    async def list_active_credentials(self, owner_id: str) -> list[Credential]:
        async with get_session() as db:
            stmt = (
                select(CredentialRow)
                .where(and_(
                    CredentialRow.owner_id == owner_id,
                    CredentialRow.is_active.is_(True),
                ))
                .order_by(CredentialRow.expiry_date, CredentialRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_credential(r) for r in result.scalars().all()]

    # ── Schedule operations ────────────────────────────────

    async def get_schedule(self, schedule_id: str) -> Optional[NotificationSchedule]:
        async with get_session() as db:
            row = await db.get(ScheduleRow, schedule_id)
            return self._row_to_schedule(row) if row else None

    async def list_schedules(self, credential_ids: list[str]) -> list[NotificationSchedule]:
        if not credential_ids:
            return []
        async with get_session() as db:
            stmt = (
                select(ScheduleRow)
                .where(ScheduleRow.credential_id.in_(credential_ids))
                .order_by(ScheduleRow.credential_id, ScheduleRow.scheduled_date)
            )
            result = await db.execute(stmt)
            return [self._row_to_schedule(r) for r in result.scalars().all()]

    async def find_due_schedules(
        self, now: datetime, today: date, claim_cutoff: datetime,
    ) -> list[NotificationSchedule]:
        async with get_session() as db:
            stmt = (
                select(ScheduleRow)
                .join(CredentialRow, ScheduleRow.credential_id == CredentialRow.id)
                .where(and_(
                    ScheduleRow.scheduled_date <= today,
                    CredentialRow.is_active.is_(True),
                    # Retries for unreachable owners stop once the credential has expired
                    or_(ScheduleRow.attempt_count == 0, CredentialRow.expiry_date >= today),
                    or_(
                        and_(
                            ScheduleRow.status == ScheduleStatus.PENDING.value,
                            or_(
                                ScheduleRow.next_attempt_at.is_(None),
                                ScheduleRow.next_attempt_at <= now,
                            ),
                        ),
                        and_(
                            ScheduleRow.status == ScheduleStatus.CLAIMED.value,
                            ScheduleRow.claimed_at < claim_cutoff,
                        ),
                    ),
                ))
            )
            result = await db.execute(stmt)
            return [self._row_to_schedule(r) for r in result.scalars().all()]

    async def claim_schedule(
        self, schedule_id: str, claimant: str, now: datetime, claim_cutoff: datetime,
    ) -> bool:
        async with get_session() as db:
            stmt = (
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.id == schedule_id,
                    or_(
                        ScheduleRow.status == ScheduleStatus.PENDING.value,
                        and_(
                            ScheduleRow.status == ScheduleStatus.CLAIMED.value,
                            ScheduleRow.claimed_at < claim_cutoff,
                        ),
                    ),
                ))
                .values(
                    status=ScheduleStatus.CLAIMED.value,
                    claimed_by=claimant,
                    claimed_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def release_claim(self, schedule_id: str, claimant: str, error: str = "") -> bool:
        async with get_session() as db:
            stmt = (
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.id == schedule_id,
                    ScheduleRow.status == ScheduleStatus.CLAIMED.value,
                    ScheduleRow.claimed_by == claimant,
                ))
                .values(
                    status=ScheduleStatus.PENDING.value,
                    claimed_by=None,
                    claimed_at=None,
                    last_error=error,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            result = await db.execute(stmt)
            return result.rowcount == 1

    async def defer_schedule(self, schedule_id: str, next_attempt_at: datetime, reason: str = "") -> Optional[int]:
        async with get_session() as db:
            result = await db.execute(
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.id == schedule_id,
                    ScheduleRow.status == ScheduleStatus.PENDING.value,
                ))
                .values(
                    attempt_count=ScheduleRow.attempt_count + 1,
                    next_attempt_at=next_attempt_at,
                    last_error=reason,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            count = await db.execute(
                select(ScheduleRow.attempt_count).where(ScheduleRow.id == schedule_id)
            )
            return count.scalar_one()

    async def commit_delivery(self, schedule_id: str, record: NotificationRecord) -> None:
        try:
            async with get_session() as db:
                db.add(NotificationRecordRow(
                    id=record.id,
                    owner_id=record.owner_id,
                    recipient_address=record.recipient_address,
                    credential_id=record.credential_id,
                    milestone=record.milestone.value,
                    content=record.content,
                    channel_message_id=record.channel_message_id,
                    sent_at=record.sent_at,
                    is_read=record.is_read,
                ))
                await db.flush()
                await db.execute(
                    update(ScheduleRow)
                    .where(and_(
                        ScheduleRow.id == schedule_id,
                        ScheduleRow.status != ScheduleStatus.SENT.value,
                    ))
                    .values(
                        status=ScheduleStatus.SENT.value,
                        last_error="",
                        updated_at=datetime.now(timezone.utc),
                    )
                    .execution_options(synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise CommitError(
                f"Could not record delivery of {record.credential_id}:{record.milestone.value}"
            ) from e

    async def finalize_sent(self, schedule_id: str) -> bool:
        async with get_session() as db:
            result = await db.execute(
                update(ScheduleRow)
                .where(and_(
                    ScheduleRow.id == schedule_id,
                    ScheduleRow.status != ScheduleStatus.SENT.value,
                ))
                .values(
                    status=ScheduleStatus.SENT.value,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ── Audit record operations ────────────────────────────

    async def get_record(self, credential_id: str, milestone: MilestoneKind) -> Optional[NotificationRecord]:
        async with get_session() as db:
            stmt = select(NotificationRecordRow).where(and_(
                NotificationRecordRow.credential_id == credential_id,
                NotificationRecordRow.milestone == MilestoneKind(milestone).value,
            ))
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_record(row) if row else None

    async def list_records(
        self, owner_id: Optional[str] = None, credential_id: Optional[str] = None, limit: int = 100,
    ) -> list[NotificationRecord]:
        async with get_session() as db:
            stmt = select(NotificationRecordRow)
            if owner_id:
                stmt = stmt.where(NotificationRecordRow.owner_id == owner_id)
            if credential_id:
                stmt = stmt.where(NotificationRecordRow.credential_id == credential_id)
            stmt = stmt.order_by(NotificationRecordRow.sent_at.desc()).limit(limit)
            result = await db.execute(stmt)
            return [self._row_to_record(r) for r in result.scalars().all()]

    # ── Converters ─────────────────────────────────────────

    @staticmethod
    def _row_to_owner(row: OwnerRow) -> Owner:
        return Owner(
            id=row.id,
            display_name=row.display_name or "",
            status=OwnerStatus(row.status),
            delivery_address=row.delivery_address or "",
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_credential(row: CredentialRow) -> Credential:
        return Credential(
            id=row.id,
            owner_id=row.owner_id,
            credential_type=row.credential_type,
            expiry_date=row.expiry_date,
            is_active=bool(row.is_active),
            image_url=row.image_url or "",
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_schedule(row: ScheduleRow) -> NotificationSchedule:
        return NotificationSchedule(
            id=row.id,
            credential_id=row.credential_id,
            milestone=MilestoneKind(row.milestone),
            scheduled_date=row.scheduled_date,
            status=ScheduleStatus(row.status),
            claimed_by=row.claimed_by,
            claimed_at=_aware(row.claimed_at),
            attempt_count=row.attempt_count or 0,
            next_attempt_at=_aware(row.next_attempt_at),
            last_error=row.last_error or "",
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )

    @staticmethod
    def _row_to_record(row: NotificationRecordRow) -> NotificationRecord:
        return NotificationRecord(
            id=row.id,
            owner_id=row.owner_id,
            recipient_address=row.recipient_address,
            credential_id=row.credential_id,
            milestone=MilestoneKind(row.milestone),
            content=row.content,
            channel_message_id=row.channel_message_id or "",
            sent_at=_aware(row.sent_at),
            is_read=bool(row.is_read),
        )
