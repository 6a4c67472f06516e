"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - Enum-valued columns are stored as short strings, so the same rows are
    readable from every dialect and from the in-memory store's dumps.
  - String primary keys (uuid hex) — no database-specific sequences.
  - Uniqueness of (credential, milestone) is enforced by the database for
    both schedules and delivery records; the dispatcher relies on it.
"""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    String, Integer, Boolean, Date, DateTime, Text, ForeignKey,
    Index, UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Owners
# ──────────────────────────────────────────────────────────────

class OwnerRow(Base):
    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    display_name: Mapped[str] = mapped_column(String(256), default="")
    status: Mapped[str] = mapped_column(String(16), default="active")
    delivery_address: Mapped[str] = mapped_column(String(256), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    credentials: Mapped[list["CredentialRow"]] = relationship(back_populates="owner")

# ──────────────────────────────────────────────────────────────
#  Credentials
# ──────────────────────────────────────────────────────────────

class CredentialRow(Base):
    __tablename__ = "credentials"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), ForeignKey("owners.id"), nullable=False)
    credential_type: Mapped[str] = mapped_column(String(256), nullable=False)
    expiry_date: Mapped[date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    image_url: Mapped[str] = mapped_column(String(512), default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    owner: Mapped["OwnerRow"] = relationship(back_populates="credentials")
    schedules: Mapped[list["ScheduleRow"]] = relationship(back_populates="credential")

    __table_args__ = (
        Index("ix_credentials_owner", "owner_id"),
        Index("ix_credentials_active_expiry", "is_active", "expiry_date"),
    )


# ──────────────────────────────────────────────────────────────
#  Notification schedules
# ──────────────────────────────────────────────────────────────

class ScheduleRow(Base):
    __tablename__ = "notification_schedules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    credential_id: Mapped[str] = mapped_column(String(64), ForeignKey("credentials.id"), nullable=False)
    milestone: Mapped[str] = mapped_column(String(16), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="pending")

    claimed_by: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    credential: Mapped["CredentialRow"] = relationship(back_populates="schedules")

    __table_args__ = (
        UniqueConstraint("credential_id", "milestone", name="uq_schedule_credential_milestone"),
        Index("ix_schedules_status_date", "status", "scheduled_date"),
    )


# ──────────────────────────────────────────────────────────────
#  Notification records (audit log)
# ──────────────────────────────────────────────────────────────

class NotificationRecordRow(Base):
    __tablename__ = "notification_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    owner_id: Mapped[str] = mapped_column(String(64), ForeignKey("owners.id"), nullable=False)
    recipient_address: Mapped[str] = mapped_column(String(256), nullable=False)
    credential_id: Mapped[str] = mapped_column(String(64), ForeignKey("credentials.id"), nullable=False)
    milestone: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    channel_message_id: Mapped[str] = mapped_column(String(256), default="")
    sent_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False)

    __table_args__ = (
        UniqueConstraint("credential_id", "milestone", name="uq_record_credential_milestone"),
        Index("ix_records_owner_sent", "owner_id", "sent_at"),
    )
