"""
Audit Log — read side of the delivery records.

A record for (credential, milestone) is the proof that the reminder went
out. Records are written only by the dispatcher's commit step, in the same
transaction that marks the schedule sent.
"""
from __future__ import annotations

from typing import Optional

from database.store_base import BaseReminderStore
from models.schemas import MilestoneKind, NotificationRecord


class AuditLog:

    def __init__(self, store: BaseReminderStore):
        self.store = store

    async def was_delivered(self, credential_id: str, milestone: MilestoneKind) -> bool:
        return await self.store.get_record(credential_id, milestone) is not None

    async def get_record(self, credential_id: str, milestone: MilestoneKind) -> Optional[NotificationRecord]:
        return await self.store.get_record(credential_id, milestone)

    async def list_for_owner(self, owner_id: str, limit: int = 100) -> list[NotificationRecord]:
        return await self.store.list_records(owner_id=owner_id, limit=limit)

    async def list_for_credential(self, credential_id: str) -> list[NotificationRecord]:
        return await self.store.list_records(credential_id=credential_id)
