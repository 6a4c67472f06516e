"""Shared test fixtures for the reminder engine."""
import pytest
import pytest_asyncio
from datetime import date
from typing import Any

from channels.base import DeliveryChannel, DeliveryResult
from core.dispatcher import Dispatcher
from core.gate import RecipientGate
from core.planner import CredentialService
from core.scanner import DueSetScanner
from database.store_memory import InMemoryReminderStore
from models.schemas import Owner


class FakeChannel(DeliveryChannel):
    """Records every send; can be told to fail."""

    name = "fake"

    def __init__(self, fail: bool = False):
        super().__init__()
        self.fail = fail
        self.sent: list[dict[str, Any]] = []

    async def _do_send(self, address: str, text: str, metadata: dict[str, Any]) -> DeliveryResult:
        if self.fail:
            return DeliveryResult(success=False, error="upstream unavailable")
        self.sent.append({"address": address, "text": text, "metadata": metadata})
        return DeliveryResult(success=True, channel_message_id=f"msg-{len(self.sent)}")


@pytest.fixture
def store() -> InMemoryReminderStore:
    return InMemoryReminderStore()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def gate(store) -> RecipientGate:
    return RecipientGate(store, backoff_base_seconds=3600, backoff_max_seconds=86400)


@pytest.fixture
def dispatcher(store, channel, gate) -> Dispatcher:
    return Dispatcher(store, channel, gate=gate, claim_timeout_seconds=900)


@pytest.fixture
def scanner(store, dispatcher) -> DueSetScanner:
    return DueSetScanner(store, dispatcher, concurrency=5, timezone_name="Asia/Tokyo")


@pytest.fixture
def service(store) -> CredentialService:
    return CredentialService(store, timezone_name="Asia/Tokyo")


@pytest_asyncio.fixture
async def owner(store) -> Owner:
    o = Owner(id="owner-001", display_name="Tanaka Hanako", delivery_address="U1234567890abcdef")
    await store.upsert_owner(o)
    return o


@pytest_asyncio.fixture
async def credential(service, owner):
    cred, _ = await service.register_credential(owner.id, "薬剤師免許", date(2025, 12, 31))
    return cred
