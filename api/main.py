"""
FastAPI Application — trigger endpoint, manual test send, and management API.

Provides:
- Scan trigger for the external scheduler (cron, cloud scheduler)
- Manual single-shot test send
- Owner and credential registration
- Schedule and delivery record listings
- Health and channel diagnostics
"""
from __future__ import annotations

import hmac
import structlog
from datetime import date
from typing import Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config.settings import Settings, get_settings
from channels.base import DeliveryChannel
from channels.line_adapter import LineAdapter
from core.audit import AuditLog
from core.dispatcher import Dispatcher
from core.errors import NotFoundError, ScanError, ValidationError
from core.gate import RecipientGate
from core.planner import CredentialService
from core.scanner import DueSetScanner
from database.session import close_db, init_db
from database.store import SqlReminderStore
from database.store_base import BaseReminderStore
from database.store_factory import create_store
from models.schemas import ItemOutcome, Owner, OwnerStatus

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Request models
# ──────────────────────────────────────────────────────────────

class OwnerCreateRequest(BaseModel):
    id: Optional[str] = None
    display_name: str = ""
    delivery_address: str = ""
    status: OwnerStatus = OwnerStatus.ACTIVE


class CredentialCreateRequest(BaseModel):
    owner_id: str
    credential_type: str
    expiry_date: date
    image_url: str = ""


# ──────────────────────────────────────────────────────────────
#  App factory
# ──────────────────────────────────────────────────────────────

def create_app(
    store: BaseReminderStore = None,
    channel: DeliveryChannel = None,
    settings: Settings = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store or create_store({"store_backend": settings.database.store_backend})
    channel = channel or LineAdapter(settings.channel)

    gate = RecipientGate(
        store,
        backoff_base_seconds=settings.scanner.backoff_base_seconds,
        backoff_max_seconds=settings.scanner.backoff_max_seconds,
    )
    audit = AuditLog(store)
    dispatcher = Dispatcher(
        store, channel, gate=gate, audit=audit,
        claim_timeout_seconds=settings.scanner.claim_timeout_seconds,
    )
    scanner = DueSetScanner(
        store, dispatcher,
        concurrency=settings.scanner.concurrency,
        timezone_name=settings.timezone,
    )
    credentials = CredentialService(store, timezone_name=settings.timezone)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(store, SqlReminderStore):
            await init_db(settings.database.url)
        await channel.initialize()
        logger.info("reminder_service_started",
                    store=type(store).__name__,
                    channel=channel.name)
        yield
        await channel.shutdown()
        if isinstance(store, SqlReminderStore):
            await close_db()
        logger.info("reminder_service_stopped")

    app = FastAPI(
        title=settings.app_name,
        version="1.0.0",
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.store = store
    app.state.channel = channel
    app.state.scanner = scanner
    app.state.dispatcher = dispatcher

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return {"status": "ok", "store": type(store).__name__}

    @app.get("/api/v1/channels/health")
    async def channel_health():
        return await channel.health_check()

    # ── Notifications ─────────────────────────────────────────

    @app.post("/api/v1/notifications/send")
    async def trigger_scan(x_trigger_token: Optional[str] = Header(None)):
        expected = settings.scanner.trigger_token
        if expected and not hmac.compare_digest(x_trigger_token or "", expected):
            raise HTTPException(403, "Invalid trigger token")
        try:
            summary = await scanner.scan()
        except ScanError as e:
            raise HTTPException(500, str(e))
        return summary.to_response()

    @app.get("/api/v1/notifications/send")
    async def test_send(
        user_id: Optional[str] = Query(None, alias="userId"),
        type_: Optional[str] = Query(None, alias="type"),
    ):
        if not user_id or not type_:
            raise HTTPException(400, "userId and type are required")
        try:
            result = await dispatcher.send_test(user_id, type_)
        except ValidationError as e:
            raise HTTPException(400, str(e))
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return {
            "success": result.outcome == ItemOutcome.SENT,
            "ownerId": result.owner_id,
            "credentialId": result.credential_id,
            "type": result.milestone.value,
            "outcome": result.outcome.value,
            "message": result.message,
            **({"reason": result.reason} if result.reason else {}),
        }

    @app.get("/api/v1/notifications/records")
    async def list_records(owner_id: str = Query(..., alias="ownerId"), limit: int = 100):
        records = await audit.list_for_owner(owner_id, limit=limit)
        return [r.model_dump(mode="json") for r in records]

    # ── Owners ────────────────────────────────────────────────

    @app.post("/api/v1/owners")
    async def upsert_owner(req: OwnerCreateRequest):
        data = req.model_dump(exclude_none=True)
        owner = await store.upsert_owner(Owner(**data))
        return owner.model_dump(mode="json")

    @app.get("/api/v1/owners/{owner_id}")
    async def get_owner(owner_id: str):
        owner = await store.get_owner(owner_id)
        if not owner:
            raise HTTPException(404, "Owner not found")
        return owner.model_dump(mode="json")

    # ── Credentials ───────────────────────────────────────────

    @app.post("/api/v1/credentials")
    async def register_credential(req: CredentialCreateRequest):
        try:
            credential, schedules = await credentials.register_credential(
                req.owner_id, req.credential_type, req.expiry_date, req.image_url,
            )
        except ValidationError as e:
            raise HTTPException(400, str(e))
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return {
            "credential": credential.model_dump(mode="json"),
            "schedules": [s.model_dump(mode="json") for s in schedules],
        }

    @app.get("/api/v1/credentials")
    async def list_credentials(owner_id: str = Query(..., alias="ownerId")):
        return [c.model_dump(mode="json") for c in await credentials.list_credentials(owner_id)]

    @app.delete("/api/v1/credentials/{credential_id}")
    async def deactivate_credential(credential_id: str):
        try:
            await credentials.deactivate_credential(credential_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return {"id": credential_id, "is_active": False}

    @app.get("/api/v1/credentials/{credential_id}/schedules")
    async def list_schedules(credential_id: str):
        try:
            schedules = await credentials.list_schedules(credential_id)
        except NotFoundError as e:
            raise HTTPException(404, str(e))
        return [s.model_dump(mode="json") for s in schedules]

    @app.get("/api/v1/credentials/{credential_id}/records")
    async def list_credential_records(credential_id: str):
        if await store.get_credential(credential_id) is None:
            raise HTTPException(404, "Credential not found")
        records = await audit.list_for_credential(credential_id)
        return [r.model_dump(mode="json") for r in records]

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("api.main:app", host="0.0.0.0", port=8000, reload=get_settings().debug)
