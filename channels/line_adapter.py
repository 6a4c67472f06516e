"""
LINE Channel Adapter — LINE Messaging API push delivery.

Provides:
- Push text messages to a LINE user id
- Idempotent retries via X-Line-Retry-Key derived from the schedule id
  (a 409 for a retry key means LINE already accepted the message)
- Retry with backoff on transient failures (5xx, 429, network errors)
- Mock mode when no channel access token is configured
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any, Optional

import httpx
from tenacity import (
    retry, retry_if_exception, stop_after_attempt, wait_exponential,
)

from channels.base import DeliveryChannel, DeliveryResult
from config.settings import ChannelConfig

logger = structlog.get_logger()

PUSH_PATH = "/v2/bot/message/push"

# Stable namespace so the same schedule always maps to the same retry key
_RETRY_KEY_NAMESPACE = uuid.UUID("6f1c3c1e-54a4-4c55-9a8e-3f0c1a7d2b90")


def retry_key_for(schedule_id: str) -> str:
    return str(uuid.uuid5(_RETRY_KEY_NAMESPACE, schedule_id))


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return False


class LineAdapter(DeliveryChannel):
    """
    LINE Messaging API adapter.

    The delivery address is the recipient's LINE user id.
    """

    name = "line"

    def __init__(self, config: ChannelConfig = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    @property
    def mock_mode(self) -> bool:
        return not self.config.access_token

    async def initialize(self) -> None:
        await super().initialize()
        if self.mock_mode:
            logger.warning("line_mock_mode", reason="no access token configured")
        else:
            logger.info("line_initialized", api_base=self.config.api_base)

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            self.client = httpx.AsyncClient(
                base_url=self.config.api_base,
                headers={"Authorization": f"Bearer {self.config.access_token}"},
                timeout=self.config.timeout_seconds,
                transport=self._transport,
            )
        return self.client

    @retry(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, max=10),
        reraise=True,
    )
    async def _push(self, payload: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        client = await self._get_client()
        response = await client.post(PUSH_PATH, json=payload, headers=headers)
        if response.status_code == 409 and "X-Line-Retry-Key" in headers:
            return response
        response.raise_for_status()
        return response

    async def _do_send(self, address: str, text: str, metadata: dict[str, Any]) -> DeliveryResult:
        if self.mock_mode:
            logger.info("line_mock_send", to=address, length=len(text))
            return DeliveryResult(success=True, channel_message_id=f"mock-{uuid.uuid4().hex[:12]}")

        headers = {}
        schedule_id = metadata.get("schedule_id")
        if schedule_id:
            headers["X-Line-Retry-Key"] = retry_key_for(schedule_id)

        payload = {"to": address, "messages": [{"type": "text", "text": text}]}
        try:
            response = await self._push(payload, headers)
        except httpx.HTTPStatusError as e:
            return DeliveryResult(
                success=False,
                error=f"LINE API {e.response.status_code}: {e.response.text[:200]}",
            )
        except httpx.HTTPError as e:
            return DeliveryResult(success=False, error=f"LINE transport error: {e}")

        if response.status_code == 409:
            logger.info("line_retry_key_already_accepted", to=address, schedule_id=schedule_id)
            return DeliveryResult(success=True, channel_message_id=headers["X-Line-Retry-Key"])

        request_id = response.headers.get("x-line-request-id", "")
        sent = response.json().get("sentMessages", []) if response.content else []
        message_id = sent[0].get("id", "") if sent else request_id
        logger.info("line_message_sent", to=address, message_id=message_id)
        return DeliveryResult(success=True, channel_message_id=message_id)

    async def shutdown(self) -> None:
        if self.client is not None and not self.client.is_closed:
            await self.client.aclose()
        self.client = None
