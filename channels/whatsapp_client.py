"""
WhatsApp Cloud API client — raw HTTP transport.

Provides the same OutboundTransport interface the resilience pipeline
expects, so tests can swap in a recording fake.

Call flow:
1. send_payload() → POST {api_base}/{phone_number_id}/messages
2. 2xx → provider id parsed from messages[0].id (best effort)
3. 5xx / 429 / network failure → TransientDeliveryError (retried upstream)
4. other 4xx → FatalDeliveryError (never retried)

API Docs: https://developers.facebook.com/docs/whatsapp/cloud-api
"""
from __future__ import annotations

from typing import Any, Optional

import httpx
import structlog

from channels.base import (
    FatalDeliveryError, OutboundTransport, SendResult, TransientDeliveryError,
)
from config.settings import WhatsAppConfig

logger = structlog.get_logger()


class WhatsAppClient(OutboundTransport):
    """WhatsApp Business Cloud API client for outbound messages."""

    channel = "whatsapp"

    def __init__(self, config: WhatsAppConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.base_url = config.api_base_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = http_client

    @property
    def messages_url(self) -> str:
        return f"{self.base_url}/{self.config.phone_number_id}/messages"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0, connect=10.0))
        return self._client

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.access_token}"}

    def _ensure_configured(self) -> None:
        if not self.config.phone_number_id or not self.config.access_token:
            logger.warning("whatsapp_config_incomplete")
            raise FatalDeliveryError("WhatsApp credentials not configured", self.channel)

    async def _post(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        try:
            resp = await client.post(self.messages_url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise TransientDeliveryError(
                f"{type(e).__name__}: {e}", self.channel,
            ) from e

        if resp.status_code >= 500 or resp.status_code == 429:
            logger.warning("whatsapp_api_error", status=resp.status_code, body=resp.text[:500])
            raise TransientDeliveryError(
                f"WhatsApp API {resp.status_code}: {resp.text[:200]}",
                self.channel, status_code=resp.status_code,
            )
        if resp.status_code >= 400:
            logger.error("whatsapp_api_fatal_error", status=resp.status_code, body=resp.text[:500])
            raise FatalDeliveryError(
                f"WhatsApp API {resp.status_code}: {resp.text[:200]}",
                self.channel, status_code=resp.status_code,
            )
        return resp

    # ── Send ──────────────────────────────────────────────────

    async def send_payload(self, payload: dict[str, Any]) -> SendResult:
        self._ensure_configured()
        resp = await self._post(payload)
        provider_id = self._parse_message_id(resp)
        logger.info("whatsapp_message_sent", to=payload.get("to"), type=payload.get("type"),
                    provider_message_id=provider_id)
        return SendResult(ok=True, provider_message_id=provider_id)

    def _parse_message_id(self, resp: httpx.Response) -> Optional[str]:
        try:
            return resp.json()["messages"][0]["id"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.warning("whatsapp_message_id_unparsed", error=str(e))
            return None

    # ── Read receipts ─────────────────────────────────────────

    async def mark_read(self, provider_message_id: str) -> bool:
        self._ensure_configured()
        await self._post({
            "messaging_product": "whatsapp",
            "status": "read",
            "message_id": provider_message_id,
        })
        return True

    # ── Media ─────────────────────────────────────────────────

    async def download_media(self, media_id: str) -> Optional[bytes]:
        """Resolve the media URL, then fetch the bytes. None when unavailable."""
        self._ensure_configured()
        client = await self._get_client()
        meta = await client.get(f"{self.base_url}/{media_id}", headers=self._headers())
        if meta.status_code >= 400:
            logger.warning("whatsapp_media_url_failed", media_id=media_id, status=meta.status_code)
            return None
        url = meta.json().get("url")
        if not url:
            return None
        data = await client.get(url, headers=self._headers())
        if data.status_code >= 400:
            logger.warning("whatsapp_media_download_failed", media_id=media_id, status=data.status_code)
            return None
        return data.content

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
