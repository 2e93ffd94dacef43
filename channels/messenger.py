"""
ResilientMessenger — the only way conversation code talks to customers.

Every send:
  1. shapes and truncates the payload
  2. writes a Pending OutboundMessage (before any network attempt)
  3. runs the provider call through the ResiliencePipeline
  4. marks the row Sent (with provider id) or Failed (with reason)
  5. returns a bool; delivery problems never raise into handlers

mark_read() is best-effort and bypasses retry and breaker entirely.
"""
from __future__ import annotations

import json
from typing import Any, Optional, Sequence

import structlog

from channels.base import OutboundTransport
from channels.payloads import (
    Button, ListRow, buttons_payload, list_payload, rendered_body, retarget, text_payload,
)
from channels.resilience import ResiliencePipeline
from database.store_base import BaseBotStore
from models.schemas import OutboundMessage, PayloadKind

logger = structlog.get_logger()


class ResilientMessenger:

    def __init__(self, transport: OutboundTransport, store: BaseBotStore,
                 pipeline: Optional[ResiliencePipeline] = None):
        self.transport = transport
        self.store = store
        self.pipeline = pipeline or ResiliencePipeline()

    # ── Public sends ──────────────────────────────────────────

    async def send_text(self, to: str, body: str) -> bool:
        return await self._deliver(to, PayloadKind.TEXT, text_payload(to, body))

    async def send_buttons(self, to: str, body: str, buttons: Sequence[Button],
                           header: Optional[str] = None, footer: Optional[str] = None) -> bool:
        payload = buttons_payload(to, body, buttons, header=header, footer=footer)
        return await self._deliver(to, PayloadKind.INTERACTIVE_BUTTONS, payload)

    async def send_list(self, to: str, body: str, button_label: str, rows: Sequence[ListRow],
                        header: Optional[str] = None, footer: Optional[str] = None) -> bool:
        payload = list_payload(to, body, button_label, rows, header=header, footer=footer)
        return await self._deliver(to, PayloadKind.INTERACTIVE_LIST, payload)

    async def resend(self, to: str, raw_payload: str) -> bool:
        """Replay a stored payload snapshot verbatim."""
        try:
            payload = json.loads(raw_payload)
        except ValueError:
            logger.warning("resend_payload_invalid", to=to)
            return False
        return await self._deliver(to, PayloadKind.RESEND, retarget(payload, to))

    async def last_outbound(self, to: str) -> Optional[OutboundMessage]:
        return await self.store.last_outbound_message(to)

    # ── Best-effort helpers ───────────────────────────────────

    async def mark_read(self, provider_message_id: str) -> bool:
        if not provider_message_id:
            return False
        try:
            return await self.transport.mark_read(provider_message_id)
        except Exception as e:
            logger.warning("mark_read_failed", message_id=provider_message_id, error=str(e))
            return False

    # ── Core ──────────────────────────────────────────────────

    async def _deliver(self, to: str, kind: PayloadKind, payload: dict[str, Any]) -> bool:
        message = OutboundMessage(
            recipient=to,
            payload_kind=kind,
            rendered_body=rendered_body(payload),
            raw_payload=json.dumps(payload, ensure_ascii=False),
        )
        await self.store.add_outbound_message(message)

        outcome = await self.pipeline.execute(
            lambda: self.transport.send_payload(payload),
            operation_name=f"{kind.value}:{to}",
        )

        if outcome.ok:
            message.mark_sent(outcome.provider_message_id)
            logger.info("outbound_sent", to=to, kind=kind.value, message_id=message.id,
                        provider_message_id=outcome.provider_message_id, attempts=outcome.attempts)
        else:
            message.mark_failed(outcome.failure_reason or "unknown")
            logger.warning("outbound_not_delivered", to=to, kind=kind.value, message_id=message.id,
                           reason=outcome.failure_reason)
        await self.store.update_outbound_message(message)
        return outcome.ok
