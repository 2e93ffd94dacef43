"""
WhatsApp Channel Adapter — inbound webhook decoding.

Provides:
- Phone number normalization
- Webhook verification (hub.verify_token challenge)
- X-Hub-Signature-256 verification with the app secret
- Inbound: text, interactive (button_reply, list_reply), media, location,
  contacts decoded into InboundMessage
- Status-only callbacks (sent, delivered, read) are ignored
"""
from __future__ import annotations

import hashlib
import hmac
import re
from datetime import datetime, timezone
from typing import Any, Optional

import structlog

from channels.base import InputSanitizer
from config.settings import WhatsAppConfig
from models.schemas import InboundMessage, MessageType

logger = structlog.get_logger()

_MEDIA_TYPES = {"image", "document", "audio", "video", "sticker"}


def normalize_phone(phone: str) -> str:
    """Normalize phone to digits only, stripping +, spaces, dashes."""
    return re.sub(r"[^\d]", "", phone or "")


class WhatsAppAdapter:
    """Decodes WhatsApp Business Cloud API webhook deliveries."""

    def __init__(self, config: Optional[WhatsAppConfig] = None):
        self.config = config or WhatsAppConfig()
        self.sanitizer = InputSanitizer()

    # ── Webhook verification ──────────────────────────────────

    def verify_webhook(self, params: dict[str, Any]) -> Optional[str]:
        """
        Verify the WhatsApp webhook subscription.
        Returns the challenge string on success, None on failure.
        """
        mode = params.get("hub.mode", "")
        token = params.get("hub.verify_token", "")
        challenge = params.get("hub.challenge", "")

        if mode == "subscribe" and self.config.verify_token and token == self.config.verify_token:
            return challenge
        logger.warning("whatsapp_webhook_verification_failed", mode=mode)
        return None

    def verify_signature(self, body: bytes, signature_header: Optional[str]) -> bool:
        """Check X-Hub-Signature-256. Always passes when no app secret is configured."""
        if not self.config.app_secret:
            return True
        if not signature_header or not signature_header.startswith("sha256="):
            return False
        expected = hmac.new(
            self.config.app_secret.encode("utf-8"), body, hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature_header.split("=", 1)[1])

    # ── Inbound parsing ───────────────────────────────────────

    def parse_webhook(self, raw_payload: dict[str, Any]) -> list[InboundMessage]:
        """Every customer message in the delivery, in order. Status callbacks yield nothing."""
        messages: list[InboundMessage] = []
        for entry in raw_payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                if "statuses" in value and "messages" not in value:
                    continue
                names = self._contact_names(value)
                for msg in value.get("messages") or []:
                    parsed = self._parse_message(msg, names)
                    if parsed is not None:
                        messages.append(parsed)
        return messages

    @staticmethod
    def _contact_names(value: dict[str, Any]) -> dict[str, str]:
        names: dict[str, str] = {}
        for contact in value.get("contacts") or []:
            wa_id = normalize_phone(contact.get("wa_id", ""))
            names[wa_id] = (contact.get("profile") or {}).get("name", "")
        return names

    def _parse_message(self, msg: dict[str, Any], names: dict[str, str]) -> Optional[InboundMessage]:
        sender = normalize_phone(msg.get("from", ""))
        if not sender:
            logger.warning("whatsapp_message_without_sender", message_id=msg.get("id"))
            return None

        msg_type = msg.get("type", "text")
        content = ""
        media_id: Optional[str] = None
        metadata: dict[str, Any] = {}

        if msg_type == "text":
            content = self.sanitizer.sanitize((msg.get("text") or {}).get("body", ""))
            message_type = MessageType.TEXT

        elif msg_type == "interactive":
            # The reply id is what handlers branch on; the title is kept for logs.
            interactive = msg.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
            content = reply.get("id", "")
            metadata["reply_title"] = reply.get("title", "")
            metadata["interactive_type"] = interactive.get("type", "")
            message_type = MessageType.INTERACTIVE

        elif msg_type in _MEDIA_TYPES:
            media = msg.get(msg_type) or {}
            media_id = media.get("id")
            metadata["mime_type"] = media.get("mime_type", "")
            if media.get("caption"):
                metadata["caption"] = media["caption"]
            if msg_type == "audio" and media.get("voice"):
                message_type = MessageType.VOICE
            else:
                message_type = MessageType(msg_type)

        elif msg_type == "voice":
            media = msg.get("voice") or msg.get("audio") or {}
            media_id = media.get("id")
            message_type = MessageType.VOICE

        elif msg_type == "location":
            loc = msg.get("location") or {}
            content = f"{loc.get('latitude', 0)},{loc.get('longitude', 0)}"
            metadata["address"] = loc.get("address", "")
            message_type = MessageType.LOCATION

        elif msg_type == "contacts":
            message_type = MessageType.CONTACTS

        else:
            metadata["raw_type"] = msg_type
            message_type = MessageType.UNKNOWN

        return InboundMessage(
            provider_message_id=msg.get("id", ""),
            sender=sender,
            message_type=message_type,
            content=content,
            sender_name=names.get(sender, ""),
            media_id=media_id,
            timestamp=self._parse_timestamp(msg.get("timestamp")),
            metadata=metadata,
        )

    @staticmethod
    def _parse_timestamp(raw: Any) -> datetime:
        try:
            return datetime.fromtimestamp(int(raw), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError):
            return datetime.now(timezone.utc)
