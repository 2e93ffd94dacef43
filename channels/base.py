"""
Channel base — error taxonomy and the outbound transport contract.

Provides:
- ChannelError: structured error hierarchy (transient / fatal / circuit open)
- SendResult: outcome of a single provider call
- OutboundTransport: abstract provider client the resilience pipeline wraps
- InputSanitizer: control-character stripping for inbound text
"""
from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Optional

import structlog

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False,
                 status_code: Optional[int] = None):
        self.channel = channel
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


class TransientDeliveryError(ChannelError):
    """Network failure, timeout, 5xx or 429. Safe to retry."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None):
        super().__init__(message, channel, retryable=True, status_code=status_code)


class FatalDeliveryError(ChannelError):
    """Provider rejected the request (4xx other than 429). Never retried."""

    def __init__(self, message: str, channel: str = "", status_code: Optional[int] = None):
        super().__init__(message, channel, retryable=False, status_code=status_code)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  TRANSPORT CONTRACT
# ══════════════════════════════════════════════════════════════

@dataclass
class SendResult:
    ok: bool
    provider_message_id: Optional[str] = None
    error: str = ""


class OutboundTransport(abc.ABC):
    """
    Raw provider client. Implementations raise TransientDeliveryError /
    FatalDeliveryError on failure and return SendResult(ok=True) on success.
    The payload passed in is already shaped and truncated.
    """

    channel: str = ""

    @abc.abstractmethod
    async def send_payload(self, payload: dict[str, Any]) -> SendResult:
        ...

    @abc.abstractmethod
    async def mark_read(self, provider_message_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def download_media(self, media_id: str) -> Optional[bytes]:
        ...

    async def close(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  INPUT SANITIZER
# ══════════════════════════════════════════════════════════════

class InputSanitizer:
    def __init__(self, max_length: int = 4096):
        self.max_length = max_length

    def sanitize(self, content: str) -> str:
        if not content:
            return ""
        content = "".join(
            c for c in content if c in ("\n", "\t", "\r") or (ord(c) >= 32)
        )
        if len(content) > self.max_length:
            content = content[: self.max_length]
        return content.strip()
