"""Shared test fixtures for the ordering bot."""
from __future__ import annotations

import itertools
from typing import Any, Optional

import pytest
import pytest_asyncio

from channels.base import OutboundTransport, SendResult
from channels.dedup import InboundGate, InMemoryDedupCache
from channels.messenger import ResilientMessenger
from channels.payloads import rendered_body
from channels.resilience import ResiliencePipeline
from config.settings import ResilienceConfig, Settings
from core.orchestrator import InboundOrchestrator
from core.runtime_config import ConfigKeys, RuntimeConfig
from database.store_memory import InMemoryBotStore
from job_queue.message_queue import InMemoryJobQueue
from models.schemas import InboundMessage, MessageType

CUSTOMER = "5215512345678"


class RecordingTransport(OutboundTransport):
    """Fake provider: records every payload, raises queued failures in order."""

    channel = "whatsapp"

    def __init__(self):
        self.sent: list[dict[str, Any]] = []
        self.read: list[str] = []
        self.failures: list[Exception] = []
        self.calls = 0
        self._ids = itertools.count(1)

    async def send_payload(self, payload: dict[str, Any]) -> SendResult:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        self.sent.append(payload)
        return SendResult(ok=True, provider_message_id=f"wamid.{next(self._ids)}")

    async def mark_read(self, provider_message_id: str) -> bool:
        self.read.append(provider_message_id)
        return True

    async def download_media(self, media_id: str) -> Optional[bytes]:
        return b"media:" + media_id.encode()

    # ── Inspection helpers ────────────────────────────────────

    def bodies(self, to: Optional[str] = None) -> list[str]:
        return [rendered_body(p) for p in self.sent if to is None or p.get("to") == to]

    def last(self, to: Optional[str] = None) -> dict[str, Any]:
        payloads = [p for p in self.sent if to is None or p.get("to") == to]
        return payloads[-1]

    def reply_ids(self, payload: dict[str, Any]) -> list[str]:
        interactive = payload.get("interactive", {})
        if interactive.get("type") == "button":
            return [b["reply"]["id"] for b in interactive["action"]["buttons"]]
        if interactive.get("type") == "list":
            return [r["id"] for s in interactive["action"]["sections"] for r in s["rows"]]
        return []

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def settings() -> Settings:
    s = Settings()
    s.resilience = ResilienceConfig(
        max_retries=2,
        timeout_seconds=2.0,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        minimum_throughput=4,
        break_duration_seconds=30.0,
    )
    return s


@pytest.fixture
def store() -> InMemoryBotStore:
    return InMemoryBotStore()


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def pipeline(settings) -> ResiliencePipeline:
    return ResiliencePipeline(settings.resilience)


@pytest.fixture
def messenger(transport, store, pipeline) -> ResilientMessenger:
    return ResilientMessenger(transport, store, pipeline)


@pytest.fixture
def job_queue() -> InMemoryJobQueue:
    return InMemoryJobQueue()


@pytest.fixture
def gate() -> InboundGate:
    return InboundGate(InMemoryDedupCache())


@pytest.fixture
def runtime_config(store, settings) -> RuntimeConfig:
    return RuntimeConfig(store, settings)


@pytest.fixture
def orchestrator(store, messenger, gate, job_queue, settings) -> InboundOrchestrator:
    return InboundOrchestrator(store, messenger, gate, job_queue=job_queue, settings=settings)


@pytest.fixture
def make_inbound():
    """Factory for decoded inbound messages with unique provider ids."""
    counter = itertools.count(1)

    def _make(content: str = "", message_type: MessageType = MessageType.TEXT,
              sender: str = CUSTOMER, message_id: Optional[str] = None) -> InboundMessage:
        return InboundMessage(
            provider_message_id=message_id or f"wamid.in.{next(counter)}",
            sender=sender,
            message_type=message_type,
            content=content,
        )
    return _make


@pytest.fixture
def chat(orchestrator, make_inbound):
    """Send a sequence of messages from one customer through the orchestrator."""
    async def _chat(*contents: str, message_type: MessageType = MessageType.TEXT,
                    sender: str = CUSTOMER) -> list[dict[str, Any]]:
        results = []
        for content in contents:
            results.append(await orchestrator.handle_inbound(
                make_inbound(content, message_type=message_type, sender=sender)))
        return results
    return _chat


@pytest_asyncio.fixture
async def daytime(store):
    """Late-order warning never fires."""
    await store.set_config_value(ConfigKeys.LATE_ORDER_START_HOUR, "24")


@pytest_asyncio.fixture
async def after_hours(store):
    """Late-order warning always fires."""
    await store.set_config_value(ConfigKeys.LATE_ORDER_START_HOUR, "0")
