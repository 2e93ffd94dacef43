"""
Orchestrator — The single entry point for every decoded inbound message.

Flow:
  InboundMessage
    → InboundGate (drop redeliveries)
    → mark read (best-effort)
    → per-customer lock
    → load or create Session; reset it if it already expired
    → global commands ("menu", "cancelar", "inicio")
    → unsupported content (apology + replay of the last prompt)
    → StateMachine.handle() → apply next state → save session

The session is saved at the end, under the customer's lock. Handlers that
write customer or order data also save it inside their own transaction.
If a handler or the final write fails the customer gets a generic apology
and the error propagates to the caller.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import structlog

from channels.dedup import InboundGate
from channels.messenger import ResilientMessenger
from config.settings import Settings, get_settings
from conversation import prompts
from conversation.state_machine import HandlerContext, StateMachine
from core.clock import to_local
from core.locks import KeyedLock
from core.runtime_config import RuntimeConfig
from database.store_base import BaseBotStore
from job_queue.message_queue import JobQueue
from models.schemas import ConversationState, InboundMessage, MessageType, Session, utcnow

logger = structlog.get_logger()

UNSUPPORTED_TYPES = frozenset({
    MessageType.IMAGE, MessageType.DOCUMENT, MessageType.LOCATION, MessageType.CONTACTS,
    MessageType.STICKER, MessageType.AUDIO, MessageType.VOICE, MessageType.VIDEO,
})


class InboundOrchestrator:

    def __init__(
        self,
        store: BaseBotStore,
        messenger: ResilientMessenger,
        gate: InboundGate,
        state_machine: Optional[StateMachine] = None,
        job_queue: Optional[JobQueue] = None,
        settings: Optional[Settings] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.messenger = messenger
        self.gate = gate
        self.state_machine = state_machine or StateMachine()
        self.job_queue = job_queue
        self.settings = settings or get_settings()
        self.config = RuntimeConfig(store, self.settings)
        self.locks = locks or KeyedLock()
        self._clock = clock

    async def handle_inbound(self, message: InboundMessage) -> dict[str, Any]:
        if not message.sender:
            logger.warning("inbound_without_sender", message_id=message.provider_message_id)
            return {"status": "ignored"}

        if not await self.gate.should_process(message.provider_message_id):
            return {"status": "duplicate"}

        await self.messenger.mark_read(message.provider_message_id)

        async with self.locks.lock(message.sender):
            try:
                return await self._process(message)
            except Exception as e:
                logger.error("inbound_processing_failed", customer=message.sender,
                             message_id=message.provider_message_id,
                             error_type=type(e).__name__, error=str(e))
                await self._apologize(message.sender)
                raise

    # ── Steps ─────────────────────────────────────────────────

    async def _process(self, message: InboundMessage) -> dict[str, Any]:
        customer_id = message.sender
        session = await self._load_session(customer_id)
        # same effective timeout the watchdog sweeps with
        session.timeout_minutes = await self.config.session_timeout_minutes()

        if session.state != ConversationState.START and session.is_expired(self._clock()):
            logger.info("session_expired_on_inbound", customer=customer_id,
                        state=session.state.value)
            session.reset()

        command = (message.content or "").strip().lower()
        if command in prompts.GLOBAL_COMMANDS:
            session.clear_buffer()
            session.change_state(ConversationState.MENU)
            await prompts.send_main_menu(self.messenger, customer_id)
            await self.store.save_session(session)
            logger.info("global_command", customer=customer_id, command=command)
            return {"status": "command", "state": session.state.value}

        if message.message_type in UNSUPPORTED_TYPES:
            await self._handle_unsupported(customer_id, message.message_type)
            session.touch()
            await self.store.save_session(session)
            return {"status": "unsupported", "state": session.state.value}

        session.touch()
        ctx = HandlerContext(
            customer_id=customer_id,
            content=message.content,
            message_type=message.message_type,
            session=session,
            messenger=self.messenger,
            store=self.store,
            config=self.config,
            now=to_local(self._clock(), self.settings.business.timezone),
            job_queue=self.job_queue,
            tz_name=self.settings.business.timezone,
        )
        result = await self.state_machine.handle(ctx)
        if session.state != result.next_state:
            session.change_state(result.next_state)
        await self.store.save_session(session)
        return {"status": "processed", "state": session.state.value}

    async def _load_session(self, customer_id: str) -> Session:
        session = await self.store.get_session(customer_id)
        if session is None:
            timeout = await self.config.session_timeout_minutes()
            session = await self.store.create_session(customer_id, timeout_minutes=timeout)
            logger.info("session_created", customer=customer_id, timeout_minutes=timeout)
        return session

    async def _handle_unsupported(self, customer_id: str, message_type: MessageType) -> None:
        # fetched first so the apology itself is not what gets replayed
        last = await self.messenger.last_outbound(customer_id)
        await self.messenger.send_text(customer_id, prompts.UNSUPPORTED_CONTENT[message_type.value])

        if last is None:
            logger.info("unsupported_content_no_prompt", customer=customer_id,
                        message_type=message_type.value)
            return
        if last.raw_payload:
            await self.messenger.resend(customer_id, last.raw_payload)
        elif last.rendered_body:
            await self.messenger.send_text(customer_id, last.rendered_body)

    async def _apologize(self, customer_id: str) -> None:
        try:
            await self.messenger.send_text(customer_id, prompts.GENERIC_ERROR)
        except Exception as e:
            logger.warning("error_apology_failed", customer=customer_id, error=str(e))
