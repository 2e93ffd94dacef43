"""
Conversation State Machine — dispatches one inbound message to the handler
registered for the session's current state.

Flow:
  Orchestrator builds a HandlerContext (session already loaded and locked)
    → StateMachine.handle(ctx) looks up the handler for session.state
    → handler sends prompts through the messenger, persists what it must
    → handler returns the next state (or None to stay)
    → Orchestrator applies the state and saves the session

Every handler has the same signature:

    async def handler(ctx: HandlerContext) -> Optional[ConversationState]

Handlers are registered per state with the @handles decorator in the
conversation.handlers_* modules. Unregistered states fall back to MENU.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional

import structlog

from channels.messenger import ResilientMessenger
from core.runtime_config import RuntimeConfig
from database.store_base import BaseBotStore
from job_queue.message_queue import JobQueue
from models.schemas import ConversationState, Customer, MessageType, Session

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Handler context
# ──────────────────────────────────────────────────────────────

@dataclass
class HandlerContext:
    """Everything a handler may touch while processing one message."""
    customer_id: str
    content: str
    message_type: MessageType
    session: Session
    messenger: ResilientMessenger
    store: BaseBotStore
    config: RuntimeConfig
    now: datetime                                 # business-local time
    job_queue: Optional[JobQueue] = None
    tz_name: Optional[str] = None

    @property
    def is_text(self) -> bool:
        return self.message_type == MessageType.TEXT

    @property
    def text(self) -> str:
        return (self.content or "").strip()

    async def customer(self) -> Optional[Customer]:
        return await self.store.get_customer(self.customer_id)

    async def persist_state(self, state: ConversationState) -> None:
        """Apply a state and save the session inside the caller's transaction."""
        self.session.change_state(state)
        await self.store.save_session(self.session)

    async def say(self, body: str) -> bool:
        return await self.messenger.send_text(self.customer_id, body)


Handler = Callable[[HandlerContext], Awaitable[Optional[ConversationState]]]


class HandlerResult:
    """Outcome of dispatching one message."""

    def __init__(self, previous_state: ConversationState, next_state: ConversationState):
        self.previous_state = previous_state
        self.next_state = next_state

    @property
    def changed(self) -> bool:
        return self.previous_state != self.next_state

    def __repr__(self):
        return f"<HandlerResult {self.previous_state.value} → {self.next_state.value}>"


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

_REGISTRY: dict[ConversationState, Handler] = {}


def handles(*states: ConversationState) -> Callable[[Handler], Handler]:
    """Register a handler for one or more states."""
    def decorator(fn: Handler) -> Handler:
        for state in states:
            if state in _REGISTRY and _REGISTRY[state] is not fn:
                raise ValueError(f"State {state.value} already has a handler")
            _REGISTRY[state] = fn
        return fn
    return decorator


def registered_states() -> set[ConversationState]:
    return set(_REGISTRY)


class StateMachine:

    def __init__(self, registry: Optional[dict[ConversationState, Handler]] = None):
        if registry is None:
            # importing the handler modules fills the default registry
            import conversation.handlers_billing  # noqa: F401
            import conversation.handlers_menu  # noqa: F401
            import conversation.handlers_ordering  # noqa: F401
            registry = _REGISTRY
        self._handlers = registry

    def handler_for(self, state: ConversationState) -> Handler:
        handler = self._handlers.get(state)
        if handler is None:
            logger.warning("state_handler_missing", state=state.value)
            handler = self._handlers[ConversationState.MENU]
        return handler

    async def handle(self, ctx: HandlerContext) -> HandlerResult:
        previous = ctx.session.state
        handler = self.handler_for(previous)
        next_state = await handler(ctx)
        result = HandlerResult(previous, next_state or previous)
        logger.info("state_handled", customer=ctx.customer_id, state=previous.value,
                    next_state=result.next_state.value)
        return result
