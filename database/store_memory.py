"""
InMemoryBotStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Full interface compatibility with SqlBotStore
  - Copies on every read and write, so callers never alias stored state
  - transaction() holds one store-wide lock and restores a full snapshot on error
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import AsyncIterator, Iterable, Optional

import structlog

from database.store_base import BaseBotStore
from models.schemas import (
    Customer, Order, OutboundMessage, Session, StaffMember, StaffRole,
)

logger = structlog.get_logger()

_in_transaction: ContextVar[bool] = ContextVar("memory_store_in_transaction", default=False)


class InMemoryBotStore(BaseBotStore):
    """Full-featured in-memory store with the same interface as SqlBotStore."""

    def __init__(self):
        self._sessions: dict[str, Session] = {}
        self._customers: dict[str, Customer] = {}
        self._orders: dict[str, Order] = {}
        self._folio_index: dict[str, str] = {}                          # folio → order id
        self._outbound: dict[str, list[OutboundMessage]] = defaultdict(list)  # recipient → messages
        self._config: dict[str, str] = {}
        self._staff: dict[str, StaffMember] = {}
        self._tx_lock = asyncio.Lock()
        logger.info("inmemory_store_initialized")

    # ── Unit of work ──────────────────────────────────────────

    def _tables(self) -> tuple:
        return (self._sessions, self._customers, self._orders, self._folio_index,
                self._outbound, self._config, self._staff)

    def _restore(self, snapshot: tuple) -> None:
        (self._sessions, self._customers, self._orders, self._folio_index,
         self._outbound, self._config, self._staff) = snapshot

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """
        Run the block as one unit of work.

        A single store-wide lock serializes every transaction, across all
        customers. On error the whole store is restored from a snapshot
        taken at entry, so a write made outside the transaction while the
        block was running is discarded too. Fine for tests and single-process
        development; use SqlBotStore where writers interleave.
        """
        if _in_transaction.get():
            yield
            return
        async with self._tx_lock:
            snapshot = copy.deepcopy(self._tables())
            token = _in_transaction.set(True)
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                logger.warning("inmemory_transaction_rolled_back")
                raise
            finally:
                _in_transaction.reset(token)

    # ── Sessions ──────────────────────────────────────────────

    async def get_session(self, customer_id: str) -> Optional[Session]:
        session = self._sessions.get(customer_id)
        return session.model_copy(deep=True) if session else None

    async def create_session(self, customer_id: str, timeout_minutes: int = 30) -> Session:
        session = Session(customer_id=customer_id, timeout_minutes=timeout_minutes)
        self._sessions[customer_id] = session.model_copy(deep=True)
        return session

    async def save_session(self, session: Session) -> Session:
        session.version += 1
        self._sessions[session.customer_id] = session.model_copy(deep=True)
        return session

    async def save_sessions(self, sessions: Iterable[Session]) -> list[str]:
        conflicts: list[str] = []
        for session in sessions:
            stored = self._sessions.get(session.customer_id)
            if stored is not None and stored.version != session.version:
                conflicts.append(session.customer_id)
                continue
            await self.save_session(session)
        return conflicts

    async def list_sessions(self) -> list[Session]:
        return [s.model_copy(deep=True) for s in self._sessions.values()]

    # ── Customers ─────────────────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        customer = self._customers.get(customer_id)
        return customer.model_copy(deep=True) if customer else None

    async def upsert_customer(self, customer: Customer) -> Customer:
        self._customers[customer.customer_id] = customer.model_copy(deep=True)
        return customer

    # ── Orders ────────────────────────────────────────────────

    async def _folio_exists(self, folio: str) -> bool:
        return folio in self._folio_index

    async def _insert_order(self, order: Order) -> None:
        self._orders[order.id] = order.model_copy(deep=True)
        self._folio_index[order.folio] = order.id

    async def get_order(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_order_by_folio(self, folio: str) -> Optional[Order]:
        order_id = self._folio_index.get(folio)
        return await self.get_order(order_id) if order_id else None

    async def update_order(self, order: Order) -> Order:
        self._orders[order.id] = order.model_copy(deep=True)
        return order

    async def recent_orders(self, customer_id: str, limit: int = 3) -> list[Order]:
        mine = [o for o in self._orders.values() if o.customer_id == customer_id]
        mine.sort(key=lambda o: o.created_at, reverse=True)
        return [o.model_copy(deep=True) for o in mine[:limit]]

    # ── Outbound messages ─────────────────────────────────────

    async def add_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        self._outbound[message.recipient].append(message.model_copy(deep=True))
        return message

    async def update_outbound_message(self, message: OutboundMessage) -> None:
        rows = self._outbound[message.recipient]
        for i, row in enumerate(rows):
            if row.id == message.id:
                rows[i] = message.model_copy(deep=True)
                return
        rows.append(message.model_copy(deep=True))

    async def last_outbound_message(self, recipient: str) -> Optional[OutboundMessage]:
        rows = self._outbound.get(recipient)
        return rows[-1].model_copy(deep=True) if rows else None

    async def outbound_messages(self, recipient: str) -> list[OutboundMessage]:
        return [m.model_copy(deep=True) for m in self._outbound.get(recipient, [])]

    # ── Configuration ─────────────────────────────────────────

    async def get_config_value(self, key: str) -> Optional[str]:
        return self._config.get(key)

    async def set_config_value(self, key: str, value: str) -> None:
        self._config[key] = value

    # ── Staff directory ───────────────────────────────────────

    async def find_staff_by_roles(self, roles: Iterable[StaffRole]) -> list[StaffMember]:
        wanted = set(roles)
        return [m.model_copy() for m in self._staff.values() if m.role in wanted]

    async def upsert_staff(self, member: StaffMember) -> StaffMember:
        self._staff[member.id] = member.model_copy()
        return member
