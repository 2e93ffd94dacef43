"""
Abstract Bot Store — Interface for all storage backends.

Implementations:
  - SqlBotStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemoryBotStore (dict-based, single-process, no persistence)

Every read returns a detached copy: callers mutate their copy and hand it
back through a save/upsert call. transaction() groups several writes into
one unit of work that commits on success and rolls back (re-raising) on
any exception.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Iterable, Optional

import structlog

from models.errors import DomainError
from models.schemas import (
    Customer, Order, OutboundMessage, Session, StaffMember, StaffRole, generate_folio,
)

logger = structlog.get_logger()

FOLIO_ATTEMPTS = 5


class FolioCollisionError(DomainError):
    """Could not find a free folio after several attempts."""


class BaseBotStore(ABC):
    """Interface that all bot store backends must implement."""

    # ── Unit of work ──────────────────────────────────────────

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """Nested calls join the outer transaction."""
        ...

    async def init(self) -> None:
        pass

    async def close(self) -> None:
        pass

    # ── Sessions ──────────────────────────────────────────────

    @abstractmethod
    async def get_session(self, customer_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def create_session(self, customer_id: str, timeout_minutes: int = 30) -> Session:
        ...

    @abstractmethod
    async def save_session(self, session: Session) -> Session:
        """Unconditional write; bumps session.version."""
        ...

    @abstractmethod
    async def save_sessions(self, sessions: Iterable[Session]) -> list[str]:
        """
        Batch write with an optimistic version check. A session whose stored
        version differs from the copy's version is skipped; the ids of the
        skipped sessions are returned.
        """
        ...

    @abstractmethod
    async def list_sessions(self) -> list[Session]:
        ...

    # ── Customers ─────────────────────────────────────────────

    @abstractmethod
    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        ...

    @abstractmethod
    async def upsert_customer(self, customer: Customer) -> Customer:
        ...

    # ── Orders ────────────────────────────────────────────────

    async def create_order(self, order: Order) -> Order:
        """Insert the order, regenerating the folio while it collides."""
        for _ in range(FOLIO_ATTEMPTS):
            if not await self._folio_exists(order.folio):
                await self._insert_order(order)
                logger.info("order_created", order_id=order.id, folio=order.folio,
                            customer_id=order.customer_id)
                return order
            logger.warning("order_folio_collision", folio=order.folio)
            order.folio = generate_folio(order.created_at)
        raise FolioCollisionError(f"No free folio after {FOLIO_ATTEMPTS} attempts")

    @abstractmethod
    async def _folio_exists(self, folio: str) -> bool:
        ...

    @abstractmethod
    async def _insert_order(self, order: Order) -> None:
        ...

    @abstractmethod
    async def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def get_order_by_folio(self, folio: str) -> Optional[Order]:
        ...

    @abstractmethod
    async def update_order(self, order: Order) -> Order:
        ...

    @abstractmethod
    async def recent_orders(self, customer_id: str, limit: int = 3) -> list[Order]:
        """Newest first."""
        ...

    # ── Outbound messages ─────────────────────────────────────

    @abstractmethod
    async def add_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        ...

    @abstractmethod
    async def update_outbound_message(self, message: OutboundMessage) -> None:
        ...

    @abstractmethod
    async def last_outbound_message(self, recipient: str) -> Optional[OutboundMessage]:
        ...

    @abstractmethod
    async def outbound_messages(self, recipient: str) -> list[OutboundMessage]:
        """Message log for one recipient, oldest first."""
        ...

    # ── Configuration ─────────────────────────────────────────

    @abstractmethod
    async def get_config_value(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def set_config_value(self, key: str, value: str) -> None:
        ...

    # ── Staff directory ───────────────────────────────────────

    @abstractmethod
    async def find_staff_by_roles(self, roles: Iterable[StaffRole]) -> list[StaffMember]:
        ...

    @abstractmethod
    async def upsert_staff(self, member: StaffMember) -> StaffMember:
        ...

    async def staff_phones(self, roles: Iterable[StaffRole]) -> list[str]:
        """Distinct phones of staff holding any of the roles, skipping blanks."""
        phones: list[str] = []
        for member in await self.find_staff_by_roles(roles):
            if member.phone and member.phone not in phones:
                phones.append(member.phone)
        return phones
