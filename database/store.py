"""
SqlBotStore — Portable SQL persistence for PostgreSQL, MySQL, SQLite.

Each call runs in its own get_session() scope unless a transaction() is
open in the current task, in which case it joins that transaction's
session. The bound session travels in a ContextVar, so concurrent
customers each get their own unit of work.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import (
    ConfigValueRow, CustomerRow, OrderRow, OutboundMessageRow, SessionRow, StaffRow,
)
from database.session import close_db, get_session, init_db
from database.store_base import BaseBotStore
from models.schemas import (
    BillingData, ConversationState, Customer, DeliveryStatus, Order, OrderStatus,
    OutboundMessage, PayloadKind, PaymentMethod, Session, StaffMember, StaffRole, TempFields,
)

logger = structlog.get_logger()

_bound_session: ContextVar[Optional[AsyncSession]] = ContextVar("sql_store_session", default=None)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlBotStore(BaseBotStore):
    """
    Persistent bot store backed by any SQLAlchemy-supported database.
    Works with PostgreSQL, MySQL 8+, and SQLite.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._factory = session_factory

    async def init(self) -> None:
        if self._factory is None:
            await init_db()

    async def close(self) -> None:
        if self._factory is None:
            await close_db()

    # ── Unit of work ──────────────────────────────────────────

    @asynccontextmanager
    async def _scope(self) -> AsyncIterator[AsyncSession]:
        bound = _bound_session.get()
        if bound is not None:
            yield bound
            return
        async with get_session(self._factory) as db:
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _bound_session.get() is not None:
            yield
            return
        async with get_session(self._factory) as db:
            token = _bound_session.set(db)
            try:
                yield
            finally:
                _bound_session.reset(token)

    # ── Sessions ──────────────────────────────────────────────

    async def get_session(self, customer_id: str) -> Optional[Session]:
        async with self._scope() as db:
            row = await db.get(SessionRow, customer_id)
            return self._row_to_session(row) if row else None

    async def create_session(self, customer_id: str, timeout_minutes: int = 30) -> Session:
        session = Session(customer_id=customer_id, timeout_minutes=timeout_minutes)
        async with self._scope() as db:
            db.add(SessionRow(customer_id=customer_id, **self._session_values(session)))
            await db.flush()
        return session

    async def save_session(self, session: Session) -> Session:
        session.version += 1
        values = self._session_values(session)
        async with self._scope() as db:
            row = await db.get(SessionRow, session.customer_id)
            if row is None:
                db.add(SessionRow(customer_id=session.customer_id, **values))
            else:
                for key, value in values.items():
                    setattr(row, key, value)
            await db.flush()
        return session

    async def save_sessions(self, sessions: Iterable[Session]) -> list[str]:
        conflicts: list[str] = []
        async with self._scope() as db:
            for session in sessions:
                expected = session.version
                values = self._session_values(session)
                values["version"] = expected + 1
                result = await db.execute(
                    update(SessionRow)
                    .where(SessionRow.customer_id == session.customer_id,
                           SessionRow.version == expected)
                    .values(**values)
                )
                if result.rowcount == 1:
                    session.version = expected + 1
                    continue
                if await db.get(SessionRow, session.customer_id) is None:
                    db.add(SessionRow(customer_id=session.customer_id, **values))
                    session.version = expected + 1
                else:
                    conflicts.append(session.customer_id)
            await db.flush()
        return conflicts

    async def list_sessions(self) -> list[Session]:
        async with self._scope() as db:
            result = await db.execute(select(SessionRow))
            return [self._row_to_session(r) for r in result.scalars()]

    # ── Customers ─────────────────────────────────────────────

    async def get_customer(self, customer_id: str) -> Optional[Customer]:
        async with self._scope() as db:
            row = await db.get(CustomerRow, customer_id)
            return self._row_to_customer(row) if row else None

    async def upsert_customer(self, customer: Customer) -> Customer:
        billing = customer.billing.model_dump() if customer.billing else None
        async with self._scope() as db:
            row = await db.get(CustomerRow, customer.customer_id)
            if row is None:
                db.add(CustomerRow(
                    customer_id=customer.customer_id, name=customer.name,
                    address=customer.address, billing=billing,
                    created_at=customer.created_at,
                ))
            else:
                row.name = customer.name
                row.address = customer.address
                row.billing = billing
            await db.flush()
        return customer

    # ── Orders ────────────────────────────────────────────────

    async def _folio_exists(self, folio: str) -> bool:
        async with self._scope() as db:
            result = await db.execute(select(OrderRow.id).where(OrderRow.folio == folio))
            return result.first() is not None

    async def _insert_order(self, order: Order) -> None:
        async with self._scope() as db:
            db.add(OrderRow(**self._order_values(order), id=order.id, created_at=order.created_at))
            await db.flush()

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._scope() as db:
            row = await db.get(OrderRow, order_id)
            return self._row_to_order(row) if row else None

    async def get_order_by_folio(self, folio: str) -> Optional[Order]:
        async with self._scope() as db:
            result = await db.execute(select(OrderRow).where(OrderRow.folio == folio))
            row = result.scalar_one_or_none()
            return self._row_to_order(row) if row else None

    async def update_order(self, order: Order) -> Order:
        async with self._scope() as db:
            await db.execute(
                update(OrderRow).where(OrderRow.id == order.id).values(**self._order_values(order))
            )
        return order

    async def recent_orders(self, customer_id: str, limit: int = 3) -> list[Order]:
        async with self._scope() as db:
            stmt = (
                select(OrderRow)
                .where(OrderRow.customer_id == customer_id)
                .order_by(OrderRow.created_at.desc())
                .limit(limit)
            )
            result = await db.execute(stmt)
            return [self._row_to_order(r) for r in result.scalars()]

    # ── Outbound messages ─────────────────────────────────────

    async def add_outbound_message(self, message: OutboundMessage) -> OutboundMessage:
        async with self._scope() as db:
            db.add(OutboundMessageRow(
                id=message.id,
                recipient=message.recipient,
                payload_kind=message.payload_kind.value,
                rendered_body=message.rendered_body,
                delivery_status=message.delivery_status.value,
                raw_payload=message.raw_payload,
                created_at=message.created_at,
                updated_at=message.updated_at,
            ))
            await db.flush()
        return message

    async def update_outbound_message(self, message: OutboundMessage) -> None:
        async with self._scope() as db:
            await db.execute(
                update(OutboundMessageRow)
                .where(OutboundMessageRow.id == message.id)
                .values(
                    delivery_status=message.delivery_status.value,
                    provider_message_id=message.provider_message_id,
                    failure_reason=message.failure_reason,
                    updated_at=message.updated_at,
                )
            )

    async def last_outbound_message(self, recipient: str) -> Optional[OutboundMessage]:
        async with self._scope() as db:
            stmt = (
                select(OutboundMessageRow)
                .where(OutboundMessageRow.recipient == recipient)
                .order_by(OutboundMessageRow.created_at.desc())
                .limit(1)
            )
            result = await db.execute(stmt)
            row = result.scalar_one_or_none()
            return self._row_to_message(row) if row else None

    async def outbound_messages(self, recipient: str) -> list[OutboundMessage]:
        async with self._scope() as db:
            stmt = (
                select(OutboundMessageRow)
                .where(OutboundMessageRow.recipient == recipient)
                .order_by(OutboundMessageRow.created_at)
            )
            result = await db.execute(stmt)
            return [self._row_to_message(r) for r in result.scalars()]

    # ── Configuration ─────────────────────────────────────────

    async def get_config_value(self, key: str) -> Optional[str]:
        async with self._scope() as db:
            row = await db.get(ConfigValueRow, key)
            return row.value if row else None

    async def set_config_value(self, key: str, value: str) -> None:
        async with self._scope() as db:
            row = await db.get(ConfigValueRow, key)
            if row is None:
                db.add(ConfigValueRow(key=key, value=value))
            else:
                row.value = value

    # ── Staff directory ───────────────────────────────────────

    async def find_staff_by_roles(self, roles: Iterable[StaffRole]) -> list[StaffMember]:
        wanted = [r.value for r in roles]
        async with self._scope() as db:
            result = await db.execute(select(StaffRow).where(StaffRow.role.in_(wanted)))
            return [
                StaffMember(id=r.id, name=r.name, phone=r.phone or "", role=StaffRole(r.role))
                for r in result.scalars()
            ]

    async def upsert_staff(self, member: StaffMember) -> StaffMember:
        async with self._scope() as db:
            row = await db.get(StaffRow, member.id)
            if row is None:
                db.add(StaffRow(id=member.id, name=member.name, phone=member.phone,
                                role=member.role.value))
            else:
                row.name = member.name
                row.phone = member.phone
                row.role = member.role.value
        return member

    # ── Row mapping ───────────────────────────────────────────

    @staticmethod
    def _session_values(session: Session) -> dict[str, Any]:
        return {
            "state": session.state.value,
            "scratch_buffer": session.scratch_buffer,
            "temp_fields": session.temp_fields.model_dump(),
            "last_activity_at": session.last_activity_at,
            "timeout_minutes": session.timeout_minutes,
            "warning_sent": session.warning_sent,
            "closing_warning_sent": session.closing_warning_sent,
            "version": session.version,
            "created_at": session.created_at,
        }

    @staticmethod
    def _row_to_session(row: SessionRow) -> Session:
        return Session(
            customer_id=row.customer_id,
            state=ConversationState(row.state),
            scratch_buffer=row.scratch_buffer,
            temp_fields=TempFields(**(row.temp_fields or {})),
            last_activity_at=_aware(row.last_activity_at),
            timeout_minutes=row.timeout_minutes,
            warning_sent=bool(row.warning_sent),
            closing_warning_sent=bool(row.closing_warning_sent),
            version=row.version,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_customer(row: CustomerRow) -> Customer:
        return Customer(
            customer_id=row.customer_id,
            name=row.name or "",
            address=row.address or "",
            billing=BillingData(**row.billing) if row.billing else None,
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _order_values(order: Order) -> dict[str, Any]:
        return {
            "folio": order.folio,
            "customer_id": order.customer_id,
            "content": order.content,
            "status": order.status.value,
            "notes": order.notes,
            "payment_method": order.payment_method.value,
            "printed": order.printed,
            "printed_at": order.printed_at,
        }

    @staticmethod
    def _row_to_order(row: OrderRow) -> Order:
        return Order(
            id=row.id,
            folio=row.folio,
            customer_id=row.customer_id,
            content=row.content,
            status=OrderStatus(row.status),
            notes=row.notes,
            payment_method=PaymentMethod(row.payment_method),
            printed=bool(row.printed),
            printed_at=_aware(row.printed_at),
            created_at=_aware(row.created_at),
        )

    @staticmethod
    def _row_to_message(row: OutboundMessageRow) -> OutboundMessage:
        return OutboundMessage(
            id=row.id,
            recipient=row.recipient,
            payload_kind=PayloadKind(row.payload_kind),
            rendered_body=row.rendered_body or "",
            delivery_status=DeliveryStatus(row.delivery_status),
            provider_message_id=row.provider_message_id,
            failure_reason=row.failure_reason,
            raw_payload=row.raw_payload or "",
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
        )
