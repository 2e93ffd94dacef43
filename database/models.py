"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

Key design decisions:
  - JSON type for the small nested aggregates (temp fields, billing data)
    so they round-trip on every dialect without extra tables.
  - Sessions carry a version column; batch writers compare it before
    overwriting (optimistic concurrency).
  - Customer and session rows are keyed by the WhatsApp phone number.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    Boolean, DateTime, Index, Integer, JSON, String, Text,
)
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex[:16]


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "sessions"

    customer_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    state: Mapped[str] = mapped_column(String(48), default="START")
    scratch_buffer: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    temp_fields: Mapped[Any] = mapped_column(JSON, default=dict)

    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    timeout_minutes: Mapped[int] = mapped_column(Integer, default=30)
    warning_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    closing_warning_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_sessions_state_activity", "state", "last_activity_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Customers
# ──────────────────────────────────────────────────────────────

class CustomerRow(Base):
    __tablename__ = "customers"

    customer_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), default="")
    address: Mapped[str] = mapped_column(Text, default="")
    billing: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


# ──────────────────────────────────────────────────────────────
#  Orders
# ──────────────────────────────────────────────────────────────

class OrderRow(Base):
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    folio: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="EnEspera")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payment_method: Mapped[str] = mapped_column(String(16), default="Efectivo")
    printed: Mapped[bool] = mapped_column(Boolean, default=False)
    printed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_orders_customer_created", "customer_id", "created_at"),
    )


# ──────────────────────────────────────────────────────────────
#  Outbound messages
# ──────────────────────────────────────────────────────────────

class OutboundMessageRow(Base):
    __tablename__ = "outbound_messages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    recipient: Mapped[str] = mapped_column(String(32), nullable=False)
    payload_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    rendered_body: Mapped[str] = mapped_column(Text, default="")
    delivery_status: Mapped[str] = mapped_column(String(16), default="pending")
    provider_message_id: Mapped[Optional[str]] = mapped_column(String(256), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_payload: Mapped[str] = mapped_column(Text, default="")

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_outbound_recipient_created", "recipient", "created_at"),
        Index("ix_outbound_provider_id", "provider_message_id"),
    )


# ──────────────────────────────────────────────────────────────
#  Configuration & staff
# ──────────────────────────────────────────────────────────────

class ConfigValueRow(Base):
    __tablename__ = "config_values"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, default="")
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class StaffRow(Base):
    __tablename__ = "staff"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    phone: Mapped[str] = mapped_column(String(32), default="")
    role: Mapped[str] = mapped_column(String(16), default="operator")

    __table_args__ = (
        Index("ix_staff_role", "role"),
    )
