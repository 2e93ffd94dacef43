"""
Database layer — persistence for sessions, customers, orders, outbound
messages, runtime configuration and the staff directory.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  session = await store.get_session("5215512345678")
"""
from database.models import (
    Base, ConfigValueRow, CustomerRow, OrderRow, OutboundMessageRow, SessionRow, StaffRow,
)
from database.session import build_engine, close_db, get_engine, get_session, init_db
from database.store_base import BaseBotStore, FolioCollisionError
from database.store import SqlBotStore
from database.store_memory import InMemoryBotStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "SessionRow", "CustomerRow", "OrderRow", "OutboundMessageRow",
    "ConfigValueRow", "StaffRow",
    # Engine / session management
    "build_engine", "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseBotStore", "FolioCollisionError",
    # Store backends
    "SqlBotStore", "InMemoryBotStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
