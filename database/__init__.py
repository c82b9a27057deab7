"""
Database layer — tracking tables and the dead-letter table.

Backends:
  - SQL (PostgreSQL / SQLite via SQLAlchemy async)
  - In-memory (list-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store(settings.database)
  tracked = await store.find_message("m1", "c1")
"""
from database.models import (
    Base, DeadLetterRow, DiscordChannelRow, DiscordMessageRow, DiscordRoleRow,
)
from database.session import get_engine, get_session, get_session_factory, init_db, close_db
from database.store_base import BaseTrackingStore
from database.store import SqlTrackingStore
from database.store_memory import InMemoryTrackingStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "DeadLetterRow", "DiscordChannelRow", "DiscordMessageRow", "DiscordRoleRow",
    # Session management
    "get_engine", "get_session", "get_session_factory", "init_db", "close_db",
    # Store interface
    "BaseTrackingStore",
    # Store backends
    "SqlTrackingStore", "InMemoryTrackingStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
