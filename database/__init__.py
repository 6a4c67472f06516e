"""
Database layer — Multi-backend persistence for owners, credentials,
notification schedules and delivery records.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store, get_store
  store = create_store({"store_backend": "memory"})
  schedule = await store.get_schedule("s1")
"""
from database.models import (
    Base, OwnerRow, CredentialRow, ScheduleRow, NotificationRecordRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseReminderStore
from database.store import SqlReminderStore
from database.store_memory import InMemoryReminderStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "OwnerRow", "CredentialRow", "ScheduleRow", "NotificationRecordRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseReminderStore",
    # Store backends
    "SqlReminderStore", "InMemoryReminderStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
