"""Database layer for the communication intelligence engine.

This module provides SQLite database access with async operations.

Usage:
    from commintel.db import DatabaseStore

    store = DatabaseStore("data/commintel.db")
    await store.initialize()

    thread = await store.get_thread("thread-123")
    items = await store.list_items("thread-123", state=ItemState.OPEN)
"""

from commintel.db.models import SCHEMA_VERSION, init_database, verify_schema
from commintel.db.store import ActionLogEntry, DatabaseStore, ExtractionRun, LLMLogEntry

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    # Dataclasses
    "ActionLogEntry",
    "ExtractionRun",
    "LLMLogEntry",
]
