"""Database layer for rulefix.

This module provides SQLite database access with async operations.

Usage:
    from rulefix.db import DatabaseStore

    store = DatabaseStore("data/rulefix.db")
    await store.initialize()

    await store.save_category(Category(id="c1", owner_id="user1", name="Sales"))
    changed = await store.set_sender_category("user1", "bob@acme.com", "c1")
"""

from rulefix.db.models import (
    SCHEMA_VERSION,
    init_database,
    verify_schema,
)
from rulefix.db.store import (
    ActionLogEntry,
    DatabaseStore,
)

__all__ = [
    # Models
    "SCHEMA_VERSION",
    "init_database",
    "verify_schema",
    # Store
    "DatabaseStore",
    "ActionLogEntry",
]
