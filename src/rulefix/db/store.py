"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for rulefix. It uses aiosqlite for async access and converts rows
to the frozen domain dataclasses in rulefix.rules.models.

Every lookup takes the owner_id explicitly; a record belonging to another
owner is treated as missing.

Usage:
    from rulefix.db.store import DatabaseStore

    store = DatabaseStore("data/rulefix.db")
    await store.initialize()

    await store.save_group(group)
    added = await store.add_group_item(group.id, GroupItemType.FROM, "@beehiiv.com")
    rule = await store.get_rule_by_name("user1", "Newsletter Rule")
"""

from __future__ import annotations

import asyncio
import json
import weakref
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite

from rulefix.core.errors import DatabaseError
from rulefix.core.logging import get_correlation_id, get_logger
from rulefix.db.models import init_database
from rulefix.rules.models import (
    AIConditions,
    Category,
    CategoryCondition,
    CategoryFilterType,
    Group,
    GroupCondition,
    GroupItem,
    GroupItemType,
    LogicalOperator,
    Rule,
    StaticConditions,
)

logger = get_logger(__name__)


@dataclass
class ActionLogEntry:
    """Action log record from the database."""

    id: int
    timestamp: datetime
    action_type: str
    owner_id: str | None
    session_id: str | None
    details_json: dict[str, Any] | None
    triggered_by: str


class DatabaseStore:
    """Database store for rules, groups, categories and audit logs.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
        _owner_locks: Write locks by owner_id, shared by every caller of
            this store; an entry disappears once no coroutine holds it
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False
        self._owner_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def owner_lock(self, owner_id: str) -> asyncio.Lock:
        """Get the write lock that serializes mutations for one owner.

        Every RepairActionRegistry built on this store receives the same lock
        for the same owner, so read-modify-write edits never interleave.
        """
        lock = self._owner_locks.get(owner_id)
        if lock is None:
            lock = asyncio.Lock()
            self._owner_locks[owner_id] = lock
        return lock

    async def initialize(self) -> None:
        """Initialize the database, creating tables if needed.

        This must be called before any other operations.
        """
        await init_database(self.db_path)
        self._initialized = True

    @asynccontextmanager
    async def _db(self) -> AsyncIterator[aiosqlite.Connection]:
        """Get a configured database connection.

        Sets all required PRAGMAs for reliability and performance:
        - busy_timeout: 10s to handle concurrent diagnosis sessions
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")
            await db.execute("PRAGMA synchronous = NORMAL")

            db.row_factory = aiosqlite.Row
            yield db

    # =========================================================================
    # Category Operations
    # =========================================================================

    async def save_category(self, category: Category) -> None:
        """Insert or update a category."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO categories (id, owner_id, name, description)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        description = excluded.description
                    """,
                    (category.id, category.owner_id, category.name.strip(), category.description),
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save category", category_id=category.id, error=str(e))
            raise DatabaseError(f"Failed to save category '{category.name}': {e}") from e

    async def get_category(self, owner_id: str, category_id: str) -> Category | None:
        """Get a category by id, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM categories WHERE id = ? AND owner_id = ?",
                    (category_id, owner_id),
                )
                row = await cursor.fetchone()
                return self._row_to_category(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get category", category_id=category_id, error=str(e))
            raise DatabaseError(f"Failed to get category: {e}") from e

    async def get_category_by_name(self, owner_id: str, name: str) -> Category | None:
        """Get a category by name (case-insensitive), or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM categories WHERE owner_id = ? AND name = ?",
                    (owner_id, name.strip()),
                )
                row = await cursor.fetchone()
                return self._row_to_category(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get category by name", name=name, error=str(e))
            raise DatabaseError(f"Failed to get category by name: {e}") from e

    async def list_categories(self, owner_id: str) -> list[Category]:
        """List an owner's categories ordered by name."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM categories WHERE owner_id = ? ORDER BY name",
                    (owner_id,),
                )
                rows = await cursor.fetchall()
                return [self._row_to_category(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to list categories", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to list categories: {e}") from e

    def _row_to_category(self, row: aiosqlite.Row) -> Category:
        return Category(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            description=row["description"],
        )

    # =========================================================================
    # Sender Category Operations
    # =========================================================================

    async def get_sender_category(self, owner_id: str, sender: str) -> Category | None:
        """Get the category currently assigned to a sender, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT c.* FROM sender_categories s
                    JOIN categories c ON c.id = s.category_id
                    WHERE s.owner_id = ? AND s.sender = ?
                    """,
                    (owner_id, sender.lower()),
                )
                row = await cursor.fetchone()
                return self._row_to_category(row) if row else None

        except aiosqlite.Error as e:
            logger.error("Failed to get sender category", sender=sender, error=str(e))
            raise DatabaseError(f"Failed to get sender category: {e}") from e

    async def set_sender_category(self, owner_id: str, sender: str, category_id: str) -> bool:
        """Assign a category to a sender, replacing any prior assignment.

        Returns:
            True if the assignment changed, False if it was already set
        """
        sender = sender.lower()
        now = datetime.now().isoformat()
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT category_id FROM sender_categories WHERE owner_id = ? AND sender = ?",
                    (owner_id, sender),
                )
                previous = await cursor.fetchone()
                if previous and previous["category_id"] == category_id:
                    return False

                await db.execute(
                    """
                    INSERT INTO sender_categories (owner_id, sender, category_id, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(owner_id, sender) DO UPDATE SET
                        category_id = excluded.category_id,
                        updated_at = excluded.updated_at
                    """,
                    (owner_id, sender, category_id, now),
                )
                await db.commit()
                return True

        except aiosqlite.Error as e:
            logger.error("Failed to set sender category", sender=sender, error=str(e))
            raise DatabaseError(f"Failed to set sender category: {e}") from e

    # =========================================================================
    # Group Operations
    # =========================================================================

    async def save_group(self, group: Group) -> None:
        """Insert or update a group and append any of its items not yet stored."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO sender_groups (id, owner_id, name, prompt)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        prompt = excluded.prompt
                    """,
                    (group.id, group.owner_id, group.name, group.prompt),
                )
                await db.executemany(
                    "INSERT OR IGNORE INTO group_items (group_id, type, value) VALUES (?, ?, ?)",
                    [(group.id, item.type.value, item.value.strip()) for item in group.items],
                )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save group", group_id=group.id, error=str(e))
            raise DatabaseError(f"Failed to save group '{group.name}': {e}") from e

    async def get_group(self, owner_id: str, group_id: str) -> Group | None:
        """Get a group with its items, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_groups WHERE id = ? AND owner_id = ?",
                    (group_id, owner_id),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return await self._load_group(db, row)

        except aiosqlite.Error as e:
            logger.error("Failed to get group", group_id=group_id, error=str(e))
            raise DatabaseError(f"Failed to get group: {e}") from e

    async def get_group_by_name(self, owner_id: str, name: str) -> Group | None:
        """Get a group by its exact name, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM sender_groups WHERE owner_id = ? AND name = ?",
                    (owner_id, name),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return await self._load_group(db, row)

        except aiosqlite.Error as e:
            logger.error("Failed to get group by name", name=name, error=str(e))
            raise DatabaseError(f"Failed to get group by name: {e}") from e

    async def get_groups(self, owner_id: str, group_ids: list[str]) -> dict[str, Group]:
        """Get several groups by id in one connection."""
        groups: dict[str, Group] = {}
        if not group_ids:
            return groups

        try:
            async with self._db() as db:
                placeholders = ",".join("?" * len(group_ids))
                cursor = await db.execute(
                    f"SELECT * FROM sender_groups WHERE owner_id = ? AND id IN ({placeholders})",
                    [owner_id, *group_ids],
                )
                for row in await cursor.fetchall():
                    groups[row["id"]] = await self._load_group(db, row)
                return groups

        except aiosqlite.Error as e:
            logger.error("Failed to get groups", count=len(group_ids), error=str(e))
            raise DatabaseError(f"Failed to get groups: {e}") from e

    async def add_group_item(self, group_id: str, item_type: GroupItemType, value: str) -> bool:
        """Add an item to a group.

        Returns:
            True if inserted, False if the item already existed
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "INSERT OR IGNORE INTO group_items (group_id, type, value) VALUES (?, ?, ?)",
                    (group_id, item_type.value, value.strip()),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to add group item", group_id=group_id, error=str(e))
            raise DatabaseError(f"Failed to add group item: {e}") from e

    async def remove_group_item(self, group_id: str, item_type: GroupItemType, value: str) -> bool:
        """Remove an item from a group.

        Returns:
            True if deleted, False if the item was not present
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM group_items WHERE group_id = ? AND type = ? AND value = ?",
                    (group_id, item_type.value, value.strip()),
                )
                await db.commit()
                return cursor.rowcount > 0

        except aiosqlite.Error as e:
            logger.error("Failed to remove group item", group_id=group_id, error=str(e))
            raise DatabaseError(f"Failed to remove group item: {e}") from e

    async def _load_group(self, db: aiosqlite.Connection, row: aiosqlite.Row) -> Group:
        cursor = await db.execute(
            "SELECT type, value FROM group_items WHERE group_id = ? ORDER BY id",
            (row["id"],),
        )
        items = tuple(
            GroupItem(type=GroupItemType(item["type"]), value=item["value"])
            for item in await cursor.fetchall()
        )
        return Group(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            prompt=row["prompt"],
            items=items,
        )

    # =========================================================================
    # Rule Operations
    # =========================================================================

    async def save_rule(self, rule: Rule) -> None:
        """Insert or replace a rule and its category filter in one transaction.

        Raises:
            DatabaseError: On constraint violations (e.g. duplicate name) or I/O errors
        """
        static = rule.static or StaticConditions()
        now = datetime.now().isoformat()

        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO rules (
                        id, owner_id, name, conditional_operator, instructions,
                        from_address, to_address, subject, body, group_id,
                        category_filter_type, enabled, automate, run_on_threads, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name,
                        conditional_operator = excluded.conditional_operator,
                        instructions = excluded.instructions,
                        from_address = excluded.from_address,
                        to_address = excluded.to_address,
                        subject = excluded.subject,
                        body = excluded.body,
                        group_id = excluded.group_id,
                        category_filter_type = excluded.category_filter_type,
                        enabled = excluded.enabled,
                        automate = excluded.automate,
                        run_on_threads = excluded.run_on_threads,
                        updated_at = excluded.updated_at
                    """,
                    (
                        rule.id,
                        rule.owner_id,
                        rule.name,
                        rule.conditional_operator.value,
                        rule.ai.instructions if rule.ai else None,
                        static.from_address,
                        static.to_address,
                        static.subject,
                        static.body,
                        rule.group.group_id if rule.group else None,
                        rule.category.filter_type.value if rule.category else None,
                        1 if rule.enabled else 0,
                        1 if rule.automate else 0,
                        1 if rule.run_on_threads else 0,
                        now,
                    ),
                )
                await db.execute("DELETE FROM rule_category_filters WHERE rule_id = ?", (rule.id,))
                if rule.category:
                    await db.executemany(
                        """
                        INSERT INTO rule_category_filters (rule_id, category_id, position)
                        VALUES (?, ?, ?)
                        """,
                        [(rule.id, c.id, i) for i, c in enumerate(rule.category.categories)],
                    )
                await db.commit()

        except aiosqlite.Error as e:
            logger.error("Failed to save rule", rule_id=rule.id, error=str(e))
            raise DatabaseError(f"Failed to save rule '{rule.name}': {e}") from e

    async def get_rule(self, owner_id: str, rule_id: str) -> Rule | None:
        """Get a rule by id, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM rules WHERE id = ? AND owner_id = ?",
                    (rule_id, owner_id),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return await self._load_rule(db, row)

        except aiosqlite.Error as e:
            logger.error("Failed to get rule", rule_id=rule_id, error=str(e))
            raise DatabaseError(f"Failed to get rule: {e}") from e

    async def get_rule_by_name(self, owner_id: str, name: str) -> Rule | None:
        """Get a rule by its exact name, or None."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM rules WHERE owner_id = ? AND name = ?",
                    (owner_id, name),
                )
                row = await cursor.fetchone()
                if not row:
                    return None
                return await self._load_rule(db, row)

        except aiosqlite.Error as e:
            logger.error("Failed to get rule by name", name=name, error=str(e))
            raise DatabaseError(f"Failed to get rule by name: {e}") from e

    async def list_rules(self, owner_id: str) -> list[Rule]:
        """List an owner's rules ordered by name."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    "SELECT * FROM rules WHERE owner_id = ? ORDER BY name",
                    (owner_id,),
                )
                return [await self._load_rule(db, row) for row in await cursor.fetchall()]

        except aiosqlite.Error as e:
            logger.error("Failed to list rules", owner_id=owner_id, error=str(e))
            raise DatabaseError(f"Failed to list rules: {e}") from e

    async def _load_rule(self, db: aiosqlite.Connection, row: aiosqlite.Row) -> Rule:
        """Convert a rules row (plus its category filter rows) to a Rule."""
        category: CategoryCondition | None = None
        if row["category_filter_type"]:
            cursor = await db.execute(
                """
                SELECT c.* FROM rule_category_filters f
                JOIN categories c ON c.id = f.category_id
                WHERE f.rule_id = ?
                ORDER BY f.position
                """,
                (row["id"],),
            )
            categories = tuple(self._row_to_category(r) for r in await cursor.fetchall())
            if categories:
                category = CategoryCondition(
                    filter_type=CategoryFilterType(row["category_filter_type"]),
                    categories=categories,
                )

        static = StaticConditions(
            from_address=row["from_address"],
            to_address=row["to_address"],
            subject=row["subject"],
            body=row["body"],
        )

        return Rule(
            id=row["id"],
            owner_id=row["owner_id"],
            name=row["name"],
            conditional_operator=LogicalOperator(row["conditional_operator"]),
            static=static if static.is_populated else None,
            group=GroupCondition(row["group_id"]) if row["group_id"] else None,
            category=category,
            ai=AIConditions(row["instructions"]) if row["instructions"] else None,
            enabled=bool(row["enabled"]),
            automate=bool(row["automate"]),
            run_on_threads=bool(row["run_on_threads"]),
        )

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]] | None,
        response: dict[str, Any] | list[dict[str, Any]] | None = None,
        tool_call: list[dict[str, Any]] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        email_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log a reasoning service request for debugging.

        Args:
            task_type: Type of task ('diagnosis')
            model: Model string used
            prompt: The messages sent to Claude (None when prompt logging is off)
            response: The response content blocks
            tool_call: Tool calls proposed in the response
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            email_id: Associated email ID
            error: Error message (if failed)

        Returns:
            The log entry ID
        """
        try:
            session_id = get_correlation_id()

            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, email_id, session_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        email_id,
                        session_id,
                        json.dumps(prompt) if prompt else None,
                        json.dumps(response) if response else None,
                        json.dumps(tool_call) if tool_call else None,
                        input_tokens,
                        output_tokens,
                        duration_ms,
                        error,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log LLM request", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def count_llm_requests(self, session_id: str | None = None) -> int:
        """Count logged reasoning requests, optionally for one session."""
        try:
            async with self._db() as db:
                if session_id:
                    cursor = await db.execute(
                        "SELECT COUNT(*) FROM llm_request_log WHERE session_id = ?",
                        (session_id,),
                    )
                else:
                    cursor = await db.execute("SELECT COUNT(*) FROM llm_request_log")
                return (await cursor.fetchone())[0]

        except aiosqlite.Error as e:
            logger.error("Failed to count LLM requests", error=str(e))
            raise DatabaseError(f"Failed to count LLM requests: {e}") from e

    # =========================================================================
    # Action Log Operations
    # =========================================================================

    async def log_action(
        self,
        action_type: str,
        owner_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "diagnosis",
    ) -> int:
        """Log an applied repair action for the audit trail.

        Args:
            action_type: Repair action kind ('edit_rule', 'add_to_group', ...)
            owner_id: Owning account
            details: Action details dictionary
            triggered_by: Who triggered the action ('diagnosis', 'user')

        Returns:
            The log entry ID
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO action_log (
                        action_type, owner_id, session_id, details_json, triggered_by
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        action_type,
                        owner_id,
                        get_correlation_id(),
                        json.dumps(details) if details else None,
                        triggered_by,
                    ),
                )
                await db.commit()
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("Failed to log action", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self,
        limit: int = 100,
        owner_id: str | None = None,
        action_type: str | None = None,
    ) -> list[ActionLogEntry]:
        """Get action logs with optional filters, oldest first."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if owner_id:
                    query += " AND owner_id = ?"
                    params.append(owner_id)

                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)

                query += " ORDER BY id LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_action_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("Failed to get action logs", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    def _row_to_action_log(self, row: aiosqlite.Row) -> ActionLogEntry:
        """Convert a database row to an ActionLogEntry dataclass."""
        details_json = None
        if row["details_json"]:
            try:
                details_json = json.loads(row["details_json"])
            except json.JSONDecodeError:
                logger.warning("action_log_details_unreadable", action_log_id=row["id"])

        return ActionLogEntry(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"])
            if row["timestamp"]
            else datetime.now(),
            action_type=row["action_type"],
            owner_id=row["owner_id"],
            session_id=row["session_id"],
            details_json=details_json,
            triggered_by=row["triggered_by"],
        )
