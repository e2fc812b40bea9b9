"""SQLite database schema and initialization for rulefix.

This module defines the database schema with 8 tables:
- categories: Sender categories per owner
- sender_groups: Named sender/subject groupings per owner
- group_items: Membership entries of a group
- rules: Rule definitions and their static/AI/group/category conditions
- rule_category_filters: Categories referenced by a rule's category filter
- sender_categories: Current sender -> category assignment per owner
- llm_request_log: Reasoning service call logging for debugging
- action_log: Audit trail of applied repair actions

Usage:
    from rulefix.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/rulefix.db")
"""

import stat
from pathlib import Path

import aiosqlite

from rulefix.core.errors import DatabaseError
from rulefix.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS categories (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL COLLATE NOCASE,
    description TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (owner_id, name)
);

CREATE TABLE IF NOT EXISTS sender_groups (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    prompt TEXT,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (owner_id, name)
);

-- value is NOCASE so (group_id, type, value) uniqueness ignores case
CREATE TABLE IF NOT EXISTS group_items (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    group_id TEXT NOT NULL REFERENCES sender_groups(id) ON DELETE CASCADE,
    type TEXT NOT NULL,                     -- 'from', 'subject'
    value TEXT NOT NULL COLLATE NOCASE,
    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (group_id, type, value)
);

CREATE INDEX IF NOT EXISTS idx_group_items_group ON group_items(group_id);

CREATE TABLE IF NOT EXISTS rules (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    name TEXT NOT NULL,
    conditional_operator TEXT NOT NULL DEFAULT 'AND',  -- 'AND', 'OR'
    instructions TEXT,                      -- AI condition (NULL = absent)
    from_address TEXT,                      -- Static conditions (NULL = absent)
    to_address TEXT,
    subject TEXT,
    body TEXT,
    group_id TEXT REFERENCES sender_groups(id),    -- Group condition (NULL = absent)
    category_filter_type TEXT,              -- 'INCLUDE', 'EXCLUDE', NULL = absent
    enabled INTEGER DEFAULT 1,
    automate INTEGER DEFAULT 1,
    run_on_threads INTEGER DEFAULT 0,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE (owner_id, name)
);

CREATE INDEX IF NOT EXISTS idx_rules_owner ON rules(owner_id);

CREATE TABLE IF NOT EXISTS rule_category_filters (
    rule_id TEXT NOT NULL REFERENCES rules(id) ON DELETE CASCADE,
    category_id TEXT NOT NULL REFERENCES categories(id),
    position INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (rule_id, category_id)
);

-- At most one category per sender per owner
CREATE TABLE IF NOT EXISTS sender_categories (
    owner_id TEXT NOT NULL,
    sender TEXT NOT NULL,                   -- Lowercased bare address
    category_id TEXT NOT NULL REFERENCES categories(id),
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (owner_id, sender)
);

-- Reasoning service request/response log for debugging diagnosis sessions
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'diagnosis'
    model TEXT,
    email_id TEXT,
    session_id TEXT,                        -- Correlation ID for the diagnosis session
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT                              -- NULL on success, error message on failure
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_session ON llm_request_log(session_id);

-- Audit log of applied repair actions
CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT,                       -- 'edit_rule', 'add_to_group', ...
    owner_id TEXT,
    session_id TEXT,
    details_json TEXT,
    triggered_by TEXT                       -- 'diagnosis', 'user'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_owner ON action_log(owner_id);
"""

REQUIRED_TABLES = [
    "categories",
    "sender_groups",
    "group_items",
    "rules",
    "rule_category_filters",
    "sender_categories",
    "llm_request_log",
    "action_log",
]


async def init_database(db_path: str | Path) -> None:
    """Initialize the SQLite database with schema and WAL mode.

    Creates the database file if it doesn't exist, enables WAL mode for
    concurrent access, and creates all tables and indexes.

    Args:
        db_path: Path to the SQLite database file

    Raises:
        DatabaseError: If database initialization fails
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        async with aiosqlite.connect(db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            journal_mode = await db.execute("PRAGMA journal_mode")
            mode = await journal_mode.fetchone()
            if mode and mode[0].lower() != "wal":
                logger.warning(
                    "WAL mode not enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Owner read/write only; rules and sender mappings are personal data
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "Database initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error(
            "Database initialization failed",
            db_path=str(db_path),
            error=str(e),
        )
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has all required tables.

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning(
                    "Missing database tables",
                    missing=sorted(missing),
                    db_path=str(db_path),
                )
                return False

            return True

    except aiosqlite.Error as e:
        logger.error(
            "Schema verification failed",
            db_path=str(db_path),
            error=str(e),
        )
        return False
