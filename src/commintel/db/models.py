"""SQLite database schema and initialization for the communication intelligence engine.

This module defines the database schema with all 6 tables:
- threads: Communication threads and their processing status
- messages: Immutable thread messages
- extracted_items: Deadlines, commitments and action items with lifecycle state
- extraction_runs: One row per orchestrator run (status, high-water mark)
- llm_request_log: Claude API call logging for debugging
- action_log: Audit trail of ingestion, extraction and lifecycle actions

Usage:
    from commintel.db.models import init_database

    # Initialize database (creates tables if not exist)
    await init_database("data/commintel.db")
"""

import stat
from pathlib import Path

import aiosqlite

from commintel.core.errors import DatabaseError
from commintel.core.logging import get_logger

logger = get_logger(__name__)

# Schema version for migrations (increment when schema changes)
SCHEMA_VERSION = 1

# SQL schema definition
SCHEMA_SQL = """
-- MUST be set before creating tables. Persists across connections.
PRAGMA journal_mode=WAL;

-- One row per communication thread
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,                    -- Upstream thread ID
    subject TEXT,
    matter_id TEXT,                         -- Legal matter the thread belongs to
    participants_json TEXT NOT NULL DEFAULT '[]',  -- Sorted, lowercased participant addresses
    is_processed INTEGER NOT NULL DEFAULT 0,       -- 0 when new messages await extraction
    processed_at DATETIME,
    last_message_date DATETIME,
    archived_at DATETIME,                   -- Set once archived; archived threads are never reprocessed
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_threads_pending ON threads(is_processed, archived_at);
CREATE INDEX IF NOT EXISTS idx_threads_matter ON threads(matter_id);

-- Messages are immutable: re-delivery of a known id is ignored
CREATE TABLE IF NOT EXISTS messages (
    id TEXT NOT NULL,
    thread_id TEXT NOT NULL REFERENCES threads(id),
    sender TEXT NOT NULL,
    recipients_json TEXT NOT NULL DEFAULT '[]',
    sent_date DATETIME NOT NULL,
    body TEXT NOT NULL DEFAULT '',
    attachments_json TEXT NOT NULL DEFAULT '[]',
    extraction_run_id TEXT,                 -- Successful run that covered it; NULL while pending
    PRIMARY KEY (thread_id, id)
);

-- Chronological order with message id as tie-break
CREATE INDEX IF NOT EXISTS idx_messages_order ON messages(thread_id, sent_date, id);

-- Extracted items. The CHECK constraints mirror the lifecycle invariants:
-- converted_task_id iff converted, dismissed_at + dismiss_reason iff dismissed.
CREATE TABLE IF NOT EXISTS extracted_items (
    id TEXT PRIMARY KEY,                    -- UUID
    thread_id TEXT NOT NULL REFERENCES threads(id),
    source_message_id TEXT NOT NULL,
    variant TEXT NOT NULL CHECK (variant IN ('deadline', 'commitment', 'action_item')),
    confidence TEXT NOT NULL CHECK (confidence IN ('Low', 'Medium', 'High')),
    payload_json TEXT NOT NULL,             -- Variant-specific fields
    fingerprint TEXT NOT NULL,              -- SHA-256 of normalized identity
    state TEXT NOT NULL DEFAULT 'open' CHECK (state IN ('open', 'converted', 'dismissed')),
    converted_task_id TEXT,
    dismissed_at DATETIME,
    dismiss_reason TEXT CHECK (
        dismiss_reason IS NULL
        OR dismiss_reason IN ('NotRelevant', 'AlreadyHandled', 'IncorrectInformation', 'Other')
    ),
    dismiss_note TEXT,
    version INTEGER NOT NULL DEFAULT 1,     -- Incremented on every transition (compare-and-set)
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL,
    UNIQUE (thread_id, fingerprint),
    CHECK ((state = 'converted') = (converted_task_id IS NOT NULL)),
    CHECK ((state = 'dismissed') = (dismissed_at IS NOT NULL AND dismiss_reason IS NOT NULL)),
    CHECK (state = 'dismissed' OR (dismissed_at IS NULL AND dismiss_reason IS NULL))
);

CREATE INDEX IF NOT EXISTS idx_items_thread_state ON extracted_items(thread_id, state);

-- One row per orchestrator run
CREATE TABLE IF NOT EXISTS extraction_runs (
    id TEXT PRIMARY KEY,                    -- UUID, also the extraction_run_id log correlation id
    thread_id TEXT NOT NULL REFERENCES threads(id),
    status TEXT NOT NULL CHECK (status IN ('running', 'succeeded', 'failed', 'skipped', 'cancelled')),
    since_message_id TEXT,                  -- NULL means the whole thread was sent
    high_water_message_id TEXT,             -- Newest message covered by this run
    candidates_count INTEGER NOT NULL DEFAULT 0,
    dropped_count INTEGER NOT NULL DEFAULT 0,
    items_created INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    started_at DATETIME NOT NULL,
    finished_at DATETIME
);

CREATE INDEX IF NOT EXISTS idx_runs_thread ON extraction_runs(thread_id, started_at DESC);

-- Claude API request log (debugging, retention-pruned)
CREATE TABLE IF NOT EXISTS llm_request_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    task_type TEXT,                         -- 'extraction'
    model TEXT,
    thread_id TEXT,
    extraction_run_id TEXT,
    prompt_json TEXT,
    response_json TEXT,
    tool_call_json TEXT,
    input_tokens INTEGER,
    output_tokens INTEGER,
    duration_ms INTEGER,
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_llm_log_timestamp ON llm_request_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_llm_log_thread ON llm_request_log(thread_id);

-- Audit trail
CREATE TABLE IF NOT EXISTS action_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp DATETIME DEFAULT CURRENT_TIMESTAMP,
    action_type TEXT NOT NULL,              -- 'item_created', 'item_converted', 'item_dismissed', ...
    thread_id TEXT,
    item_id TEXT,
    details_json TEXT,
    triggered_by TEXT                       -- 'engine', 'user', 'scheduler'
);

CREATE INDEX IF NOT EXISTS idx_action_log_timestamp ON action_log(timestamp);
CREATE INDEX IF NOT EXISTS idx_action_log_item ON action_log(item_id);
CREATE INDEX IF NOT EXISTS idx_action_log_thread ON action_log(thread_id);
"""

REQUIRED_TABLES = (
    "threads",
    "messages",
    "extracted_items",
    "extraction_runs",
    "llm_request_log",
    "action_log",
)


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
                    "wal_mode_not_enabled",
                    requested="wal",
                    actual=mode[0],
                    db_path=str(db_path),
                )

            await db.executescript(SCHEMA_SQL)
            await db.commit()

            cursor = await db.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
            table_count = (await cursor.fetchone())[0]

        # Thread bodies are client-confidential: owner read/write only
        db_path.chmod(stat.S_IRUSR | stat.S_IWUSR)
        for suffix in ["-wal", "-shm"]:
            wal_file = db_path.with_suffix(db_path.suffix + suffix)
            if wal_file.exists():
                wal_file.chmod(stat.S_IRUSR | stat.S_IWUSR)

        logger.info(
            "database_initialized",
            db_path=str(db_path),
            schema_version=SCHEMA_VERSION,
            tables_created=table_count,
        )

    except aiosqlite.Error as e:
        logger.error("database_init_failed", db_path=str(db_path), error=str(e))
        raise DatabaseError(
            f"Failed to initialize database at {db_path}: {e}. "
            "Check that the directory is writable and the database file is not corrupted."
        ) from e


async def verify_schema(db_path: str | Path) -> bool:
    """Verify that the database has all required tables.

    Args:
        db_path: Path to the SQLite database file

    Returns:
        True if all tables exist, False otherwise
    """
    try:
        async with aiosqlite.connect(db_path) as db:
            cursor = await db.execute("SELECT name FROM sqlite_master WHERE type='table'")
            existing_tables = {row[0] for row in await cursor.fetchall()}

            missing = set(REQUIRED_TABLES) - existing_tables
            if missing:
                logger.warning("missing_database_tables", missing=sorted(missing), db_path=str(db_path))
                return False
            return True

    except aiosqlite.Error as e:
        logger.error("schema_verification_failed", db_path=str(db_path), error=str(e))
        return False
