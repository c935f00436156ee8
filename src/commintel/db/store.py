"""Database store with CRUD operations for all tables.

This module provides the DatabaseStore class that encapsulates all database
operations for the communication intelligence engine. It uses aiosqlite for
async access and converts rows to the domain dataclasses.

Methods that take a ``db`` argument can join a caller-owned transaction
(see ``transaction()``). Without one they open their own connection and
commit immediately.

Usage:
    from commintel.db.store import DatabaseStore

    store = DatabaseStore("data/commintel.db")
    await store.initialize()

    async with store.transaction() as db:
        await store.save_thread(thread, db=db)
        await store.insert_messages(new_messages, db=db)

    item = await store.get_item("item-uuid")
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Literal

import aiosqlite

from commintel.core.errors import DatabaseError, FingerprintCollision
from commintel.core.logging import get_correlation_id, get_logger
from commintel.db.models import init_database
from commintel.extraction.models import (
    CommunicationThread,
    Confidence,
    DismissReason,
    ExtractedItem,
    ItemState,
    Message,
    Variant,
    as_utc,
    payload_from_dict,
    utc_now,
)

logger = get_logger(__name__)

RunStatus = Literal["running", "succeeded", "failed", "skipped", "cancelled"]


@dataclass
class ExtractionRun:
    """Extraction run record from the database."""

    id: str
    thread_id: str
    status: RunStatus
    started_at: datetime
    since_message_id: str | None = None
    high_water_message_id: str | None = None
    candidates_count: int = 0
    dropped_count: int = 0
    items_created: int = 0
    error: str | None = None
    finished_at: datetime | None = None


@dataclass
class LLMLogEntry:
    """LLM request log entry from the database."""

    id: int
    timestamp: datetime
    task_type: str | None = None
    model: str | None = None
    thread_id: str | None = None
    extraction_run_id: str | None = None
    prompt_json: Any = None
    response_json: Any = None
    tool_call_json: Any = None
    input_tokens: int | None = None
    output_tokens: int | None = None
    duration_ms: int | None = None
    error: str | None = None


@dataclass
class ActionLogEntry:
    """Action log entry from the database."""

    id: int
    timestamp: datetime
    action_type: str
    thread_id: str | None = None
    item_id: str | None = None
    details_json: dict[str, Any] | None = None
    triggered_by: str | None = None


def _dt(value: datetime | None) -> str | None:
    return as_utc(value).isoformat() if value else None


def _parse_dt(value: str | None) -> datetime | None:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _loads(value: str | None) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


class DatabaseStore:
    """Database store for threads, items, runs and logs.

    Attributes:
        db_path: Path to the SQLite database file
        _initialized: Whether the database has been initialized
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._initialized = False

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
        - busy_timeout: 10s to handle concurrent pipeline and lifecycle writes
        - foreign_keys: ON to enforce referential integrity
        - synchronous: NORMAL (safe with WAL, faster writes)
        - cache_size: 64MB for better read performance
        - temp_store: MEMORY for faster temp operations
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA busy_timeout = 10000")
            await db.execute("PRAGMA foreign_keys = ON")

            await db.execute("PRAGMA synchronous = NORMAL")
            await db.execute("PRAGMA cache_size = -64000")  # 64MB
            await db.execute("PRAGMA temp_store = MEMORY")

            db.row_factory = aiosqlite.Row
            yield db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a block of writes atomically.

        Commits when the block exits normally. Any exception, including
        asyncio.CancelledError, rolls the whole block back.

        Raises:
            DatabaseError: If BEGIN or COMMIT fails
        """
        async with self._db() as db:
            try:
                await db.execute("BEGIN IMMEDIATE")
            except aiosqlite.Error as e:
                logger.error("transaction_begin_failed", error=str(e))
                raise DatabaseError(f"Failed to begin transaction: {e}") from e
            try:
                yield db
            except BaseException:
                await db.rollback()
                logger.debug("transaction_rolled_back")
                raise
            try:
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                logger.error("transaction_commit_failed", error=str(e))
                raise DatabaseError(f"Failed to commit transaction: {e}") from e

    @asynccontextmanager
    async def _conn(self, db: aiosqlite.Connection | None) -> AsyncIterator[aiosqlite.Connection]:
        """Use the caller's transaction connection, or a fresh autocommitting one."""
        if db is not None:
            yield db
            return
        async with self._db() as own:
            yield own
            await own.commit()

    async def checkpoint_wal(self) -> None:
        """Run a WAL checkpoint to keep WAL file size bounded.

        Safe to call periodically (e.g., at the end of each scheduled cycle).
        """
        try:
            async with self._db() as db:
                await db.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            logger.debug("wal_checkpoint_complete")
        except aiosqlite.Error as e:
            logger.warning("wal_checkpoint_failed", error=str(e))

    # =========================================================================
    # Thread Operations
    # =========================================================================

    async def save_thread(
        self, thread: CommunicationThread, db: aiosqlite.Connection | None = None
    ) -> None:
        """Insert or update a thread row (messages are written separately).

        Args:
            thread: Thread to save
            db: Optional transaction connection

        Raises:
            DatabaseError: If the operation fails
        """
        now = _dt(utc_now())
        try:
            async with self._conn(db) as conn:
                await conn.execute(
                    """
                    INSERT INTO threads (
                        id, subject, matter_id, participants_json, is_processed,
                        processed_at, last_message_date, archived_at, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        subject = excluded.subject,
                        matter_id = excluded.matter_id,
                        participants_json = excluded.participants_json,
                        is_processed = excluded.is_processed,
                        processed_at = excluded.processed_at,
                        last_message_date = excluded.last_message_date,
                        updated_at = excluded.updated_at
                    """,
                    (
                        thread.id,
                        thread.subject,
                        thread.matter_id,
                        json.dumps(sorted(thread.participants)),
                        1 if thread.is_processed else 0,
                        _dt(thread.processed_at),
                        _dt(thread.last_message_date),
                        _dt(thread.archived_at),
                        now,
                        now,
                    ),
                )
        except aiosqlite.Error as e:
            logger.error("thread_save_failed", thread_id=thread.id, error=str(e))
            raise DatabaseError(f"Failed to save thread {thread.id}: {e}") from e

    async def insert_messages(
        self, messages: list[Message], db: aiosqlite.Connection | None = None
    ) -> int:
        """Insert messages, ignoring ids already stored for the thread.

        Returns:
            Number of messages actually inserted
        """
        if not messages:
            return 0
        inserted = 0
        try:
            async with self._conn(db) as conn:
                for message in messages:
                    cursor = await conn.execute(
                        """
                        INSERT OR IGNORE INTO messages (
                            id, thread_id, sender, recipients_json,
                            sent_date, body, attachments_json
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            message.id,
                            message.thread_id,
                            message.sender,
                            json.dumps(list(message.recipients)),
                            _dt(message.sent_date),
                            message.body,
                            json.dumps(list(message.attachments)),
                        ),
                    )
                    inserted += cursor.rowcount
            return inserted
        except aiosqlite.Error as e:
            logger.error("messages_insert_failed", count=len(messages), error=str(e))
            raise DatabaseError(f"Failed to insert messages: {e}") from e

    async def get_thread(
        self, thread_id: str, db: aiosqlite.Connection | None = None
    ) -> CommunicationThread | None:
        """Get a thread with its messages in chronological order."""
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,))
                row = await cursor.fetchone()
                if row is None:
                    return None
                cursor = await conn.execute(
                    "SELECT * FROM messages WHERE thread_id = ? ORDER BY sent_date, id",
                    (thread_id,),
                )
                message_rows = await cursor.fetchall()
        except aiosqlite.Error as e:
            logger.error("thread_get_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get thread {thread_id}: {e}") from e

        messages = sorted((self._row_to_message(r) for r in message_rows), key=lambda m: m.sort_key)
        return CommunicationThread(
            id=row["id"],
            subject=row["subject"],
            matter_id=row["matter_id"],
            participants=set(_loads(row["participants_json"]) or []),
            messages=messages,
            is_processed=bool(row["is_processed"]),
            processed_at=_parse_dt(row["processed_at"]),
            last_message_date=_parse_dt(row["last_message_date"]),
            archived_at=_parse_dt(row["archived_at"]),
            pending_message_ids={r["id"] for r in message_rows if r["extraction_run_id"] is None},
        )

    async def mark_messages_extracted(
        self,
        thread_id: str,
        message_ids: list[str] | tuple[str, ...],
        run_id: str,
        db: aiosqlite.Connection | None = None,
    ) -> int:
        """Record that a successful run covered these messages.

        Returns:
            Number of messages updated
        """
        if not message_ids:
            return 0
        placeholders = ", ".join("?" for _ in message_ids)
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    f"""
                    UPDATE messages SET extraction_run_id = ?
                    WHERE thread_id = ? AND id IN ({placeholders})
                    """,
                    (run_id, thread_id, *message_ids),
                )
                return cursor.rowcount
        except aiosqlite.Error as e:
            logger.error("messages_mark_extracted_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to mark messages extracted for thread {thread_id}: {e}") from e

    async def is_thread_archived(
        self, thread_id: str, db: aiosqlite.Connection | None = None
    ) -> bool:
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    "SELECT archived_at FROM threads WHERE id = ?", (thread_id,)
                )
                row = await cursor.fetchone()
                return row is not None and row["archived_at"] is not None
        except aiosqlite.Error as e:
            logger.error("thread_archived_check_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to check archive state of thread {thread_id}: {e}") from e

    async def mark_thread_processed(
        self,
        thread_id: str,
        processed_at: datetime,
        db: aiosqlite.Connection | None = None,
    ) -> None:
        try:
            async with self._conn(db) as conn:
                await conn.execute(
                    """
                    UPDATE threads SET is_processed = 1, processed_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (_dt(processed_at), _dt(utc_now()), thread_id),
                )
        except aiosqlite.Error as e:
            logger.error("thread_mark_processed_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to mark thread {thread_id} processed: {e}") from e

    async def archive_thread(self, thread_id: str, archived_at: datetime) -> bool:
        """Set archived_at if not already set.

        Returns:
            True if the thread was archived by this call
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    UPDATE threads SET archived_at = ?, updated_at = ?
                    WHERE id = ? AND archived_at IS NULL
                    """,
                    (_dt(archived_at), _dt(utc_now()), thread_id),
                )
                await db.commit()
                return cursor.rowcount > 0
        except aiosqlite.Error as e:
            logger.error("thread_archive_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to archive thread {thread_id}: {e}") from e

    async def get_pending_thread_ids(self, limit: int = 50) -> list[str]:
        """Threads needing extraction: unprocessed, or whose latest run failed.

        Archived threads are never returned. Oldest activity first.
        """
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT t.id FROM threads t
                    WHERE t.archived_at IS NULL
                      AND (
                        t.is_processed = 0
                        OR (
                            SELECT r.status FROM extraction_runs r
                            WHERE r.thread_id = t.id AND r.status != 'running'
                            ORDER BY r.started_at DESC, r.rowid DESC LIMIT 1
                        ) IN ('failed', 'cancelled')
                      )
                    ORDER BY t.last_message_date ASC, t.id ASC
                    LIMIT ?
                    """,
                    (limit,),
                )
                rows = await cursor.fetchall()
                return [row["id"] for row in rows]
        except aiosqlite.Error as e:
            logger.error("pending_threads_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get pending threads: {e}") from e

    def _row_to_message(self, row: aiosqlite.Row) -> Message:
        """Convert a database row to a Message dataclass."""
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            sender=row["sender"],
            sent_date=_parse_dt(row["sent_date"]),
            recipients=tuple(_loads(row["recipients_json"]) or ()),
            body=row["body"] or "",
            attachments=tuple(_loads(row["attachments_json"]) or ()),
        )

    # =========================================================================
    # Extracted Item Operations
    # =========================================================================

    async def insert_item(self, item: ExtractedItem, db: aiosqlite.Connection | None = None) -> None:
        """Insert a new Open item.

        Raises:
            FingerprintCollision: If the thread already has an item with this fingerprint
            DatabaseError: If the operation fails
        """
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    """
                    INSERT INTO extracted_items (
                        id, thread_id, source_message_id, variant, confidence,
                        payload_json, fingerprint, state, version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(thread_id, fingerprint) DO NOTHING
                    """,
                    (
                        item.id,
                        item.thread_id,
                        item.source_message_id,
                        item.variant.value,
                        item.confidence.value,
                        json.dumps(item.payload.to_dict()),
                        item.fingerprint,
                        item.state.value,
                        item.version,
                        _dt(item.created_at),
                        _dt(item.updated_at or item.created_at),
                    ),
                )
                if cursor.rowcount == 0:
                    raise FingerprintCollision(item.thread_id, item.fingerprint)
        except aiosqlite.Error as e:
            logger.error("item_insert_failed", item_id=item.id, thread_id=item.thread_id, error=str(e))
            raise DatabaseError(f"Failed to insert item {item.id}: {e}") from e

    async def get_item(
        self, item_id: str, db: aiosqlite.Connection | None = None
    ) -> ExtractedItem | None:
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute("SELECT * FROM extracted_items WHERE id = ?", (item_id,))
                row = await cursor.fetchone()
                return self._row_to_item(row) if row else None
        except aiosqlite.Error as e:
            logger.error("item_get_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to get item {item_id}: {e}") from e

    async def list_items(
        self, thread_id: str, state: ItemState | None = None
    ) -> list[ExtractedItem]:
        """List a thread's items, oldest first, optionally filtered by state."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM extracted_items WHERE thread_id = ?"
                params: list[Any] = [thread_id]
                if state is not None:
                    query += " AND state = ?"
                    params.append(ItemState(state).value)
                query += " ORDER BY created_at, id"

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_item(row) for row in rows]
        except aiosqlite.Error as e:
            logger.error("items_list_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to list items for thread {thread_id}: {e}") from e

    async def count_items(self, thread_id: str) -> dict[str, dict[str, int]]:
        """Item counts for a thread grouped by state and by variant.

        Returns:
            {"state": {"open": n, ...}, "variant": {"deadline": n, ...}}.
            Every known state and variant is present, zero-filled.
        """
        counts: dict[str, dict[str, int]] = {
            "state": {s.value: 0 for s in ItemState},
            "variant": {v.value: 0 for v in Variant},
        }
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT state, variant, COUNT(*) AS n FROM extracted_items
                    WHERE thread_id = ? GROUP BY state, variant
                    """,
                    (thread_id,),
                )
                for row in await cursor.fetchall():
                    counts["state"][row["state"]] += row["n"]
                    counts["variant"][row["variant"]] += row["n"]
            return counts
        except aiosqlite.Error as e:
            logger.error("items_count_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to count items for thread {thread_id}: {e}") from e

    async def mark_item_converted(
        self,
        item_id: str,
        expected_version: int,
        task_id: str,
        now: datetime,
        db: aiosqlite.Connection | None = None,
    ) -> bool:
        """Compare-and-set Open -> Converted.

        Returns:
            True if the row was still Open at ``expected_version`` and was updated
        """
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    """
                    UPDATE extracted_items
                    SET state = 'converted', converted_task_id = ?,
                        version = version + 1, updated_at = ?
                    WHERE id = ? AND state = 'open' AND version = ?
                    """,
                    (task_id, _dt(now), item_id, expected_version),
                )
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("item_convert_update_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to mark item {item_id} converted: {e}") from e

    async def mark_item_dismissed(
        self,
        item_id: str,
        expected_version: int,
        reason: DismissReason,
        note: str | None,
        now: datetime,
        db: aiosqlite.Connection | None = None,
    ) -> bool:
        """Compare-and-set Open -> Dismissed.

        Returns:
            True if the row was still Open at ``expected_version`` and was updated
        """
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    """
                    UPDATE extracted_items
                    SET state = 'dismissed', dismissed_at = ?, dismiss_reason = ?,
                        dismiss_note = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND state = 'open' AND version = ?
                    """,
                    (_dt(now), reason.value, note, _dt(now), item_id, expected_version),
                )
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("item_dismiss_update_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to mark item {item_id} dismissed: {e}") from e

    async def update_task_reference(
        self,
        item_id: str,
        task_id: str,
        now: datetime,
        db: aiosqlite.Connection | None = None,
    ) -> bool:
        """Replace the task reference of a Converted item.

        Returns:
            True if the item was Converted and was updated
        """
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    """
                    UPDATE extracted_items
                    SET converted_task_id = ?, version = version + 1, updated_at = ?
                    WHERE id = ? AND state = 'converted'
                    """,
                    (task_id, _dt(now), item_id),
                )
                return cursor.rowcount == 1
        except aiosqlite.Error as e:
            logger.error("item_relink_failed", item_id=item_id, error=str(e))
            raise DatabaseError(f"Failed to update task reference for item {item_id}: {e}") from e

    def _row_to_item(self, row: aiosqlite.Row) -> ExtractedItem:
        """Convert a database row to an ExtractedItem dataclass."""
        return ExtractedItem(
            id=row["id"],
            thread_id=row["thread_id"],
            source_message_id=row["source_message_id"],
            confidence=Confidence(row["confidence"]),
            payload=payload_from_dict(row["variant"], json.loads(row["payload_json"])),
            fingerprint=row["fingerprint"],
            state=ItemState(row["state"]),
            converted_task_id=row["converted_task_id"],
            dismissed_at=_parse_dt(row["dismissed_at"]),
            dismiss_reason=DismissReason(row["dismiss_reason"]) if row["dismiss_reason"] else None,
            dismiss_note=row["dismiss_note"],
            version=row["version"],
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    # =========================================================================
    # Extraction Run Operations
    # =========================================================================

    async def create_run(
        self,
        run_id: str,
        thread_id: str,
        since_message_id: str | None,
        started_at: datetime,
    ) -> None:
        """Record the start of an extraction run (status 'running')."""
        try:
            async with self._db() as db:
                await db.execute(
                    """
                    INSERT INTO extraction_runs (id, thread_id, status, since_message_id, started_at)
                    VALUES (?, ?, 'running', ?, ?)
                    """,
                    (run_id, thread_id, since_message_id, _dt(started_at)),
                )
                await db.commit()
        except aiosqlite.Error as e:
            logger.error("run_create_failed", run_id=run_id, thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to record extraction run {run_id}: {e}") from e

    async def finish_run(
        self,
        run_id: str,
        status: RunStatus,
        finished_at: datetime,
        high_water_message_id: str | None = None,
        candidates_count: int = 0,
        dropped_count: int = 0,
        items_created: int = 0,
        error: str | None = None,
        db: aiosqlite.Connection | None = None,
    ) -> None:
        """Record the outcome of an extraction run."""
        try:
            async with self._conn(db) as conn:
                await conn.execute(
                    """
                    UPDATE extraction_runs
                    SET status = ?, high_water_message_id = ?, candidates_count = ?,
                        dropped_count = ?, items_created = ?, error = ?, finished_at = ?
                    WHERE id = ?
                    """,
                    (
                        status,
                        high_water_message_id,
                        candidates_count,
                        dropped_count,
                        items_created,
                        error,
                        _dt(finished_at),
                        run_id,
                    ),
                )
        except aiosqlite.Error as e:
            logger.error("run_finish_failed", run_id=run_id, status=status, error=str(e))
            raise DatabaseError(f"Failed to finish extraction run {run_id}: {e}") from e

    async def get_run(self, run_id: str) -> ExtractionRun | None:
        try:
            async with self._db() as db:
                cursor = await db.execute("SELECT * FROM extraction_runs WHERE id = ?", (run_id,))
                row = await cursor.fetchone()
                return self._row_to_run(row) if row else None
        except aiosqlite.Error as e:
            logger.error("run_get_failed", run_id=run_id, error=str(e))
            raise DatabaseError(f"Failed to get extraction run {run_id}: {e}") from e

    async def get_runs(self, thread_id: str, limit: int = 20) -> list[ExtractionRun]:
        """Most recent runs for a thread, newest first."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT * FROM extraction_runs WHERE thread_id = ?
                    ORDER BY started_at DESC, rowid DESC LIMIT ?
                    """,
                    (thread_id, limit),
                )
                return [self._row_to_run(row) for row in await cursor.fetchall()]
        except aiosqlite.Error as e:
            logger.error("runs_get_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get extraction runs for thread {thread_id}: {e}") from e

    async def get_high_water_mark(self, thread_id: str) -> str | None:
        """High-water message id of the newest successful or skipped run."""
        try:
            async with self._db() as db:
                cursor = await db.execute(
                    """
                    SELECT high_water_message_id FROM extraction_runs
                    WHERE thread_id = ? AND status IN ('succeeded', 'skipped')
                      AND high_water_message_id IS NOT NULL
                    ORDER BY started_at DESC, rowid DESC LIMIT 1
                    """,
                    (thread_id,),
                )
                row = await cursor.fetchone()
                return row["high_water_message_id"] if row else None
        except aiosqlite.Error as e:
            logger.error("high_water_get_failed", thread_id=thread_id, error=str(e))
            raise DatabaseError(f"Failed to get high-water mark for thread {thread_id}: {e}") from e

    def _row_to_run(self, row: aiosqlite.Row) -> ExtractionRun:
        """Convert a database row to an ExtractionRun dataclass."""
        return ExtractionRun(
            id=row["id"],
            thread_id=row["thread_id"],
            status=row["status"],
            started_at=_parse_dt(row["started_at"]),
            since_message_id=row["since_message_id"],
            high_water_message_id=row["high_water_message_id"],
            candidates_count=row["candidates_count"],
            dropped_count=row["dropped_count"],
            items_created=row["items_created"],
            error=row["error"],
            finished_at=_parse_dt(row["finished_at"]),
        )

    # =========================================================================
    # LLM Request Log Operations
    # =========================================================================

    async def log_llm_request(
        self,
        task_type: str,
        model: str,
        prompt: dict[str, Any] | list[dict[str, Any]],
        response: dict[str, Any] | None = None,
        tool_call: dict[str, Any] | None = None,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        duration_ms: int | None = None,
        thread_id: str | None = None,
        error: str | None = None,
    ) -> int:
        """Log an LLM request for debugging.

        Args:
            task_type: Type of task ('extraction')
            model: Model string used
            prompt: The prompt sent to Claude
            response: The response from Claude
            tool_call: Extracted tool call input
            input_tokens: Input token count
            output_tokens: Output token count
            duration_ms: Request duration in milliseconds
            thread_id: Associated thread ID
            error: Error message (if failed)

        Returns:
            The log entry ID
        """
        try:
            run_id = get_correlation_id()

            async with self._db() as db:
                cursor = await db.execute(
                    """
                    INSERT INTO llm_request_log (
                        task_type, model, thread_id, extraction_run_id,
                        prompt_json, response_json, tool_call_json,
                        input_tokens, output_tokens, duration_ms, error
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        task_type,
                        model,
                        thread_id,
                        run_id,
                        json.dumps(prompt),
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
            logger.error("llm_log_failed", task_type=task_type, error=str(e))
            raise DatabaseError(f"Failed to log LLM request: {e}") from e

    async def get_llm_logs(
        self,
        limit: int = 100,
        thread_id: str | None = None,
        extraction_run_id: str | None = None,
    ) -> list[LLMLogEntry]:
        try:
            async with self._db() as db:
                query = "SELECT * FROM llm_request_log WHERE 1=1"
                params: list[Any] = []

                if thread_id:
                    query += " AND thread_id = ?"
                    params.append(thread_id)

                if extraction_run_id:
                    query += " AND extraction_run_id = ?"
                    params.append(extraction_run_id)

                query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_llm_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("llm_logs_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get LLM logs: {e}") from e

    async def prune_llm_logs(self, retention_days: int) -> int:
        """Delete LLM logs older than the retention period.

        Returns:
            Number of entries deleted
        """
        try:
            cutoff = (utc_now() - timedelta(days=retention_days)).strftime("%Y-%m-%d %H:%M:%S")

            async with self._db() as db:
                cursor = await db.execute(
                    "DELETE FROM llm_request_log WHERE timestamp < ?",
                    (cutoff,),
                )
                await db.commit()

                deleted = cursor.rowcount
                if deleted:
                    logger.info("llm_logs_pruned", deleted=deleted, retention_days=retention_days)
                return deleted

        except aiosqlite.Error as e:
            logger.error("llm_logs_prune_failed", error=str(e))
            raise DatabaseError(f"Failed to prune LLM logs: {e}") from e

    def _row_to_llm_log(self, row: aiosqlite.Row) -> LLMLogEntry:
        """Convert a database row to an LLMLogEntry dataclass."""
        return LLMLogEntry(
            id=row["id"],
            timestamp=_parse_dt(row["timestamp"]) or utc_now(),
            task_type=row["task_type"],
            model=row["model"],
            thread_id=row["thread_id"],
            extraction_run_id=row["extraction_run_id"],
            prompt_json=_loads(row["prompt_json"]),
            response_json=_loads(row["response_json"]),
            tool_call_json=_loads(row["tool_call_json"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            duration_ms=row["duration_ms"],
            error=row["error"],
        )

    # =========================================================================
    # Action Log Operations
    # =========================================================================

    async def log_action(
        self,
        action_type: str,
        thread_id: str | None = None,
        item_id: str | None = None,
        details: dict[str, Any] | None = None,
        triggered_by: str = "engine",
        db: aiosqlite.Connection | None = None,
    ) -> int:
        """Append an audit trail entry.

        Args:
            action_type: Type of action ('item_created', 'item_converted', ...)
            thread_id: Associated thread ID (if applicable)
            item_id: Associated item ID (if applicable)
            details: Action details dictionary
            triggered_by: Who triggered the action ('engine', 'user', 'scheduler')
            db: Optional transaction connection

        Returns:
            The log entry ID
        """
        try:
            async with self._conn(db) as conn:
                cursor = await conn.execute(
                    """
                    INSERT INTO action_log (
                        action_type, thread_id, item_id, details_json, triggered_by
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        action_type,
                        thread_id,
                        item_id,
                        json.dumps(details) if details else None,
                        triggered_by,
                    ),
                )
                return cursor.lastrowid

        except aiosqlite.Error as e:
            logger.error("action_log_failed", action_type=action_type, error=str(e))
            raise DatabaseError(f"Failed to log action: {e}") from e

    async def get_action_logs(
        self,
        limit: int = 100,
        thread_id: str | None = None,
        item_id: str | None = None,
        action_type: str | None = None,
    ) -> list[ActionLogEntry]:
        """Get action logs, newest first, with optional filters."""
        try:
            async with self._db() as db:
                query = "SELECT * FROM action_log WHERE 1=1"
                params: list[Any] = []

                if thread_id:
                    query += " AND thread_id = ?"
                    params.append(thread_id)

                if item_id:
                    query += " AND item_id = ?"
                    params.append(item_id)

                if action_type:
                    query += " AND action_type = ?"
                    params.append(action_type)

                query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
                params.append(limit)

                cursor = await db.execute(query, params)
                rows = await cursor.fetchall()
                return [self._row_to_action_log(row) for row in rows]

        except aiosqlite.Error as e:
            logger.error("action_logs_get_failed", error=str(e))
            raise DatabaseError(f"Failed to get action logs: {e}") from e

    def _row_to_action_log(self, row: aiosqlite.Row) -> ActionLogEntry:
        """Convert a database row to an ActionLogEntry dataclass."""
        return ActionLogEntry(
            id=row["id"],
            timestamp=_parse_dt(row["timestamp"]) or utc_now(),
            action_type=row["action_type"],
            thread_id=row["thread_id"],
            item_id=row["item_id"],
            details_json=_loads(row["details_json"]),
            triggered_by=row["triggered_by"],
        )
