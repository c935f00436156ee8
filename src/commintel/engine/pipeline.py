"""Reprocess pipeline: extract and persist new items for a thread.

One reprocess run per thread:
1. Acquire the thread's lock (waits if a run or ingest is in progress)
2. Generate a run id and set it as the log correlation id
3. Look up the high-water mark of the last successful run
4. Run the extraction orchestrator over newer and still-pending messages
5. In one transaction: re-check the thread is not archived, persist new
   items, mark the covered messages extracted, finish the run with its
   high-water mark, mark the thread processed

Runs for different threads never share a lock. Archiving a thread cancels
its in-flight run; the persist transaction rolls back and the run is
recorded as cancelled.

reprocess_pending() is the scheduled entry point. It picks up threads with
unprocessed messages or a failed last run, so failed extractions are
retried on the next cycle. A failure on one thread never stops the others.

Usage:
    from commintel.engine.pipeline import ReprocessPipeline

    pipeline = ReprocessPipeline(store, orchestrator, extraction_store, locks, config)
    result = await pipeline.reprocess("thread-123")
    cycle = await pipeline.reprocess_pending(limit=20)
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Literal

from commintel.core.errors import CommIntelError, DatabaseError, ThreadNotFoundError
from commintel.core.locks import KeyedLock
from commintel.core.logging import get_logger, run_context
from commintel.extraction.models import CommunicationThread, ExtractedItem, utc_now

if TYPE_CHECKING:
    from commintel.config_schema import AppConfig
    from commintel.db.store import DatabaseStore
    from commintel.engine.extraction_store import ExtractionStore
    from commintel.extraction.orchestrator import ExtractionOrchestrator

logger = get_logger(__name__)

ReprocessStatus = Literal["succeeded", "failed", "skipped", "cancelled", "archived"]


# ---------------------------------------------------------------------------
# Result dataclasses
# ---------------------------------------------------------------------------


@dataclass
class ReprocessResult:
    """Result of reprocessing one thread."""

    thread_id: str
    status: ReprocessStatus
    run_id: str | None = None
    candidates: int = 0
    dropped: int = 0
    items_created: int = 0
    duration_ms: int = 0
    error: str | None = None
    created_items: list[ExtractedItem] = field(default_factory=list)


@dataclass
class PendingCycleResult:
    """Result of one reprocess_pending cycle."""

    cycle_id: str
    threads_attempted: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: int = 0
    items_created: int = 0
    logs_pruned: int = 0
    duration_ms: int = 0


class ReprocessPipeline:
    """Serializes extract+persist per thread and tracks in-flight runs.

    Attributes:
        _store: Database store
        _orchestrator: Extraction orchestrator
        _extraction_store: Fingerprint-idempotent item persistence
        _locks: Per-thread lock (shared with the ingestor)
        _config: Application configuration
        _inflight: Running extraction tasks by thread id
        _cancel_requested: Threads whose in-flight run was cancelled by archive
    """

    def __init__(
        self,
        store: DatabaseStore,
        orchestrator: ExtractionOrchestrator,
        extraction_store: ExtractionStore,
        locks: KeyedLock | None = None,
        config: AppConfig | None = None,
    ):
        self._store = store
        self._orchestrator = orchestrator
        self._extraction_store = extraction_store
        self._locks = locks or KeyedLock("thread")
        self._config = config
        self._inflight: dict[str, asyncio.Task[ReprocessResult]] = {}
        self._cancel_requested: set[str] = set()

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config
        self._orchestrator.update_config(config)

    def is_running(self, thread_id: str) -> bool:
        task = self._inflight.get(thread_id)
        return task is not None and not task.done()

    async def reprocess(self, thread_id: str) -> ReprocessResult:
        """Extract and persist new items for one thread.

        Waits for any run or ingest already holding the thread's lock.

        Returns:
            ReprocessResult. Extraction failures are reported, not raised.

        Raises:
            ThreadNotFoundError: Unknown thread id
            DatabaseError: If the store fails
        """
        async with self._locks.acquire(thread_id):
            thread = await self._store.get_thread(thread_id)
            if thread is None:
                raise ThreadNotFoundError(thread_id)
            if thread.is_archived:
                logger.info("reprocess_skipped_archived", thread_id=thread_id)
                return ReprocessResult(thread_id=thread_id, status="archived")

            run_id = str(uuid.uuid4())
            start_time = time.monotonic()

            with run_context(run_id, thread_id):
                task = asyncio.create_task(self._run(thread, run_id))
                self._inflight[thread_id] = task
                try:
                    result = await task
                except asyncio.CancelledError:
                    await self._record_cancelled(thread_id, run_id)
                    current = asyncio.current_task()
                    if thread_id not in self._cancel_requested or (
                        current is not None and current.cancelling()
                    ):
                        raise
                    result = ReprocessResult(
                        thread_id=thread_id,
                        status="cancelled",
                        run_id=run_id,
                        error="Thread archived during extraction",
                    )
                finally:
                    self._inflight.pop(thread_id, None)
                    self._cancel_requested.discard(thread_id)

                result.duration_ms = int((time.monotonic() - start_time) * 1000)
                logger.info(
                    "reprocess_complete",
                    status=result.status,
                    items_created=result.items_created,
                    dropped=result.dropped,
                    duration_ms=result.duration_ms,
                )
            return result

    async def _run(self, thread: CommunicationThread, run_id: str) -> ReprocessResult:
        since = await self._store.get_high_water_mark(thread.id)
        batch = await self._orchestrator.extract(thread, since_message_id=since, run_id=run_id)

        if batch.status == "failed":
            return ReprocessResult(
                thread_id=thread.id, status="failed", run_id=run_id, error=batch.error
            )

        now = utc_now()
        if batch.status == "skipped":
            await self._store.mark_thread_processed(thread.id, now)
            return ReprocessResult(thread_id=thread.id, status="skipped", run_id=run_id)

        async with self._store.transaction() as db:
            if await self._store.is_thread_archived(thread.id, db=db):
                await self._store.finish_run(
                    run_id, "cancelled", now, error="Thread archived before persist", db=db
                )
                logger.info("persist_skipped_archived", thread_id=thread.id)
                return ReprocessResult(
                    thread_id=thread.id,
                    status="cancelled",
                    run_id=run_id,
                    candidates=len(batch.candidates),
                    dropped=batch.dropped,
                    error="Thread archived before persist",
                )

            created = await self._extraction_store.persist(thread, batch.candidates, db=db)
            await self._store.mark_messages_extracted(thread.id, batch.message_ids, run_id, db=db)
            await self._store.finish_run(
                run_id,
                "succeeded",
                now,
                high_water_message_id=batch.high_water_message_id,
                candidates_count=len(batch.candidates),
                dropped_count=batch.dropped,
                items_created=len(created),
                db=db,
            )
            await self._store.mark_thread_processed(thread.id, now, db=db)

        return ReprocessResult(
            thread_id=thread.id,
            status="succeeded",
            run_id=run_id,
            candidates=len(batch.candidates),
            dropped=batch.dropped,
            items_created=len(created),
            created_items=created,
        )

    async def _record_cancelled(self, thread_id: str, run_id: str) -> None:
        logger.info("extraction_cancelled", thread_id=thread_id)
        try:
            await self._store.finish_run(
                run_id, "cancelled", utc_now(), error="Run cancelled before completion"
            )
        except DatabaseError as e:
            logger.warning("run_cancel_record_failed", thread_id=thread_id, error=str(e))

    # =========================================================================
    # Archive
    # =========================================================================

    async def archive_thread(self, thread_id: str, triggered_by: str = "user") -> CommunicationThread:
        """Archive a thread and cancel its in-flight run, if any.

        Does not wait for the thread lock. Archiving twice is a no-op.

        Raises:
            ThreadNotFoundError: Unknown thread id
        """
        thread = await self._store.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)

        now = utc_now()
        newly_archived = await self._store.archive_thread(thread_id, now)

        task = self._inflight.get(thread_id)
        cancelled_run = False
        if task is not None and not task.done():
            self._cancel_requested.add(thread_id)
            cancelled_run = task.cancel()

        if newly_archived:
            thread.archived_at = now
            await self._store.log_action(
                "thread_archived",
                thread_id=thread_id,
                details={"cancelled_run": cancelled_run},
                triggered_by=triggered_by,
            )
            logger.info("thread_archived", thread_id=thread_id, cancelled_run=cancelled_run)
        return thread

    # =========================================================================
    # Scheduled cycle
    # =========================================================================

    async def reprocess_pending(self, limit: int | None = None) -> PendingCycleResult:
        """Reprocess threads with unprocessed messages or a failed last run.

        Args:
            limit: Maximum threads this cycle (defaults to scheduler.batch_size)

        Returns:
            PendingCycleResult with per-status counts
        """
        cycle_id = str(uuid.uuid4())
        start_time = time.monotonic()
        result = PendingCycleResult(cycle_id=cycle_id)
        if limit is None:
            limit = self._config.scheduler.batch_size if self._config else 50

        logger.info("pending_cycle_start", cycle_id=cycle_id, limit=limit)
        try:
            thread_ids = await self._store.get_pending_thread_ids(limit)
            for thread_id in thread_ids:
                result.threads_attempted += 1
                try:
                    outcome = await self.reprocess(thread_id)
                except CommIntelError as e:
                    result.failed += 1
                    logger.error(
                        "reprocess_error",
                        thread_id=thread_id,
                        error=str(e),
                        error_type=type(e).__name__,
                    )
                    continue
                except Exception:
                    result.failed += 1
                    logger.exception("reprocess_unexpected_error", thread_id=thread_id)
                    continue

                if outcome.status == "succeeded":
                    result.succeeded += 1
                    result.items_created += outcome.items_created
                elif outcome.status == "failed":
                    result.failed += 1
                elif outcome.status == "cancelled":
                    result.cancelled += 1
                else:
                    result.skipped += 1

            if self._config is not None and self._config.llm_logging.enabled:
                try:
                    result.logs_pruned = await self._store.prune_llm_logs(
                        self._config.llm_logging.retention_days
                    )
                except DatabaseError as e:
                    logger.warning("log_pruning_failed", error=str(e))

            await self._store.checkpoint_wal()

        except DatabaseError as e:
            logger.error("pending_cycle_error", cycle_id=cycle_id, error=str(e))
        finally:
            result.duration_ms = int((time.monotonic() - start_time) * 1000)
            logger.info(
                "pending_cycle_complete",
                cycle_id=cycle_id,
                duration_ms=result.duration_ms,
                threads_attempted=result.threads_attempted,
                succeeded=result.succeeded,
                skipped=result.skipped,
                failed=result.failed,
                cancelled=result.cancelled,
                items_created=result.items_created,
                logs_pruned=result.logs_pruned,
            )

        return result
