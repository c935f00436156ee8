"""Engine facade: the surface exposed to the API layer, the CLI and the scheduler.

Wires the components together and exposes:
- ingestion: ingest(payload)
- extraction: reprocess(thread_id), reprocess_pending(limit), archive_thread(thread_id)
- reads: get_thread, get_item, list_items, item_counts, preview_conversion
- lifecycle: convert, dismiss, relink_task

Reads never take locks.

Usage:
    from commintel.engine.service import IntelligenceEngine

    engine = IntelligenceEngine.build(store, capability, task_creator, config)
    await engine.ingest(payload)
    await engine.reprocess(payload["id"])
    items = await engine.list_items(payload["id"], ranked=True)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from commintel.core.errors import ItemNotFoundError, ThreadNotFoundError
from commintel.core.locks import KeyedLock
from commintel.engine.extraction_store import ExtractionStore
from commintel.engine.ingestor import ThreadIngestor
from commintel.engine.lifecycle import LifecycleManager
from commintel.engine.pipeline import ReprocessPipeline
from commintel.engine.ranking import ConfidencePolicy
from commintel.extraction.models import ItemState
from commintel.extraction.orchestrator import ExtractionOrchestrator
from commintel.tasks.bridge import TaskBridge

if TYPE_CHECKING:
    from commintel.config_schema import AppConfig
    from commintel.db.store import DatabaseStore
    from commintel.engine.pipeline import PendingCycleResult, ReprocessResult
    from commintel.extraction.claude_extractor import ExtractionCapability
    from commintel.extraction.models import (
        CommunicationThread,
        DismissReason,
        ExtractedItem,
    )
    from commintel.tasks.bridge import TaskCreator, TaskRequest


@dataclass(frozen=True)
class ConversionPreview:
    """The task a conversion would create, for an Open item."""

    item: ExtractedItem
    task: TaskRequest
    score: float


class IntelligenceEngine:
    """Facade over ingestion, extraction, ranking and lifecycle."""

    def __init__(
        self,
        store: DatabaseStore,
        ingestor: ThreadIngestor,
        pipeline: ReprocessPipeline,
        lifecycle: LifecycleManager,
        bridge: TaskBridge,
        policy: ConfidencePolicy,
    ):
        self._store = store
        self._ingestor = ingestor
        self._pipeline = pipeline
        self._lifecycle = lifecycle
        self._bridge = bridge
        self._policy = policy

    @classmethod
    def build(
        cls,
        store: DatabaseStore,
        capability: ExtractionCapability,
        task_creator: TaskCreator,
        config: AppConfig,
    ) -> IntelligenceEngine:
        """Assemble the engine from its two external capabilities."""
        thread_locks = KeyedLock("thread")
        policy = ConfidencePolicy.from_config(config.ranking)
        bridge = TaskBridge(task_creator, timeout_seconds=config.task_bridge.timeout_seconds)
        orchestrator = ExtractionOrchestrator(capability, store, config)
        extraction_store = ExtractionStore(
            store, fingerprint_prefix_length=config.extraction.fingerprint_prefix_length
        )
        return cls(
            store=store,
            ingestor=ThreadIngestor(store, locks=thread_locks),
            pipeline=ReprocessPipeline(
                store, orchestrator, extraction_store, locks=thread_locks, config=config
            ),
            lifecycle=LifecycleManager(store, bridge, policy=policy),
            bridge=bridge,
            policy=policy,
        )

    def update_config(self, config: AppConfig) -> None:
        """Apply a reloaded config to the pipeline and the ranking policy."""
        self._pipeline.update_config(config)
        self._policy = ConfidencePolicy.from_config(config.ranking)
        self._lifecycle.set_policy(self._policy)

    # =========================================================================
    # Ingestion and extraction
    # =========================================================================

    async def ingest(self, payload: dict[str, Any], triggered_by: str = "engine") -> CommunicationThread:
        return await self._ingestor.accept(payload, triggered_by=triggered_by)

    async def reprocess(self, thread_id: str) -> ReprocessResult:
        return await self._pipeline.reprocess(thread_id)

    async def reprocess_pending(self, limit: int | None = None) -> PendingCycleResult:
        return await self._pipeline.reprocess_pending(limit)

    async def archive_thread(self, thread_id: str, triggered_by: str = "user") -> CommunicationThread:
        return await self._pipeline.archive_thread(thread_id, triggered_by=triggered_by)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_thread(self, thread_id: str) -> CommunicationThread:
        """Raises ThreadNotFoundError for unknown ids."""
        thread = await self._store.get_thread(thread_id)
        if thread is None:
            raise ThreadNotFoundError(thread_id)
        return thread

    async def get_item(self, item_id: str) -> ExtractedItem:
        """Raises ItemNotFoundError for unknown ids."""
        item = await self._store.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    async def list_items(
        self,
        thread_id: str,
        state: ItemState | str | None = None,
        ranked: bool = False,
    ) -> list[ExtractedItem]:
        """A thread's items, oldest first, or by descending rank if ``ranked``."""
        items = await self._store.list_items(
            thread_id, state=ItemState.parse(state) if state is not None else None
        )
        if ranked:
            return self._policy.sort_items(items)
        return items

    async def item_counts(self, thread_id: str) -> dict[str, dict[str, int]]:
        """Per-state and per-variant item counts for a thread."""
        return await self._store.count_items(thread_id)

    async def preview_conversion(
        self, item_id: str, assignee_override: str | None = None
    ) -> ConversionPreview:
        """The task that converting the item would create. No side effects."""
        item = await self.get_item(item_id)
        return ConversionPreview(
            item=item,
            task=self._bridge.preview(item, assignee_override),
            score=self._policy.rank(item),
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def convert(
        self,
        item_id: str,
        assignee_override: str | None = None,
        expected_state: ItemState | str | None = None,
        triggered_by: str = "user",
    ) -> ExtractedItem:
        return await self._lifecycle.convert(
            item_id,
            assignee_override=assignee_override,
            expected_state=expected_state,
            triggered_by=triggered_by,
        )

    async def dismiss(
        self,
        item_id: str,
        reason: DismissReason | str,
        note: str | None = None,
        expected_state: ItemState | str | None = None,
        triggered_by: str = "user",
    ) -> ExtractedItem:
        return await self._lifecycle.dismiss(
            item_id,
            reason,
            note=note,
            expected_state=expected_state,
            triggered_by=triggered_by,
        )

    async def relink_task(self, item_id: str, task_id: str, triggered_by: str = "user") -> ExtractedItem:
        return await self._lifecycle.relink_task(item_id, task_id, triggered_by=triggered_by)
