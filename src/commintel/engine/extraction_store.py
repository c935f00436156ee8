"""Extraction store: the only creator of extracted items.

Persists validated candidates as Open items, skipping any candidate whose
fingerprint already exists for the thread. Reprocessing an unchanged
thread is therefore a no-op, and two candidates in one batch that
normalize to the same text produce one item.

Usage:
    from commintel.engine.extraction_store import ExtractionStore

    extraction_store = ExtractionStore(store, fingerprint_prefix_length=64)
    created = await extraction_store.persist(thread, batch.candidates)
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from typing import TYPE_CHECKING

from commintel.core.errors import FingerprintCollision, ValidationError
from commintel.core.logging import get_logger
from commintel.extraction.fingerprint import DEFAULT_PREFIX_LENGTH, compute_fingerprint
from commintel.extraction.models import (
    CandidateExtraction,
    CommunicationThread,
    ExtractedItem,
    ItemState,
    utc_now,
)

if TYPE_CHECKING:
    import aiosqlite

    from commintel.db.store import DatabaseStore

logger = get_logger(__name__)


class ExtractionStore:
    """Fingerprint-idempotent persistence of candidates.

    Attributes:
        _store: Database store
        _prefix_length: Normalized-text prefix length for fingerprints
    """

    def __init__(self, store: DatabaseStore, fingerprint_prefix_length: int = DEFAULT_PREFIX_LENGTH):
        self._store = store
        self._prefix_length = fingerprint_prefix_length

    async def persist(
        self,
        thread: CommunicationThread,
        candidates: Iterable[CandidateExtraction],
        db: aiosqlite.Connection | None = None,
    ) -> list[ExtractedItem]:
        """Create Open items for candidates not already stored.

        All inserts happen in one transaction: the caller's if ``db`` is
        given, otherwise a new one. An error or cancellation rolls back
        the whole batch.

        Args:
            thread: Owning thread
            candidates: Validated candidates for ``thread``
            db: Optional caller-owned transaction connection

        Returns:
            Newly created items only, in creation order

        Raises:
            ValidationError: If a candidate belongs to another thread
            DatabaseError: If persistence fails
        """
        ordered = sorted(candidates, key=lambda c: self._sort_key(thread, c))
        for candidate in ordered:
            if candidate.thread_id != thread.id:
                raise ValidationError(
                    f"Candidate for thread '{candidate.thread_id}' passed to persist for "
                    f"thread '{thread.id}'.",
                    field="thread_id",
                )

        if db is not None:
            return await self._insert_all(thread, ordered, db)
        async with self._store.transaction() as own:
            return await self._insert_all(thread, ordered, own)

    async def _insert_all(
        self,
        thread: CommunicationThread,
        candidates: list[CandidateExtraction],
        db: aiosqlite.Connection,
    ) -> list[ExtractedItem]:
        created: list[ExtractedItem] = []
        skipped = 0
        for candidate in candidates:
            now = utc_now()
            item = ExtractedItem(
                id=str(uuid.uuid4()),
                thread_id=thread.id,
                source_message_id=candidate.source_message_id,
                confidence=candidate.confidence,
                payload=candidate.payload,
                fingerprint=compute_fingerprint(candidate, self._prefix_length),
                state=ItemState.OPEN,
                version=1,
                created_at=now,
                updated_at=now,
            )
            try:
                await self._store.insert_item(item, db=db)
            except FingerprintCollision:
                skipped += 1
                logger.debug(
                    "duplicate_candidate_skipped",
                    thread_id=thread.id,
                    fingerprint=item.fingerprint[:12],
                    variant=item.variant.value,
                )
                continue

            await self._store.log_action(
                "item_created",
                thread_id=thread.id,
                item_id=item.id,
                details={
                    "variant": item.variant.value,
                    "confidence": item.confidence.value,
                    "source_message_id": item.source_message_id,
                },
                db=db,
            )
            created.append(item)

        logger.info(
            "items_persisted",
            thread_id=thread.id,
            created=len(created),
            duplicates_skipped=skipped,
        )
        return created

    @staticmethod
    def _sort_key(thread: CommunicationThread, candidate: CandidateExtraction) -> tuple:
        message = thread.get_message(candidate.source_message_id)
        position = message.sort_key if message is not None else (utc_now(), candidate.source_message_id)
        return (position, candidate.variant.value, candidate.payload.primary_text())
