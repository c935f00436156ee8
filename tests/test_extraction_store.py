"""Tests for fingerprint-idempotent item persistence."""

from datetime import timedelta

import pytest

from commintel.core.errors import ValidationError
from commintel.db.store import DatabaseStore
from commintel.engine.extraction_store import ExtractionStore
from commintel.engine.ingestor import ThreadIngestor
from commintel.extraction.models import (
    ActionItemPayload,
    CandidateExtraction,
    CommunicationThread,
    Confidence,
    DeadlinePayload,
    ItemState,
)
from conftest import BASE_TIME, make_message, make_thread_payload


@pytest.fixture
async def thread(store: DatabaseStore) -> CommunicationThread:
    return await ThreadIngestor(store).accept(
        make_thread_payload(messages=[make_message("M1"), make_message("M2", 10)])
    )


def _candidate(payload, message_id: str = "M1", thread_id: str = "T1", confidence=Confidence.HIGH):
    return CandidateExtraction(
        thread_id=thread_id, source_message_id=message_id, confidence=confidence, payload=payload
    )


class TestPersist:
    """Tests for ExtractionStore.persist()."""

    @pytest.mark.asyncio
    async def test_creates_open_items(self, store: DatabaseStore, thread: CommunicationThread) -> None:
        extraction_store = ExtractionStore(store)
        created = await extraction_store.persist(
            thread,
            [
                _candidate(DeadlinePayload("File motion", BASE_TIME + timedelta(days=3))),
                _candidate(ActionItemPayload("Call the clerk"), message_id="M2"),
            ],
        )

        assert len(created) == 2
        assert all(item.state is ItemState.OPEN and item.version == 1 for item in created)
        assert len(await store.list_items("T1")) == 2
        assert len(await store.get_action_logs(action_type="item_created")) == 2

    @pytest.mark.asyncio
    async def test_reprocessing_same_candidates_is_noop(
        self, store: DatabaseStore, thread: CommunicationThread
    ) -> None:
        extraction_store = ExtractionStore(store)
        candidates = [_candidate(ActionItemPayload("Call the clerk"))]

        await extraction_store.persist(thread, candidates)
        again = await extraction_store.persist(thread, candidates)

        assert again == []
        assert len(await store.list_items("T1")) == 1

    @pytest.mark.asyncio
    async def test_formatting_variants_are_duplicates(
        self, store: DatabaseStore, thread: CommunicationThread
    ) -> None:
        created = await ExtractionStore(store).persist(
            thread,
            [
                _candidate(ActionItemPayload("Call the clerk!"), confidence=Confidence.HIGH),
                _candidate(ActionItemPayload("call  the CLERK"), confidence=Confidence.LOW),
            ],
        )
        assert len(created) == 1

    @pytest.mark.asyncio
    async def test_duplicate_of_dismissed_item_is_not_recreated(
        self, store: DatabaseStore, thread: CommunicationThread
    ) -> None:
        from commintel.extraction.models import DismissReason

        extraction_store = ExtractionStore(store)
        [item] = await extraction_store.persist(thread, [_candidate(ActionItemPayload("Call"))])
        await store.mark_item_dismissed(item.id, 1, DismissReason.NOT_RELEVANT, None, BASE_TIME)

        assert await extraction_store.persist(thread, [_candidate(ActionItemPayload("Call"))]) == []

    @pytest.mark.asyncio
    async def test_rejects_candidate_for_other_thread(
        self, store: DatabaseStore, thread: CommunicationThread
    ) -> None:
        with pytest.raises(ValidationError):
            await ExtractionStore(store).persist(
                thread, [_candidate(ActionItemPayload("Call"), thread_id="T2")]
            )
        assert await store.list_items("T1") == []

    @pytest.mark.asyncio
    async def test_joins_caller_transaction(
        self, store: DatabaseStore, thread: CommunicationThread
    ) -> None:
        with pytest.raises(RuntimeError):
            async with store.transaction() as db:
                await ExtractionStore(store).persist(
                    thread, [_candidate(ActionItemPayload("Call"))], db=db
                )
                raise RuntimeError("abort")
        assert await store.list_items("T1") == []
