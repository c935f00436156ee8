"""End-to-end tests through the IntelligenceEngine facade."""

from datetime import timedelta

import pytest

from commintel.config_schema import AppConfig
from commintel.core.errors import (
    InvalidStateError,
    ItemNotFoundError,
    ThreadNotFoundError,
    ValidationError,
)
from commintel.db.store import DatabaseStore
from commintel.engine.service import IntelligenceEngine
from commintel.extraction.models import ItemState, Variant
from conftest import BASE_TIME, FakeCapability, FakeTaskCreator, make_message, make_thread_payload

DAY = 24 * 60


@pytest.fixture
def deadline_capability() -> FakeCapability:
    return FakeCapability(
        [
            {
                "type": "deadline",
                "source_message_id": "M2",
                "confidence": "High",
                "description": "File the opposition brief",
                "due_date": (BASE_TIME + timedelta(days=14)).isoformat(),
            }
        ]
    )


@pytest.fixture
def engine(
    store: DatabaseStore,
    deadline_capability: FakeCapability,
    task_creator: FakeTaskCreator,
    sample_config: AppConfig,
) -> IntelligenceEngine:
    return IntelligenceEngine.build(store, deadline_capability, task_creator, sample_config)


@pytest.fixture
def two_message_thread() -> dict:
    return make_thread_payload(
        messages=[make_message("M1", 0), make_message("M2", 2 * DAY, sender="bob@client.com")]
    )


class TestDeadlineLifecycle:
    """Deadline extracted, persisted once, converted, then refused dismissal."""

    @pytest.mark.asyncio
    async def test_full_flow(
        self,
        engine: IntelligenceEngine,
        task_creator: FakeTaskCreator,
        two_message_thread: dict,
    ) -> None:
        await engine.ingest(two_message_thread)

        first = await engine.reprocess("T1")
        assert first.items_created == 1
        [d1] = first.created_items
        assert d1.variant is Variant.DEADLINE
        assert d1.state is ItemState.OPEN

        second = await engine.reprocess("T1")
        assert second.items_created == 0

        converted = await engine.convert(d1.id)
        assert converted.state is ItemState.CONVERTED
        assert converted.converted_task_id == "TASK-1"
        assert task_creator.requests[0].task_type == "filing"
        assert task_creator.requests[0].priority == "High"

        with pytest.raises(InvalidStateError):
            await engine.dismiss(d1.id, "NotRelevant")
        assert (await engine.get_item(d1.id)).state is ItemState.CONVERTED

    @pytest.mark.asyncio
    async def test_preview_has_no_side_effects(
        self,
        engine: IntelligenceEngine,
        task_creator: FakeTaskCreator,
        two_message_thread: dict,
    ) -> None:
        await engine.ingest(two_message_thread)
        [item] = (await engine.reprocess("T1")).created_items

        preview = await engine.preview_conversion(item.id, assignee_override="alice@firm.com")

        assert preview.task.assignee == "alice@firm.com"
        assert preview.task.due_date == BASE_TIME + timedelta(days=14)
        assert preview.score > 0
        assert task_creator.requests == []
        assert (await engine.get_item(item.id)).state is ItemState.OPEN


class TestReads:
    """Tests for the read surface."""

    @pytest.mark.asyncio
    async def test_list_items_and_counts(
        self, engine: IntelligenceEngine, two_message_thread: dict
    ) -> None:
        await engine.ingest(two_message_thread)
        await engine.reprocess("T1")

        assert len(await engine.list_items("T1")) == 1
        assert len(await engine.list_items("T1", state="open", ranked=True)) == 1
        assert await engine.list_items("T1", state=ItemState.CONVERTED) == []

        counts = await engine.item_counts("T1")
        assert counts["state"]["open"] == 1
        assert counts["variant"]["deadline"] == 1

    @pytest.mark.asyncio
    async def test_state_filter_accepts_capitalized_names(
        self, engine: IntelligenceEngine, two_message_thread: dict
    ) -> None:
        await engine.ingest(two_message_thread)
        [item] = (await engine.reprocess("T1")).created_items

        assert [i.id for i in await engine.list_items("T1", state="Open")] == [item.id]
        converted = await engine.convert(item.id, expected_state="Open")
        assert converted.state is ItemState.CONVERTED

        with pytest.raises(ValidationError):
            await engine.list_items("T1", state="closed")

    @pytest.mark.asyncio
    async def test_unknown_ids(self, engine: IntelligenceEngine) -> None:
        with pytest.raises(ThreadNotFoundError):
            await engine.get_thread("nope")
        with pytest.raises(ItemNotFoundError):
            await engine.get_item("nope")

    @pytest.mark.asyncio
    async def test_update_config_applies_ranking(
        self, engine: IntelligenceEngine, two_message_thread: dict
    ) -> None:
        await engine.ingest(two_message_thread)
        [item] = (await engine.reprocess("T1")).created_items
        before = (await engine.preview_conversion(item.id)).score

        engine.update_config(AppConfig(ranking={"variant_weights": {"deadline": 30.0}}))

        after = (await engine.preview_conversion(item.id)).score
        assert after - before == pytest.approx(27.0, abs=0.01)
