"""Tests for the extraction orchestrator.

Covers:
- Only messages newer than the high-water mark are sent
- Candidate validation and dropping
- Capability failure and timeout handling
- Run bookkeeping
"""

import asyncio
from datetime import timedelta

import pytest

from commintel.config_schema import AppConfig
from commintel.core.errors import ExtractionUnavailable
from commintel.db.store import DatabaseStore
from commintel.engine.ingestor import ThreadIngestor
from commintel.extraction.models import (
    ActionPriority,
    CommunicationThread,
    Confidence,
    Variant,
)
from commintel.extraction.orchestrator import (
    CandidateRejected,
    ExtractionOrchestrator,
)
from conftest import BASE_TIME, FakeCapability, make_message, make_thread_payload


@pytest.fixture
async def thread(store: DatabaseStore) -> CommunicationThread:
    payload = make_thread_payload(
        messages=[
            make_message("M1", 0, sender="alice@firm.com", recipients=["bob@client.com"]),
            make_message("M2", 10, sender="bob@client.com", recipients=["alice@firm.com"]),
            make_message("M3", 20, sender="alice@firm.com", recipients=["bob@client.com"]),
        ]
    )
    return await ThreadIngestor(store).accept(payload)


def _orchestrator(
    store: DatabaseStore, capability: FakeCapability, config: AppConfig
) -> ExtractionOrchestrator:
    return ExtractionOrchestrator(capability, store, config)


async def _covered(store: DatabaseStore, *message_ids: str) -> CommunicationThread:
    """Reload T1 after an earlier run covered ``message_ids``."""
    await store.mark_messages_extracted("T1", message_ids, "R0")
    return await store.get_thread("T1")


def _deadline(**overrides) -> dict:
    raw = {
        "type": "deadline",
        "source_message_id": "M2",
        "confidence": "High",
        "description": "File the motion",
        "due_date": (BASE_TIME + timedelta(days=4)).isoformat(),
    }
    raw.update(overrides)
    return raw


class TestExtract:
    """Tests for ExtractionOrchestrator.extract()."""

    @pytest.mark.asyncio
    async def test_sends_only_new_messages_with_context(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability([])
        batch = await _orchestrator(store, capability, sample_config).extract(
            await _covered(store, "M1"), since_message_id="M1"
        )

        request = capability.requests[0]
        assert [m.id for m in request.new_messages] == ["M2", "M3"]
        assert [m.id for m in request.context_messages] == ["M1"]
        assert batch.succeeded
        assert batch.high_water_message_id == "M3"
        assert batch.message_ids == ("M2", "M3")

    @pytest.mark.asyncio
    async def test_pending_message_before_mark_is_sent(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability([])
        batch = await _orchestrator(store, capability, sample_config).extract(
            await _covered(store, "M1", "M3"), since_message_id="M3"
        )

        request = capability.requests[0]
        assert [m.id for m in request.new_messages] == ["M2"]
        assert [m.id for m in request.context_messages] == ["M1"]
        assert batch.high_water_message_id == "M3"
        assert batch.message_ids == ("M2",)

    @pytest.mark.asyncio
    async def test_no_new_messages_skips_capability(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability([])
        batch = await _orchestrator(store, capability, sample_config).extract(
            await _covered(store, "M1", "M2", "M3"), since_message_id="M3"
        )

        assert batch.status == "skipped"
        assert batch.high_water_message_id == "M3"
        assert capability.requests == []
        assert (await store.get_run(batch.run_id)).status == "skipped"

    @pytest.mark.asyncio
    async def test_unknown_since_id_uses_whole_thread(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability([])
        await _orchestrator(store, capability, sample_config).extract(thread, since_message_id="M99")
        assert len(capability.requests[0].new_messages) == 3

    @pytest.mark.asyncio
    async def test_invalid_candidates_are_dropped(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability(
            [
                _deadline(),
                _deadline(source_message_id="M42"),
                _deadline(confidence="Certain"),
                {"type": "reminder", "source_message_id": "M2", "confidence": "Low"},
                "not a dict",
            ]
        )
        batch = await _orchestrator(store, capability, sample_config).extract(thread)

        assert len(batch.candidates) == 1
        assert batch.dropped == 4

    @pytest.mark.asyncio
    async def test_identical_candidates_collapse(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability([_deadline(), _deadline()])
        batch = await _orchestrator(store, capability, sample_config).extract(thread)
        assert len(batch.candidates) == 1

    @pytest.mark.asyncio
    async def test_capability_unavailable_fails_run(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability(ExtractionUnavailable("Claude API unavailable"))
        batch = await _orchestrator(store, capability, sample_config).extract(thread)

        assert batch.status == "failed"
        assert batch.candidates == frozenset()
        assert "unavailable" in batch.error

        run = await store.get_run(batch.run_id)
        assert run.status == "failed"
        assert run.high_water_message_id is None

    @pytest.mark.asyncio
    async def test_unexpected_capability_error_fails_run(
        self, store: DatabaseStore, thread: CommunicationThread, sample_config: AppConfig
    ) -> None:
        capability = FakeCapability(KeyError("items"))
        batch = await _orchestrator(store, capability, sample_config).extract(thread)
        assert batch.status == "failed"
        assert "KeyError" in batch.error

    @pytest.mark.asyncio
    async def test_timeout_fails_run(
        self, store: DatabaseStore, thread: CommunicationThread
    ) -> None:
        class SlowCapability:
            async def extract(self, request):
                await asyncio.sleep(5)
                return []

        config = AppConfig(extraction={"timeout_seconds": 0.05})
        batch = await ExtractionOrchestrator(SlowCapability(), store, config).extract(thread)

        assert batch.status == "failed"
        assert "timed out" in batch.error
        logs = await store.get_action_logs(action_type="extraction_failed")
        assert len(logs) == 1


class TestValidateCandidate:
    """Tests for validate_candidate() rules per variant."""

    @pytest.fixture
    def orchestrator(self, store: DatabaseStore, sample_config: AppConfig) -> ExtractionOrchestrator:
        return _orchestrator(store, FakeCapability([]), sample_config)

    def _reason(self, orchestrator, thread, raw) -> str:
        with pytest.raises(CandidateRejected) as exc_info:
            orchestrator.validate_candidate(thread, raw)
        return exc_info.value.reason

    @pytest.mark.asyncio
    async def test_valid_deadline(self, orchestrator, thread) -> None:
        candidate = orchestrator.validate_candidate(thread, _deadline(confidence="high"))
        assert candidate.variant is Variant.DEADLINE
        assert candidate.confidence is Confidence.HIGH
        assert candidate.payload.due_date == BASE_TIME + timedelta(days=4)

    @pytest.mark.asyncio
    async def test_deadline_must_follow_thread_start(self, orchestrator, thread) -> None:
        assert (
            self._reason(orchestrator, thread, _deadline(due_date=BASE_TIME.isoformat()))
            == "due_date_before_thread_start"
        )

    @pytest.mark.asyncio
    async def test_deadline_requires_parseable_date(self, orchestrator, thread) -> None:
        assert self._reason(orchestrator, thread, _deadline(due_date="soon")) == "invalid_due_date"

    @pytest.mark.asyncio
    async def test_deadline_requires_description(self, orchestrator, thread) -> None:
        assert self._reason(orchestrator, thread, _deadline(description=" ")) == "missing_description"

    @pytest.mark.asyncio
    async def test_commitment_party_must_be_participant(self, orchestrator, thread) -> None:
        raw = {
            "type": "commitment",
            "source_message_id": "M2",
            "confidence": "Medium",
            "party": "Bob@Client.com",
            "commitment_text": "will send the documents",
        }
        candidate = orchestrator.validate_candidate(thread, raw)
        assert candidate.payload.party == "bob@client.com"
        assert candidate.payload.date is None

        raw["party"] = "mallory@elsewhere.com"
        assert self._reason(orchestrator, thread, raw) == "unknown_party"

    @pytest.mark.asyncio
    async def test_commitment_rejects_unparseable_date(self, orchestrator, thread) -> None:
        raw = {
            "type": "commitment",
            "source_message_id": "M2",
            "confidence": "Medium",
            "party": "bob@client.com",
            "commitment_text": "will call",
            "date": "whenever",
        }
        assert self._reason(orchestrator, thread, raw) == "invalid_date"

    @pytest.mark.asyncio
    async def test_action_item_priority(self, orchestrator, thread) -> None:
        raw = {
            "type": "action_item",
            "source_message_id": "M3",
            "confidence": "Low",
            "description": "Book the conference room",
            "suggested_assignee": "carol@firm.com",
        }
        candidate = orchestrator.validate_candidate(thread, raw)
        assert candidate.payload.priority is ActionPriority.MEDIUM
        assert candidate.payload.suggested_assignee == "carol@firm.com"

        raw["priority"] = "Whenever"
        assert self._reason(orchestrator, thread, raw) == "invalid_priority"
