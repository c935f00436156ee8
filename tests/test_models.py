"""Tests for the domain types.

Covers:
- Enum parsing (confidence, dismiss reason, action priority, item state)
- Thread message helpers
- ExtractedItem state/field consistency
- Legacy record normalization
"""

from datetime import UTC, datetime, timedelta

import pytest

from commintel.core.errors import ValidationError
from commintel.extraction.models import (
    ActionItemPayload,
    ActionPriority,
    CommitmentPayload,
    CommunicationThread,
    Confidence,
    DeadlinePayload,
    DismissReason,
    ExtractedItem,
    ItemState,
    Message,
    Variant,
    normalize_legacy_state,
    parse_datetime,
    payload_from_dict,
)

T0 = datetime(2025, 3, 3, 9, 0, tzinfo=UTC)


def _item(**overrides) -> ExtractedItem:
    fields = {
        "id": "I1",
        "thread_id": "T1",
        "source_message_id": "M1",
        "confidence": Confidence.HIGH,
        "payload": ActionItemPayload(description="Send the draft"),
        "fingerprint": "abc",
    }
    fields.update(overrides)
    return ExtractedItem(**fields)


# ---------------------------------------------------------------------------
# Enum parsing
# ---------------------------------------------------------------------------


class TestEnumParsing:
    """Tests for tolerant parsing of raw enum values."""

    def test_confidence_parse_is_case_insensitive(self) -> None:
        assert Confidence.parse("high") is Confidence.HIGH
        assert Confidence.parse(" Medium ") is Confidence.MEDIUM

    def test_confidence_parse_unknown_returns_none(self) -> None:
        assert Confidence.parse("certain") is None
        assert Confidence.parse(None) is None
        assert Confidence.parse(3) is None

    def test_dismiss_reason_parse(self) -> None:
        assert DismissReason.parse("AlreadyHandled") is DismissReason.ALREADY_HANDLED
        assert DismissReason.parse("notrelevant") is DismissReason.NOT_RELEVANT

    def test_dismiss_reason_parse_rejects_unknown(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            DismissReason.parse("Bored")
        assert exc_info.value.field == "reason"

    def test_action_priority_defaults_to_medium(self) -> None:
        assert ActionPriority.parse(None) is ActionPriority.MEDIUM
        assert ActionPriority.parse("  ") is ActionPriority.MEDIUM

    def test_action_priority_invalid(self) -> None:
        assert ActionPriority.parse("Critical") is None
        assert ActionPriority.parse("urgent") is ActionPriority.URGENT

    def test_item_state_terminal(self) -> None:
        assert not ItemState.OPEN.is_terminal
        assert ItemState.CONVERTED.is_terminal
        assert ItemState.DISMISSED.is_terminal

    def test_item_state_parse_is_case_insensitive(self) -> None:
        assert ItemState.parse("Open") is ItemState.OPEN
        assert ItemState.parse(" DISMISSED ") is ItemState.DISMISSED
        assert ItemState.parse(ItemState.CONVERTED) is ItemState.CONVERTED

    def test_item_state_parse_rejects_unknown(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ItemState.parse("Closed", field="expected_state")
        assert exc_info.value.field == "expected_state"


class TestParseDatetime:
    """Tests for ISO-8601 parsing into aware UTC."""

    def test_zulu_suffix(self) -> None:
        assert parse_datetime("2025-03-07T17:00:00Z") == datetime(2025, 3, 7, 17, tzinfo=UTC)

    def test_offset_converted_to_utc(self) -> None:
        parsed = parse_datetime("2025-03-07T12:00:00-05:00")
        assert parsed == datetime(2025, 3, 7, 17, tzinfo=UTC)

    def test_naive_taken_as_utc(self) -> None:
        assert parse_datetime("2025-03-07").tzinfo is UTC

    def test_garbage_returns_none(self) -> None:
        assert parse_datetime("next friday") is None
        assert parse_datetime("") is None
        assert parse_datetime(None) is None


# ---------------------------------------------------------------------------
# Threads
# ---------------------------------------------------------------------------


class TestCommunicationThread:
    """Tests for thread message helpers."""

    @pytest.fixture
    def thread(self) -> CommunicationThread:
        messages = [
            Message(id=f"M{i}", thread_id="T1", sender="a@x.com", sent_date=T0 + timedelta(hours=i))
            for i in range(1, 4)
        ]
        return CommunicationThread(id="T1", messages=messages)

    def test_start_date_is_first_message(self, thread: CommunicationThread) -> None:
        assert thread.start_date == T0 + timedelta(hours=1)

    def test_messages_after_known_id(self, thread: CommunicationThread) -> None:
        assert [m.id for m in thread.messages_after("M1")] == ["M2", "M3"]
        assert thread.messages_after("M3") == []

    def test_messages_after_none_or_unknown_returns_all(self, thread: CommunicationThread) -> None:
        assert len(thread.messages_after(None)) == 3
        assert len(thread.messages_after("M99")) == 3

    def test_messages_to_extract_includes_pending_before_mark(
        self, thread: CommunicationThread
    ) -> None:
        thread.pending_message_ids = {"M1"}
        assert [m.id for m in thread.messages_to_extract("M2")] == ["M1", "M3"]

    def test_messages_to_extract_without_pending(self, thread: CommunicationThread) -> None:
        assert [m.id for m in thread.messages_to_extract("M2")] == ["M3"]
        assert thread.messages_to_extract("M3") == []

    def test_empty_thread_has_no_start_date(self) -> None:
        assert CommunicationThread(id="T9").start_date is None


# ---------------------------------------------------------------------------
# Payloads and items
# ---------------------------------------------------------------------------


class TestPayloads:
    """Tests for variant payloads."""

    def test_variant_tags(self) -> None:
        assert DeadlinePayload("File", T0).variant is Variant.DEADLINE
        assert CommitmentPayload("bob@x.com", "send docs").variant is Variant.COMMITMENT
        assert ActionItemPayload("Call court").variant is Variant.ACTION_ITEM

    def test_commitment_primary_text_includes_party(self) -> None:
        payload = CommitmentPayload(party="bob@x.com", commitment_text="will send docs")
        assert payload.primary_text() == "bob@x.com will send docs"

    def test_payload_from_dict_restores_deadline(self) -> None:
        payload = DeadlinePayload(description="File motion", due_date=T0)
        restored = payload_from_dict("deadline", payload.to_dict())
        assert restored == payload

    def test_payload_from_dict_optional_commitment_date(self) -> None:
        restored = payload_from_dict(
            Variant.COMMITMENT, {"party": "bob@x.com", "commitment_text": "call", "date": None}
        )
        assert restored.date is None


class TestExtractedItemInvariants:
    """Tests that state-specific fields match the state."""

    def test_open_item_defaults(self) -> None:
        item = _item()
        assert item.state is ItemState.OPEN
        assert item.version == 1
        assert item.variant is Variant.ACTION_ITEM

    def test_converted_requires_task_id(self) -> None:
        with pytest.raises(ValueError):
            _item(state=ItemState.CONVERTED)

    def test_open_rejects_task_id(self) -> None:
        with pytest.raises(ValueError):
            _item(converted_task_id="TASK-1")

    def test_dismissed_requires_reason_and_time(self) -> None:
        with pytest.raises(ValueError):
            _item(state=ItemState.DISMISSED, dismissed_at=T0)
        item = _item(
            state=ItemState.DISMISSED, dismissed_at=T0, dismiss_reason=DismissReason.OTHER
        )
        assert item.state is ItemState.DISMISSED

    def test_open_rejects_dismissal_fields(self) -> None:
        with pytest.raises(ValueError):
            _item(dismiss_reason=DismissReason.OTHER)


# ---------------------------------------------------------------------------
# Legacy normalization
# ---------------------------------------------------------------------------


class TestNormalizeLegacyState:
    """Tests for mapping legacy dismissed/converted fields onto one state."""

    def test_plain_record_is_open(self) -> None:
        assert normalize_legacy_state(False, None) is ItemState.OPEN

    def test_converted_record(self) -> None:
        assert normalize_legacy_state(False, "TASK-7") is ItemState.CONVERTED

    def test_dismissed_record(self) -> None:
        state = normalize_legacy_state(True, None, dismissed_at=T0, dismiss_reason="Other")
        assert state is ItemState.DISMISSED

    def test_both_dismissed_and_converted_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            normalize_legacy_state(True, "TASK-7", dismissed_at=T0)
        assert exc_info.value.field == "dismissed"

    def test_dismissed_without_timestamp_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            normalize_legacy_state(True, None)
        assert exc_info.value.field == "dismissed_at"

    def test_dismissed_with_unknown_reason_rejected(self) -> None:
        with pytest.raises(ValidationError):
            normalize_legacy_state(True, None, dismissed_at=T0, dismiss_reason="Whatever")
