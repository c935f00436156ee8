"""Tests for item-to-task mapping and the task bridge."""

import asyncio
from datetime import UTC, datetime

import pytest

from commintel.core.errors import TaskBridgeFailure
from commintel.extraction.models import (
    ActionItemPayload,
    ActionPriority,
    CommitmentPayload,
    Confidence,
    DeadlinePayload,
    ExtractedItem,
)
from commintel.tasks.bridge import MAX_TASK_TITLE_LENGTH, TaskBridge, build_task_request
from conftest import FakeTaskCreator

DUE = datetime(2025, 3, 7, 17, 0, tzinfo=UTC)


def _item(payload, item_id: str = "I1") -> ExtractedItem:
    return ExtractedItem(
        id=item_id,
        thread_id="T1",
        source_message_id="M2",
        confidence=Confidence.HIGH,
        payload=payload,
        fingerprint="fp",
    )


class TestBuildTaskRequest:
    """Tests for build_task_request()."""

    def test_deadline_maps_to_high_priority_filing(self) -> None:
        request = build_task_request(_item(DeadlinePayload("File the motion", DUE)))

        assert request.task_type == "filing"
        assert request.priority == "High"
        assert request.title == "File the motion"
        assert request.due_date == DUE
        assert request.assignee is None
        assert request.source_thread_id == "T1"
        assert request.source_message_id == "M2"
        assert request.source_item_id == "I1"

    def test_commitment_maps_to_follow_up(self) -> None:
        payload = CommitmentPayload("bob@client.com", "will send the documents", date=DUE)
        request = build_task_request(_item(payload), assignee_override="alice@firm.com")

        assert request.task_type == "follow_up"
        assert request.priority == "Medium"
        assert request.title == "Follow up: bob@client.com will send the documents"
        assert request.due_date == DUE
        assert request.assignee == "alice@firm.com"

    def test_action_item_uses_suggested_assignee(self) -> None:
        payload = ActionItemPayload(
            "Book a room", priority=ActionPriority.URGENT, suggested_assignee="carol@firm.com"
        )
        request = build_task_request(_item(payload))

        assert request.task_type == "general"
        assert request.priority == "Urgent"
        assert request.assignee == "carol@firm.com"
        assert build_task_request(_item(payload), "dave@firm.com").assignee == "dave@firm.com"

    def test_long_title_is_truncated(self) -> None:
        request = build_task_request(_item(ActionItemPayload("word " * 200)))
        assert len(request.title) == MAX_TASK_TITLE_LENGTH
        assert request.title.endswith("...")

    def test_to_dict(self) -> None:
        body = build_task_request(_item(DeadlinePayload("File", DUE))).to_dict()
        assert body["type"] == "filing"
        assert body["due_date"] == "2025-03-07"
        assert body["source"] == {"thread_id": "T1", "message_id": "M2", "item_id": "I1"}


class TestTaskBridge:
    """Tests for TaskBridge.create_task_from_item()."""

    @pytest.mark.asyncio
    async def test_returns_task_id(self) -> None:
        creator = FakeTaskCreator()
        task_id = await TaskBridge(creator).create_task_from_item(_item(ActionItemPayload("Call")))

        assert task_id == "TASK-1"
        assert creator.requests[0].source_item_id == "I1"

    @pytest.mark.asyncio
    async def test_creator_failure_carries_item_id(self) -> None:
        creator = FakeTaskCreator(error=TaskBridgeFailure("HTTP 500", retryable=True, status_code=500))
        with pytest.raises(TaskBridgeFailure) as exc_info:
            await TaskBridge(creator).create_task_from_item(_item(ActionItemPayload("Call")))

        assert exc_info.value.item_id == "I1"
        assert exc_info.value.retryable
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_unexpected_error_is_wrapped(self) -> None:
        creator = FakeTaskCreator(error=ConnectionResetError("reset"))
        with pytest.raises(TaskBridgeFailure) as exc_info:
            await TaskBridge(creator).create_task_from_item(_item(ActionItemPayload("Call")))
        assert "ConnectionResetError" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_timeout_is_retryable(self) -> None:
        class SlowCreator:
            async def create_task(self, request):
                await asyncio.sleep(5)
                return "late"

        bridge = TaskBridge(SlowCreator(), timeout_seconds=0.05)
        with pytest.raises(TaskBridgeFailure) as exc_info:
            await bridge.create_task_from_item(_item(ActionItemPayload("Call")))
        assert exc_info.value.retryable

    @pytest.mark.asyncio
    async def test_empty_task_id_is_failure(self) -> None:
        class EmptyCreator:
            async def create_task(self, request):
                return ""

        with pytest.raises(TaskBridgeFailure):
            await TaskBridge(EmptyCreator()).create_task_from_item(_item(ActionItemPayload("Call")))
