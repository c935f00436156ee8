"""Task bridge: turn an extracted item into a task in the external task system.

The bridge is stateless. It maps an item to a TaskRequest (a pure
function, also used for conversion previews) and hands it to a narrow
TaskCreator under a bounded timeout. Failures are wrapped in
TaskBridgeFailure and never retried here: the caller decides.

Field mapping:
- Deadline -> 'filing' task, due on the deadline, High priority
- Commitment -> 'follow_up' task, due on the commitment date (if any), Medium priority
- Action item -> 'general' task, assignee = override or suggested assignee,
  priority from the item

Usage:
    from commintel.tasks.bridge import TaskBridge

    bridge = TaskBridge(creator, timeout_seconds=30)
    task_id = await bridge.create_task_from_item(item, assignee_override="ana@firm.example")
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol

from commintel.core.errors import TaskBridgeFailure
from commintel.core.logging import get_logger
from commintel.extraction.models import (
    ActionItemPayload,
    CommitmentPayload,
    DeadlinePayload,
    ExtractedItem,
)

logger = get_logger(__name__)

MAX_TASK_TITLE_LENGTH = 255

TaskType = Literal["filing", "follow_up", "general"]
TaskPriority = Literal["Low", "Medium", "High", "Urgent"]


@dataclass(frozen=True, slots=True)
class TaskRequest:
    """What the external task system is asked to create."""

    title: str
    description: str
    task_type: TaskType
    priority: TaskPriority
    due_date: datetime | None = None
    assignee: str | None = None
    source_thread_id: str | None = None
    source_message_id: str | None = None
    source_item_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Serialize for the task service (JSON body)."""
        return {
            "title": self.title,
            "description": self.description,
            "type": self.task_type,
            "priority": self.priority,
            "due_date": self.due_date.date().isoformat() if self.due_date else None,
            "assignee": self.assignee,
            "source": {
                "thread_id": self.source_thread_id,
                "message_id": self.source_message_id,
                "item_id": self.source_item_id,
            },
        }


class TaskCreator(Protocol):
    """Narrow task-creation capability."""

    async def create_task(self, request: TaskRequest) -> str:
        """Create the task and return its opaque id."""
        ...


def _truncate_title(title: str) -> str:
    title = " ".join(title.split())
    if len(title) > MAX_TASK_TITLE_LENGTH:
        title = title[: MAX_TASK_TITLE_LENGTH - 3] + "..."
    return title


def build_task_request(item: ExtractedItem, assignee_override: str | None = None) -> TaskRequest:
    """Map an extracted item to a task request. Pure, no side effects."""
    payload = item.payload
    references = (
        f"Source: thread {item.thread_id}, message {item.source_message_id} "
        f"(item {item.id}, confidence {item.confidence.value})"
    )

    if isinstance(payload, DeadlinePayload):
        return TaskRequest(
            title=_truncate_title(payload.description),
            description=f"Deadline: {payload.description}\nDue: {payload.due_date.date().isoformat()}\n\n{references}",
            task_type="filing",
            priority="High",
            due_date=payload.due_date,
            assignee=assignee_override,
            source_thread_id=item.thread_id,
            source_message_id=item.source_message_id,
            source_item_id=item.id,
        )

    if isinstance(payload, CommitmentPayload):
        due_line = f"\nDue: {payload.date.date().isoformat()}" if payload.date else ""
        return TaskRequest(
            title=_truncate_title(f"Follow up: {payload.party} {payload.commitment_text}"),
            description=(
                f"Commitment by {payload.party}: {payload.commitment_text}{due_line}\n\n{references}"
            ),
            task_type="follow_up",
            priority="Medium",
            due_date=payload.date,
            assignee=assignee_override,
            source_thread_id=item.thread_id,
            source_message_id=item.source_message_id,
            source_item_id=item.id,
        )

    if isinstance(payload, ActionItemPayload):
        return TaskRequest(
            title=_truncate_title(payload.description),
            description=f"Action item: {payload.description}\n\n{references}",
            task_type="general",
            priority=payload.priority.value,
            assignee=assignee_override or payload.suggested_assignee,
            source_thread_id=item.thread_id,
            source_message_id=item.source_message_id,
            source_item_id=item.id,
        )

    raise TypeError(f"Unsupported payload type: {type(payload).__name__}")


class TaskBridge:
    """Creates external tasks for extracted items.

    Attributes:
        _creator: Task creation capability
        _timeout: Seconds to wait for the creator
    """

    def __init__(self, creator: TaskCreator, timeout_seconds: float = 30.0):
        self._creator = creator
        self._timeout = timeout_seconds

    def preview(self, item: ExtractedItem, assignee_override: str | None = None) -> TaskRequest:
        """The task that converting ``item`` would create."""
        return build_task_request(item, assignee_override)

    async def create_task_from_item(
        self, item: ExtractedItem, assignee_override: str | None = None
    ) -> str:
        """Create a task for ``item`` and return its id.

        Raises:
            TaskBridgeFailure: On timeout (retryable) or any creator error
        """
        request = build_task_request(item, assignee_override)
        try:
            task_id = await asyncio.wait_for(self._creator.create_task(request), timeout=self._timeout)
        except TaskBridgeFailure as e:
            if e.item_id is None:
                e.item_id = item.id
            logger.warning("task_creation_failed", item_id=item.id, error=str(e), retryable=e.retryable)
            raise
        except TimeoutError as e:
            logger.warning("task_creation_timeout", item_id=item.id, timeout_seconds=self._timeout)
            raise TaskBridgeFailure(
                f"Task creation for item {item.id} timed out after {self._timeout}s. "
                "The task may or may not exist; check the task system before retrying.",
                item_id=item.id,
                retryable=True,
            ) from e
        except Exception as e:
            logger.warning("task_creation_failed", item_id=item.id, error=str(e))
            raise TaskBridgeFailure(
                f"Task creation for item {item.id} failed: {type(e).__name__}: {e}",
                item_id=item.id,
            ) from e

        if not task_id:
            raise TaskBridgeFailure(
                f"Task system returned an empty task id for item {item.id}.",
                item_id=item.id,
            )

        logger.info("task_created", item_id=item.id, task_id=task_id, task_type=request.task_type)
        return str(task_id)
