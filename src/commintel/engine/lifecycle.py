"""Lifecycle manager: the only component that mutates extracted items.

State machine:

    Open --convert--> Converted   (terminal; task reference may be relinked)
    Open --dismiss--> Dismissed   (terminal)

There is no reopen. Every transition is a compare-and-set on
(state = 'open', version), so a concurrent change surfaces as
ConflictError instead of a lost update. Transitions are never retried
here; the caller re-reads the item and decides.

Conversion calls the task bridge before touching the item. If the bridge
fails the item stays Open. If the item changed while the task was being
created, the new task id is logged as orphaned and ConflictError is raised.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import TYPE_CHECKING

from commintel.core.errors import (
    ConflictError,
    DatabaseError,
    InvalidStateError,
    ItemNotFoundError,
    TaskBridgeFailure,
    ValidationError,
)
from commintel.core.locks import KeyedLock
from commintel.core.logging import get_logger
from commintel.extraction.models import DismissReason, ExtractedItem, ItemState, utc_now

if TYPE_CHECKING:
    from commintel.db.store import DatabaseStore
    from commintel.engine.ranking import ConfidencePolicy
    from commintel.tasks.bridge import TaskBridge

logger = get_logger(__name__)


class LifecycleManager:
    """Applies convert/dismiss transitions to extracted items.

    Attributes:
        _store: Database store
        _bridge: Task bridge used by convert
        _policy: Confidence policy for ranked reads
        _locks: Per-item lock serializing transitions in this process
    """

    def __init__(
        self,
        store: DatabaseStore,
        bridge: TaskBridge,
        policy: ConfidencePolicy | None = None,
        locks: KeyedLock | None = None,
    ):
        self._store = store
        self._bridge = bridge
        self._policy = policy
        self._locks = locks or KeyedLock("item")

    def set_policy(self, policy: ConfidencePolicy) -> None:
        self._policy = policy

    async def _load(self, item_id: str) -> ExtractedItem:
        item = await self._store.get_item(item_id)
        if item is None:
            raise ItemNotFoundError(item_id)
        return item

    @staticmethod
    def _check_expected(
        item: ExtractedItem, expected_state: ItemState | str | None, attempted: str
    ) -> None:
        if expected_state is None:
            return
        expected = ItemState.parse(expected_state, field="expected_state")
        if expected is not item.state:
            raise ConflictError(
                f"Cannot {attempted} item {item.id}: expected state '{expected.value}' "
                f"but it is '{item.state.value}'. Re-fetch the item and retry if still wanted.",
                item_id=item.id,
                expected_state=expected.value,
                actual_state=item.state.value,
            )

    async def _conflict_after_write(
        self, item: ExtractedItem, attempted: str, expected: ItemState = ItemState.OPEN
    ) -> ConflictError:
        current = await self._store.get_item(item.id)
        actual = current.state.value if current else None
        return ConflictError(
            f"Item {item.id} changed while attempting to {attempted} "
            f"(now '{actual}', version {current.version if current else '?'}). "
            "Re-fetch the item and decide whether to retry.",
            item_id=item.id,
            expected_state=expected.value,
            actual_state=actual,
        )

    # =========================================================================
    # Convert
    # =========================================================================

    async def convert(
        self,
        item_id: str,
        assignee_override: str | None = None,
        expected_state: ItemState | str | None = None,
        triggered_by: str = "user",
    ) -> ExtractedItem:
        """Create an external task for an Open item and mark it Converted.

        Args:
            item_id: Item to convert
            assignee_override: Assignee for the task (action items default to the suggestion)
            expected_state: State the caller last saw; mismatch raises ConflictError
            triggered_by: Audit trail source

        Returns:
            The Converted item

        Raises:
            ItemNotFoundError: Unknown item id
            ValidationError: Unknown expected_state
            ConflictError: expected_state mismatch, or a concurrent change
            InvalidStateError: Item is not Open (the bridge is not called)
            TaskBridgeFailure: Task creation failed (the item stays Open)
        """
        async with self._locks.acquire(item_id):
            item = await self._load(item_id)
            self._check_expected(item, expected_state, "convert")
            if item.state is not ItemState.OPEN:
                raise InvalidStateError(
                    f"Cannot convert item {item.id}: it is already {item.state.value}. "
                    "Only Open items can be converted.",
                    item_id=item.id,
                    current_state=item.state.value,
                    attempted="convert",
                )

            try:
                task_id = await self._bridge.create_task_from_item(item, assignee_override)
            except TaskBridgeFailure as e:
                await self._audit_failure(item, e, triggered_by)
                raise

            now = utc_now()
            async with self._store.transaction() as db:
                updated = await self._store.mark_item_converted(
                    item.id, item.version, task_id, now, db=db
                )
                if updated:
                    await self._store.log_action(
                        "item_converted",
                        thread_id=item.thread_id,
                        item_id=item.id,
                        details={"task_id": task_id, "assignee_override": assignee_override},
                        triggered_by=triggered_by,
                        db=db,
                    )

            if not updated:
                logger.error(
                    "conversion_orphaned_task",
                    item_id=item.id,
                    task_id=task_id,
                    reason="item changed during task creation",
                )
                raise await self._conflict_after_write(item, "convert")

            logger.info("item_converted", item_id=item.id, thread_id=item.thread_id, task_id=task_id)
            return dataclasses.replace(
                item,
                state=ItemState.CONVERTED,
                converted_task_id=task_id,
                version=item.version + 1,
                updated_at=now,
            )

    async def _audit_failure(
        self, item: ExtractedItem, error: TaskBridgeFailure, triggered_by: str
    ) -> None:
        try:
            await self._store.log_action(
                "conversion_failed",
                thread_id=item.thread_id,
                item_id=item.id,
                details={
                    "error": str(error),
                    "retryable": error.retryable,
                    "status_code": error.status_code,
                },
                triggered_by=triggered_by,
            )
        except DatabaseError as e:
            # The bridge failure is what the caller needs to see
            logger.warning("conversion_failure_audit_failed", item_id=item.id, error=str(e))

    # =========================================================================
    # Dismiss
    # =========================================================================

    async def dismiss(
        self,
        item_id: str,
        reason: DismissReason | str,
        note: str | None = None,
        expected_state: ItemState | str | None = None,
        triggered_by: str = "user",
    ) -> ExtractedItem:
        """Mark an Open item Dismissed.

        Dismissing an item that is already Dismissed with the same reason
        returns it unchanged.

        Raises:
            ValidationError: Unknown reason or expected_state
            ItemNotFoundError: Unknown item id
            ConflictError: expected_state mismatch, or a concurrent change
            InvalidStateError: Item is Converted, or Dismissed with another reason
        """
        reason = DismissReason.parse(reason)
        note = note.strip() if note and note.strip() else None

        async with self._locks.acquire(item_id):
            item = await self._load(item_id)
            if item.state is ItemState.DISMISSED and item.dismiss_reason is reason:
                logger.debug("dismiss_noop", item_id=item.id, reason=reason.value)
                return item

            self._check_expected(item, expected_state, "dismiss")
            if item.state is not ItemState.OPEN:
                detail = (
                    f"already dismissed as {item.dismiss_reason.value}"
                    if item.state is ItemState.DISMISSED and item.dismiss_reason
                    else f"already {item.state.value}"
                )
                raise InvalidStateError(
                    f"Cannot dismiss item {item.id}: it is {detail}. "
                    "Terminal items cannot change state.",
                    item_id=item.id,
                    current_state=item.state.value,
                    attempted="dismiss",
                )

            now = utc_now()
            async with self._store.transaction() as db:
                updated = await self._store.mark_item_dismissed(
                    item.id, item.version, reason, note, now, db=db
                )
                if updated:
                    await self._store.log_action(
                        "item_dismissed",
                        thread_id=item.thread_id,
                        item_id=item.id,
                        details={"reason": reason.value, "note": note},
                        triggered_by=triggered_by,
                        db=db,
                    )

            if not updated:
                raise await self._conflict_after_write(item, "dismiss")

            logger.info("item_dismissed", item_id=item.id, thread_id=item.thread_id, reason=reason.value)
            return dataclasses.replace(
                item,
                state=ItemState.DISMISSED,
                dismissed_at=now,
                dismiss_reason=reason,
                dismiss_note=note,
                version=item.version + 1,
                updated_at=now,
            )

    # =========================================================================
    # Task reference
    # =========================================================================

    async def relink_task(
        self, item_id: str, task_id: str, triggered_by: str = "user"
    ) -> ExtractedItem:
        """Point a Converted item at a different task id.

        Raises:
            ValidationError: Empty task id
            ItemNotFoundError: Unknown item id
            InvalidStateError: Item is not Converted
            ConflictError: Item changed concurrently
        """
        task_id = (task_id or "").strip()
        if not task_id:
            raise ValidationError("Task id cannot be empty.", field="task_id")

        async with self._locks.acquire(item_id):
            item = await self._load(item_id)
            if item.state is not ItemState.CONVERTED:
                raise InvalidStateError(
                    f"Cannot relink task for item {item.id}: it is {item.state.value}. "
                    "Only Converted items carry a task reference.",
                    item_id=item.id,
                    current_state=item.state.value,
                    attempted="relink_task",
                )

            now = utc_now()
            async with self._store.transaction() as db:
                updated = await self._store.update_task_reference(item.id, task_id, now, db=db)
                if updated:
                    await self._store.log_action(
                        "task_relinked",
                        thread_id=item.thread_id,
                        item_id=item.id,
                        details={"old_task_id": item.converted_task_id, "new_task_id": task_id},
                        triggered_by=triggered_by,
                        db=db,
                    )
            if not updated:
                raise await self._conflict_after_write(item, "relink_task", ItemState.CONVERTED)

            logger.info(
                "task_relinked",
                item_id=item.id,
                old_task_id=item.converted_task_id,
                new_task_id=task_id,
            )
            return dataclasses.replace(
                item, converted_task_id=task_id, version=item.version + 1, updated_at=now
            )

    # =========================================================================
    # Reads
    # =========================================================================

    async def ranked_open_items(
        self, thread_id: str, now: datetime | None = None
    ) -> list[ExtractedItem]:
        """Open items for a thread, most important first."""
        items = await self._store.list_items(thread_id, state=ItemState.OPEN)
        if self._policy is None:
            return items
        return self._policy.sort_items(items, now)
