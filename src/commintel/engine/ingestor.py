"""Thread ingestion: merge incoming thread payloads into the store.

Accepts a thread payload from the upstream communications system, validates
it, and merges it into the stored thread. Merging is idempotent: message
ids already stored are ignored (messages are immutable), unknown ones are
added, and the thread's messages stay ordered by (sent_date, id).

A thread is written together with its new messages in one transaction, so
a payload is either fully ingested or not at all.

Usage:
    from commintel.engine.ingestor import ThreadIngestor

    ingestor = ThreadIngestor(store, locks)
    thread = await ingestor.accept(payload)
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator

from commintel.core.errors import ValidationError
from commintel.core.logging import get_logger
from commintel.extraction.models import CommunicationThread, Message, as_utc

if TYPE_CHECKING:
    from commintel.core.locks import KeyedLock
    from commintel.db.store import DatabaseStore

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Payload schema
# ---------------------------------------------------------------------------


class MessagePayload(BaseModel):
    """One message as delivered by the upstream system."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1)
    sender: str = Field(min_length=1)
    recipients: list[str] = Field(default_factory=list)
    sent_date: datetime
    body: str = ""
    attachments: list[str] = Field(default_factory=list)

    @field_validator("sent_date")
    @classmethod
    def normalize_sent_date(cls, v: datetime) -> datetime:
        return as_utc(v)


class ThreadPayload(BaseModel):
    """A thread (or a delta of one) as delivered by the upstream system."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(min_length=1)
    subject: str | None = None
    matter_id: str | None = None
    messages: list[MessagePayload] = Field(default_factory=list)


def normalize_address(address: str) -> str:
    return address.strip().lower()


def parse_payload(payload: dict[str, Any]) -> ThreadPayload:
    """Validate a raw payload.

    Raises:
        ValidationError: With the first offending field path
    """
    try:
        return ThreadPayload.model_validate(payload)
    except pydantic.ValidationError as e:
        first = e.errors()[0]
        field_path = ".".join(str(part) for part in first["loc"])
        raise ValidationError(
            f"Invalid thread payload: {field_path}: {first['msg']}. "
            "Fix the upstream payload and resubmit.",
            field=field_path,
        ) from e


class ThreadIngestor:
    """Merges thread payloads into stored threads.

    Attributes:
        _store: Database store
        _locks: Per-thread lock shared with the reprocess pipeline
    """

    def __init__(self, store: DatabaseStore, locks: KeyedLock | None = None):
        self._store = store
        self._locks = locks

    async def accept(self, payload: dict[str, Any], triggered_by: str = "engine") -> CommunicationThread:
        """Validate and merge a thread payload.

        Args:
            payload: Raw thread payload (id, subject?, matter_id?, messages[])
            triggered_by: Audit trail source

        Returns:
            The merged thread with all messages in order

        Raises:
            ValidationError: If the payload is malformed, or a new thread has no messages
            DatabaseError: If the merge cannot be written
        """
        parsed = parse_payload(payload)
        if self._locks is None:
            return await self._merge(parsed, triggered_by)
        async with self._locks.acquire(parsed.id):
            return await self._merge(parsed, triggered_by)

    async def _merge(self, parsed: ThreadPayload, triggered_by: str) -> CommunicationThread:
        async with self._store.transaction() as db:
            existing = await self._store.get_thread(parsed.id, db=db)
            if existing is None and not parsed.messages:
                raise ValidationError(
                    f"Thread '{parsed.id}' is new but the payload has no messages. "
                    "A thread needs at least one message.",
                    field="messages",
                )

            thread = existing or CommunicationThread(id=parsed.id)
            known = {m.id: m for m in thread.messages}
            new_messages: list[Message] = []

            for item in parsed.messages:
                message = Message(
                    id=item.id,
                    thread_id=thread.id,
                    sender=normalize_address(item.sender),
                    sent_date=item.sent_date,
                    recipients=tuple(normalize_address(r) for r in item.recipients if r.strip()),
                    body=item.body,
                    attachments=tuple(item.attachments),
                )
                if message.id in known:
                    if known[message.id] != message:
                        logger.debug(
                            "message_redelivery_ignored",
                            thread_id=thread.id,
                            message_id=message.id,
                        )
                    continue
                known[message.id] = message
                new_messages.append(message)

            if parsed.subject:
                thread.subject = parsed.subject
            if parsed.matter_id:
                thread.matter_id = parsed.matter_id

            if new_messages:
                thread.messages = sorted(thread.messages + new_messages, key=lambda m: m.sort_key)
                for message in new_messages:
                    thread.participants.add(message.sender)
                    thread.participants.update(message.recipients)
                thread.last_message_date = max(m.sent_date for m in thread.messages)
                thread.pending_message_ids.update(m.id for m in new_messages)
                thread.is_processed = False

            await self._store.save_thread(thread, db=db)
            inserted = await self._store.insert_messages(new_messages, db=db)

            if new_messages or existing is None:
                await self._store.log_action(
                    "thread_ingested",
                    thread_id=thread.id,
                    details={"new_messages": inserted, "created": existing is None},
                    triggered_by=triggered_by,
                    db=db,
                )

        logger.info(
            "thread_ingested",
            thread_id=thread.id,
            new_messages=len(new_messages),
            total_messages=len(thread.messages),
            created=existing is None,
        )
        return thread
