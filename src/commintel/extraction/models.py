"""Domain types for threads, messages and extracted items.

Extracted items are a closed tagged union: every item carries exactly one
of DeadlinePayload, CommitmentPayload or ActionItemPayload, each with its
required fields fixed at construction. There is no bag of optional fields
to combine incorrectly.

Lifecycle state is a single discriminated value (ItemState). The fields
that belong to a terminal state (converted_task_id for Converted,
dismissed_at/dismiss_reason for Dismissed) are checked against the state
in ExtractedItem.__post_init__, so an inconsistent item cannot be built.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from commintel.core.errors import ValidationError


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime. Naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def parse_datetime(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (or datetime) into aware UTC. Returns None if unparseable."""
    if isinstance(value, datetime):
        return as_utc(value)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


class Variant(StrEnum):
    """Extracted item variant type."""

    DEADLINE = "deadline"
    COMMITMENT = "commitment"
    ACTION_ITEM = "action_item"


class Confidence(StrEnum):
    """Coarse confidence grade attached by the AI capability."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @classmethod
    def parse(cls, value: Any) -> Confidence | None:
        """Match a raw grade case-insensitively. Returns None if unknown."""
        if not isinstance(value, str):
            return None
        lowered = value.strip().lower()
        for grade in cls:
            if grade.value.lower() == lowered:
                return grade
        return None


class ItemState(StrEnum):
    """Lifecycle state. Open is initial, Converted and Dismissed are terminal."""

    OPEN = "open"
    CONVERTED = "converted"
    DISMISSED = "dismissed"

    @property
    def is_terminal(self) -> bool:
        return self is not ItemState.OPEN

    @classmethod
    def parse(cls, value: str | ItemState, field: str = "state") -> ItemState:
        """Convert a caller-supplied state, case-insensitively ("Open" == "open").

        Raises:
            ValidationError: If the state is not one of the known values
        """
        if isinstance(value, ItemState):
            return value
        normalized = str(value).strip().lower()
        for state in cls:
            if state.value == normalized:
                return state
        raise ValidationError(
            f"Unknown item state '{value}'. Must be one of: {', '.join(s.value for s in cls)}",
            field=field,
        )


class DismissReason(StrEnum):
    """Why an item was dismissed."""

    NOT_RELEVANT = "NotRelevant"
    ALREADY_HANDLED = "AlreadyHandled"
    INCORRECT_INFORMATION = "IncorrectInformation"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: str | DismissReason) -> DismissReason:
        """Convert a raw reason string.

        Raises:
            ValidationError: If the reason is not one of the known values
        """
        if isinstance(value, DismissReason):
            return value
        for reason in cls:
            if reason.value.lower() == str(value).strip().lower():
                return reason
        raise ValidationError(
            f"Unknown dismiss reason '{value}'. "
            f"Must be one of: {', '.join(r.value for r in cls)}",
            field="reason",
        )


class ActionPriority(StrEnum):
    """Priority carried by action items (mirrors the task system's levels)."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    URGENT = "Urgent"

    @classmethod
    def parse(cls, value: Any) -> ActionPriority | None:
        if value is None or (isinstance(value, str) and not value.strip()):
            return cls.MEDIUM
        if not isinstance(value, str):
            return None
        for priority in cls:
            if priority.value.lower() == value.strip().lower():
                return priority
        return None


# ---------------------------------------------------------------------------
# Threads and messages
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Message:
    """A single message in a thread. Immutable once created."""

    id: str
    thread_id: str
    sender: str
    sent_date: datetime
    recipients: tuple[str, ...] = ()
    body: str = ""
    attachments: tuple[str, ...] = ()

    @property
    def sort_key(self) -> tuple[datetime, str]:
        return (self.sent_date, self.id)


@dataclass
class CommunicationThread:
    """A chronologically ordered message thread tied to one legal matter.

    Attributes:
        id: Thread id from the upstream communications system
        subject: Thread subject line
        matter_id: Legal matter the thread belongs to
        participants: Union of all senders and recipients (lowercased)
        messages: Messages ordered by (sent_date, id)
        is_processed: Whether the latest messages have been extracted
        processed_at: When extraction last succeeded
        last_message_date: Max sent_date across messages
        archived_at: Set once the thread is archived
        pending_message_ids: Messages no successful run has covered yet
    """

    id: str
    subject: str | None = None
    matter_id: str | None = None
    participants: set[str] = field(default_factory=set)
    messages: list[Message] = field(default_factory=list)
    is_processed: bool = False
    processed_at: datetime | None = None
    last_message_date: datetime | None = None
    archived_at: datetime | None = None
    pending_message_ids: set[str] = field(default_factory=set)

    @property
    def start_date(self) -> datetime | None:
        """Sent date of the first message."""
        return self.messages[0].sent_date if self.messages else None

    @property
    def is_archived(self) -> bool:
        return self.archived_at is not None

    def message_ids(self) -> set[str]:
        return {m.id for m in self.messages}

    def get_message(self, message_id: str) -> Message | None:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None

    def messages_after(self, message_id: str | None) -> list[Message]:
        """Messages strictly newer than ``message_id``.

        Returns the whole thread if ``message_id`` is None or unknown.
        """
        if message_id is None:
            return list(self.messages)
        for index, message in enumerate(self.messages):
            if message.id == message_id:
                return self.messages[index + 1 :]
        return list(self.messages)

    def messages_to_extract(self, since_message_id: str | None) -> list[Message]:
        """Messages newer than ``since_message_id`` plus every pending message.

        A late delivery dated before the high-water message is still pending,
        so it is included. Chronological order is kept.
        """
        newer = {m.id for m in self.messages_after(since_message_id)}
        return [m for m in self.messages if m.id in newer or m.id in self.pending_message_ids]


# ---------------------------------------------------------------------------
# Variant payloads (closed tagged union)
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DeadlinePayload:
    """A date by which something must happen."""

    description: str
    due_date: datetime

    variant = Variant.DEADLINE

    def primary_text(self) -> str:
        return self.description

    def to_dict(self) -> dict[str, Any]:
        return {"description": self.description, "due_date": self.due_date.isoformat()}


@dataclass(frozen=True, slots=True)
class CommitmentPayload:
    """A promise made by a participant."""

    party: str
    commitment_text: str
    date: datetime | None = None

    variant = Variant.COMMITMENT

    def primary_text(self) -> str:
        return f"{self.party} {self.commitment_text}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "party": self.party,
            "commitment_text": self.commitment_text,
            "date": self.date.isoformat() if self.date else None,
        }


@dataclass(frozen=True, slots=True)
class ActionItemPayload:
    """Something someone needs to do."""

    description: str
    priority: ActionPriority = ActionPriority.MEDIUM
    suggested_assignee: str | None = None

    variant = Variant.ACTION_ITEM

    def primary_text(self) -> str:
        return self.description

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "priority": self.priority.value,
            "suggested_assignee": self.suggested_assignee,
        }


Payload = DeadlinePayload | CommitmentPayload | ActionItemPayload


def payload_from_dict(variant: Variant | str, data: dict[str, Any]) -> Payload:
    """Rebuild a payload from its stored JSON form."""
    variant = Variant(variant)
    if variant is Variant.DEADLINE:
        return DeadlinePayload(
            description=data["description"],
            due_date=as_utc(datetime.fromisoformat(data["due_date"])),
        )
    if variant is Variant.COMMITMENT:
        return CommitmentPayload(
            party=data["party"],
            commitment_text=data["commitment_text"],
            date=as_utc(datetime.fromisoformat(data["date"])) if data.get("date") else None,
        )
    return ActionItemPayload(
        description=data["description"],
        priority=ActionPriority(data.get("priority") or ActionPriority.MEDIUM),
        suggested_assignee=data.get("suggested_assignee"),
    )


# ---------------------------------------------------------------------------
# Candidates and items
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CandidateExtraction:
    """A validated candidate from one orchestrator run, not yet persisted."""

    thread_id: str
    source_message_id: str
    confidence: Confidence
    payload: Payload

    @property
    def variant(self) -> Variant:
        return self.payload.variant


@dataclass(frozen=True)
class ExtractedItem:
    """A persisted extracted item and its lifecycle state.

    Raises:
        ValueError: If the terminal-state fields do not match ``state``
    """

    id: str
    thread_id: str
    source_message_id: str
    confidence: Confidence
    payload: Payload
    fingerprint: str
    state: ItemState = ItemState.OPEN
    converted_task_id: str | None = None
    dismissed_at: datetime | None = None
    dismiss_reason: DismissReason | None = None
    dismiss_note: str | None = None
    version: int = 1
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __post_init__(self) -> None:
        converted = self.state is ItemState.CONVERTED
        dismissed = self.state is ItemState.DISMISSED
        if converted != (self.converted_task_id is not None):
            raise ValueError(
                f"Item {self.id}: converted_task_id must be set iff state is converted "
                f"(state={self.state}, converted_task_id={self.converted_task_id!r})"
            )
        has_dismissal = self.dismissed_at is not None and self.dismiss_reason is not None
        has_any_dismissal = self.dismissed_at is not None or self.dismiss_reason is not None
        if dismissed != has_dismissal or (not dismissed and has_any_dismissal):
            raise ValueError(
                f"Item {self.id}: dismissed_at and dismiss_reason must be set iff state is dismissed"
            )

    @property
    def variant(self) -> Variant:
        return self.payload.variant


def normalize_legacy_state(
    dismissed: bool,
    converted_task_id: str | None,
    dismissed_at: datetime | None = None,
    dismiss_reason: str | None = None,
) -> ItemState:
    """Map a legacy record (dismissed flag + converted task id) onto ItemState.

    Legacy rows kept a boolean dismissed flag alongside a separate converted
    task id, which allowed both to be set at once. Such a row has no single
    lifecycle state and is rejected rather than guessed.

    Args:
        dismissed: Legacy dismissed flag
        converted_task_id: Legacy converted task id (or None)
        dismissed_at: Legacy dismissal timestamp
        dismiss_reason: Legacy dismissal reason

    Returns:
        The equivalent ItemState

    Raises:
        ValidationError: If the record is both dismissed and converted, or
            dismissed without a timestamp
    """
    if dismissed and converted_task_id:
        raise ValidationError(
            f"Legacy record is both dismissed and converted (task {converted_task_id}). "
            "Resolve it manually before migration.",
            field="dismissed",
        )
    if converted_task_id:
        return ItemState.CONVERTED
    if dismissed:
        if dismissed_at is None:
            raise ValidationError(
                "Legacy record is dismissed but has no dismissed_at timestamp.",
                field="dismissed_at",
            )
        if dismiss_reason is not None:
            DismissReason.parse(dismiss_reason)
        return ItemState.DISMISSED
    return ItemState.OPEN
