"""Extraction orchestrator: one AI extraction run over a thread's new messages.

Runs the extraction capability over the messages newer than the caller's
high-water mark, validates every raw candidate, and returns an
ExtractionBatch. Invalid candidates are dropped and logged. Capability
failures, timeouts and unexpected capability errors produce a failed
batch instead of an exception, so one thread's extraction problem never
reaches the caller. Cancellation is not swallowed.

Run bookkeeping (extraction_runs):
- the run row is created 'running' before the capability call
- failed and skipped runs are finished here
- successful runs are finished by the caller in the same transaction that
  persists the items, so the high-water mark never advances past items
  that were not stored

Usage:
    from commintel.extraction.orchestrator import ExtractionOrchestrator

    orchestrator = ExtractionOrchestrator(capability, store, config)
    batch = await orchestrator.extract(thread, since_message_id="m-41", run_id=run_id)
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Literal

from commintel.core.errors import ExtractionUnavailable
from commintel.core.logging import get_logger
from commintel.extraction.claude_extractor import ExtractionRequest
from commintel.extraction.models import (
    ActionItemPayload,
    ActionPriority,
    CandidateExtraction,
    CommitmentPayload,
    CommunicationThread,
    Confidence,
    DeadlinePayload,
    Message,
    Payload,
    Variant,
    parse_datetime,
    utc_now,
)

if TYPE_CHECKING:
    from commintel.config_schema import AppConfig
    from commintel.db.store import DatabaseStore
    from commintel.extraction.claude_extractor import ExtractionCapability

logger = get_logger(__name__)

BatchStatus = Literal["succeeded", "failed", "skipped"]


@dataclass(frozen=True, slots=True)
class ExtractionBatch:
    """Output of one orchestrator run.

    Attributes:
        run_id: extraction_runs id (also the log correlation id)
        thread_id: Thread that was extracted
        status: 'succeeded', 'failed' or 'skipped' (no new messages)
        candidates: Validated candidates (empty unless succeeded)
        since_message_id: High-water mark the run started from
        high_water_message_id: Newest message covered so far (never moves back)
        message_ids: Messages sent as new, marked extracted when persisted
        dropped: Number of raw candidates that failed validation
        error: Failure description for failed runs
    """

    run_id: str
    thread_id: str
    status: BatchStatus
    candidates: frozenset[CandidateExtraction] = field(default_factory=frozenset)
    since_message_id: str | None = None
    high_water_message_id: str | None = None
    message_ids: tuple[str, ...] = ()
    dropped: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"


class CandidateRejected(Exception):
    """Internal signal: a raw candidate failed validation."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class ExtractionOrchestrator:
    """Validates and bounds calls to the extraction capability.

    Attributes:
        _capability: AI extraction capability
        _store: Database store (run bookkeeping and audit log)
        _config: Application configuration
    """

    def __init__(
        self,
        capability: ExtractionCapability,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._capability = capability
        self._store = store
        self._config = config

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config

    async def extract(
        self,
        thread: CommunicationThread,
        since_message_id: str | None = None,
        run_id: str | None = None,
    ) -> ExtractionBatch:
        """Extract candidates from messages newer than ``since_message_id``.

        Pending messages (delivered late with an earlier sent date) are
        included. An unknown ``since_message_id`` falls back to the whole thread.

        Args:
            thread: Thread with its messages loaded
            since_message_id: High-water mark from the last successful run
            run_id: Run id to record under (generated if omitted)

        Returns:
            ExtractionBatch. Never raises for capability failures.

        Raises:
            asyncio.CancelledError: If the run is cancelled
            DatabaseError: If run bookkeeping cannot be written
        """
        run_id = run_id or str(uuid.uuid4())
        if since_message_id is not None and thread.get_message(since_message_id) is None:
            logger.warning(
                "since_message_unknown",
                thread_id=thread.id,
                since_message_id=since_message_id,
            )
            since_message_id = None

        await self._store.create_run(run_id, thread.id, since_message_id, utc_now())

        new_messages = thread.messages_to_extract(since_message_id)
        if not new_messages:
            logger.info("extraction_skipped", thread_id=thread.id, reason="no_new_messages")
            await self._store.finish_run(
                run_id, "skipped", utc_now(), high_water_message_id=since_message_id
            )
            return ExtractionBatch(
                run_id=run_id,
                thread_id=thread.id,
                status="skipped",
                since_message_id=since_message_id,
                high_water_message_id=since_message_id,
            )

        request = self._build_request(thread, new_messages)
        timeout = self._config.extraction.timeout_seconds
        logger.info(
            "extraction_started",
            thread_id=thread.id,
            new_messages=len(new_messages),
            context_messages=len(request.context_messages),
        )

        try:
            raw_items = await asyncio.wait_for(self._capability.extract(request), timeout=timeout)
        except ExtractionUnavailable as e:
            return await self._failed(run_id, thread, since_message_id, str(e))
        except TimeoutError:
            return await self._failed(
                run_id, thread, since_message_id, f"Extraction timed out after {timeout}s"
            )
        except Exception as e:
            logger.exception("extraction_capability_error", thread_id=thread.id)
            return await self._failed(
                run_id, thread, since_message_id, f"{type(e).__name__}: {e}"
            )

        candidates: set[CandidateExtraction] = set()
        dropped = 0
        for raw in raw_items:
            try:
                candidates.add(self.validate_candidate(thread, raw))
            except CandidateRejected as rejected:
                dropped += 1
                logger.info(
                    "candidate_dropped",
                    thread_id=thread.id,
                    reason=rejected.reason,
                    candidate_type=raw.get("type") if isinstance(raw, dict) else None,
                )

        logger.info(
            "extraction_completed",
            thread_id=thread.id,
            candidates=len(candidates),
            dropped=dropped,
        )
        return ExtractionBatch(
            run_id=run_id,
            thread_id=thread.id,
            status="succeeded",
            candidates=frozenset(candidates),
            since_message_id=since_message_id,
            high_water_message_id=_high_water(thread, since_message_id, new_messages),
            message_ids=tuple(m.id for m in new_messages),
            dropped=dropped,
        )

    def _build_request(
        self, thread: CommunicationThread, new_messages: list[Message]
    ) -> ExtractionRequest:
        new_ids = {m.id for m in new_messages}
        newest = new_messages[-1].sort_key
        earlier = [m for m in thread.messages if m.id not in new_ids and m.sort_key < newest]
        context_limit = self._config.extraction.context_messages
        context = earlier[-context_limit:] if context_limit > 0 else []
        return ExtractionRequest(
            thread_id=thread.id,
            subject=thread.subject,
            participants=frozenset(thread.participants),
            new_messages=tuple(new_messages),
            context_messages=tuple(context),
        )

    async def _failed(
        self,
        run_id: str,
        thread: CommunicationThread,
        since_message_id: str | None,
        error: str,
    ) -> ExtractionBatch:
        logger.warning("extraction_failed", thread_id=thread.id, error=error)
        await self._store.finish_run(run_id, "failed", utc_now(), error=error)
        await self._store.log_action(
            "extraction_failed",
            thread_id=thread.id,
            details={"run_id": run_id, "error": error},
        )
        return ExtractionBatch(
            run_id=run_id,
            thread_id=thread.id,
            status="failed",
            since_message_id=since_message_id,
            error=error,
        )

    # -------------------------------------------------------------------------
    # Candidate validation
    # -------------------------------------------------------------------------

    def validate_candidate(self, thread: CommunicationThread, raw: Any) -> CandidateExtraction:
        """Turn one raw capability mapping into a typed candidate.

        Raises:
            CandidateRejected: With a short machine-readable reason
        """
        if not isinstance(raw, dict):
            raise CandidateRejected("not_a_mapping")

        variant_raw = raw.get("type")
        try:
            variant = Variant(str(variant_raw).strip().lower())
        except ValueError:
            raise CandidateRejected("unknown_type") from None

        confidence = Confidence.parse(raw.get("confidence"))
        if confidence is None:
            raise CandidateRejected("invalid_confidence")

        source_message_id = raw.get("source_message_id")
        if not isinstance(source_message_id, str) or thread.get_message(source_message_id) is None:
            raise CandidateRejected("unknown_source_message")

        if variant is Variant.DEADLINE:
            payload: Payload = _deadline_payload(thread, raw)
        elif variant is Variant.COMMITMENT:
            payload = _commitment_payload(thread, raw)
        else:
            payload = _action_item_payload(raw)

        return CandidateExtraction(
            thread_id=thread.id,
            source_message_id=source_message_id,
            confidence=confidence,
            payload=payload,
        )


def _high_water(
    thread: CommunicationThread, since_message_id: str | None, new_messages: list[Message]
) -> str:
    """Latest of the previous mark and the newest extracted message."""
    newest = new_messages[-1]
    previous = thread.get_message(since_message_id) if since_message_id else None
    if previous is not None and previous.sort_key > newest.sort_key:
        return previous.id
    return newest.id


def _text(raw: dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        return None
    return value.strip()


def _deadline_payload(thread: CommunicationThread, raw: dict[str, Any]) -> DeadlinePayload:
    description = _text(raw, "description")
    if description is None:
        raise CandidateRejected("missing_description")
    due_date = parse_datetime(raw.get("due_date"))
    if due_date is None:
        raise CandidateRejected("invalid_due_date")
    if thread.start_date is not None and due_date <= thread.start_date:
        raise CandidateRejected("due_date_before_thread_start")
    return DeadlinePayload(description=description, due_date=due_date)


def _commitment_payload(thread: CommunicationThread, raw: dict[str, Any]) -> CommitmentPayload:
    party = _text(raw, "party")
    if party is None or party.lower() not in thread.participants:
        raise CandidateRejected("unknown_party")
    commitment_text = _text(raw, "commitment_text")
    if commitment_text is None:
        raise CandidateRejected("missing_commitment_text")
    date_raw = raw.get("date")
    date = None
    if date_raw is not None and not (isinstance(date_raw, str) and not date_raw.strip()):
        date = parse_datetime(date_raw)
        if date is None:
            raise CandidateRejected("invalid_date")
    return CommitmentPayload(party=party.lower(), commitment_text=commitment_text, date=date)


def _action_item_payload(raw: dict[str, Any]) -> ActionItemPayload:
    description = _text(raw, "description")
    if description is None:
        raise CandidateRejected("missing_description")
    priority = ActionPriority.parse(raw.get("priority"))
    if priority is None:
        raise CandidateRejected("invalid_priority")
    return ActionItemPayload(
        description=description,
        priority=priority,
        suggested_assignee=_text(raw, "suggested_assignee"),
    )
