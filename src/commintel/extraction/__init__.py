"""Thread extraction components.

This package turns new thread messages into validated candidates:
- Domain types (threads, messages, variant payloads, items)
- Claude extraction capability with forced tool use
- Extraction orchestrator (bounded calls, candidate validation, run bookkeeping)
- Normalized-text fingerprints for idempotent persistence
"""

from commintel.extraction.claude_extractor import (
    ClaudeExtractor,
    ExtractionCapability,
    ExtractionRequest,
)
from commintel.extraction.fingerprint import compute_fingerprint, normalize_text
from commintel.extraction.models import (
    ActionItemPayload,
    ActionPriority,
    CandidateExtraction,
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
)
from commintel.extraction.orchestrator import ExtractionBatch, ExtractionOrchestrator

__all__ = [
    # Capability
    "ClaudeExtractor",
    "ExtractionCapability",
    "ExtractionRequest",
    # Fingerprints
    "compute_fingerprint",
    "normalize_text",
    # Models
    "ActionItemPayload",
    "ActionPriority",
    "CandidateExtraction",
    "CommitmentPayload",
    "CommunicationThread",
    "Confidence",
    "DeadlinePayload",
    "DismissReason",
    "ExtractedItem",
    "ItemState",
    "Message",
    "Variant",
    "normalize_legacy_state",
    # Orchestrator
    "ExtractionBatch",
    "ExtractionOrchestrator",
]
