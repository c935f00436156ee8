"""Communication intelligence engines.

This package provides the processing engines:
- Thread ingestor for idempotent thread/message merging
- Extraction store for fingerprint-idempotent item creation
- Confidence policy for ranking items
- Lifecycle manager for convert/dismiss transitions
- Reprocess pipeline with per-thread locking and archive cancellation
- Engine facade tying them together
"""

from commintel.engine.extraction_store import ExtractionStore
from commintel.engine.ingestor import ThreadIngestor, ThreadPayload
from commintel.engine.lifecycle import LifecycleManager
from commintel.engine.pipeline import PendingCycleResult, ReprocessPipeline, ReprocessResult
from commintel.engine.ranking import ConfidencePolicy
from commintel.engine.service import ConversionPreview, IntelligenceEngine

__all__ = [
    # Ingestion
    "ThreadIngestor",
    "ThreadPayload",
    # Persistence
    "ExtractionStore",
    # Ranking
    "ConfidencePolicy",
    # Lifecycle
    "LifecycleManager",
    # Pipeline
    "PendingCycleResult",
    "ReprocessPipeline",
    "ReprocessResult",
    # Facade
    "ConversionPreview",
    "IntelligenceEngine",
]
