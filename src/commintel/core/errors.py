"""Custom exception types for the communication intelligence engine.

All exceptions follow the same error message standard:
- What failed (specific operation or component)
- Where it failed (thread, item, method)
- Why it failed (the specific condition)
- How to fix it (actionable guidance)

Ingestion and extraction failures are recoverable and isolated per thread.
Lifecycle failures (InvalidStateError, ConflictError, TaskBridgeFailure) are
always raised to the caller.
"""


class CommIntelError(Exception):
    """Base exception for all engine errors."""

    pass


class ConfigValidationError(CommIntelError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(CommIntelError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(CommIntelError):
    """Raised when SQLite operations fail."""

    pass


class ValidationError(CommIntelError):
    """Raised when input is malformed. Nothing is persisted.

    Covers thread payloads missing ids or sent dates, unknown dismiss
    reasons, and legacy records that cannot be mapped onto a single
    lifecycle state.

    Attributes:
        field: Dotted path of the offending field (if known)
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class ThreadNotFoundError(CommIntelError):
    """Raised when a thread id is not known to the store."""

    def __init__(self, thread_id: str):
        super().__init__(
            f"Thread '{thread_id}' not found. Ingest the thread before reprocessing or archiving it."
        )
        self.thread_id = thread_id


class ItemNotFoundError(CommIntelError):
    """Raised when an extracted item id is not known to the store."""

    def __init__(self, item_id: str):
        super().__init__(f"Extracted item '{item_id}' not found. Re-fetch the thread's items.")
        self.item_id = item_id


class ExtractionUnavailable(CommIntelError):
    """Raised when the AI extraction capability fails or times out.

    The orchestrator catches this, marks the run failed, and the thread
    is retried on the next scheduled reprocess.

    Attributes:
        thread_id: Thread whose extraction failed
        retryable: Whether a later attempt may succeed
    """

    def __init__(self, message: str, thread_id: str | None = None, retryable: bool = True):
        super().__init__(message)
        self.thread_id = thread_id
        self.retryable = retryable


class FingerprintCollision(CommIntelError):
    """Raised when a candidate's fingerprint already exists for its thread.

    This is expected during reprocessing and is not a true error. The
    extraction store catches it and skips the candidate.

    Attributes:
        thread_id: Owning thread
        fingerprint: The colliding fingerprint
    """

    def __init__(self, thread_id: str, fingerprint: str):
        super().__init__(f"Fingerprint {fingerprint[:12]}... already exists for thread {thread_id}")
        self.thread_id = thread_id
        self.fingerprint = fingerprint


class InvalidStateError(CommIntelError):
    """Raised when a lifecycle transition is not allowed from the item's state.

    The item is left untouched.

    Attributes:
        item_id: The item the transition was attempted on
        current_state: The item's state at the time of the attempt
        attempted: The transition that was attempted
    """

    def __init__(self, message: str, item_id: str, current_state: str, attempted: str):
        super().__init__(message)
        self.item_id = item_id
        self.current_state = current_state
        self.attempted = attempted


class ConflictError(CommIntelError):
    """Raised when an item changed between the caller's read and the write.

    Optimistic concurrency: the caller must re-fetch the item and decide
    whether to retry. The engine never retries lifecycle transitions.

    Attributes:
        item_id: The contested item
        expected_state: The state the caller believed the item was in
        actual_state: The state found in the store
    """

    def __init__(
        self,
        message: str,
        item_id: str,
        expected_state: str | None = None,
        actual_state: str | None = None,
    ):
        super().__init__(message)
        self.item_id = item_id
        self.expected_state = expected_state
        self.actual_state = actual_state


class TaskBridgeFailure(CommIntelError):
    """Raised when the external task system fails to create a task.

    The item stays Open. Conversion is never retried automatically.

    Attributes:
        item_id: The item being converted
        retryable: True for timeouts and transport errors
        status_code: HTTP status code from the task service (if any)
    """

    def __init__(
        self,
        message: str,
        item_id: str | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.item_id = item_id
        self.retryable = retryable
        self.status_code = status_code
