"""Claude-backed extraction capability using forced tool use.

The orchestrator depends only on the ExtractionCapability protocol: one
async call that takes an ExtractionRequest and returns raw candidate
mappings. ClaudeExtractor is the production implementation. Tests and
alternative models plug in anything with the same ``extract`` method.

Error handling strategy:
- Transient errors (429, 5xx, network): Handled by Anthropic SDK (max_retries)
- Anything still failing after SDK retries: raised as ExtractionUnavailable
- Malformed tool output (no tool call, items not a list): ExtractionUnavailable
- Per-candidate validation is NOT done here; the orchestrator owns it

Usage:
    from commintel.extraction.claude_extractor import ClaudeExtractor

    extractor = ClaudeExtractor(anthropic_client=client, store=store, config=config)
    raw_items = await extractor.extract(request)
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

import anthropic

from commintel.core.errors import ExtractionUnavailable
from commintel.core.logging import get_logger
from commintel.extraction.prompts import EXTRACT_ITEMS_TOOL, PromptAssembler

if TYPE_CHECKING:
    from commintel.config_schema import AppConfig
    from commintel.db.store import DatabaseStore
    from commintel.extraction.models import Message

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ExtractionRequest:
    """Input to one capability call.

    Attributes:
        thread_id: Thread being extracted
        subject: Thread subject
        participants: Known participant addresses (lowercased)
        new_messages: Messages to extract from (newer than the high-water mark)
        context_messages: Earlier messages, for context only
    """

    thread_id: str
    subject: str | None
    participants: frozenset[str]
    new_messages: tuple[Message, ...]
    context_messages: tuple[Message, ...] = field(default_factory=tuple)


class ExtractionCapability(Protocol):
    """Opaque AI extraction capability."""

    async def extract(self, request: ExtractionRequest) -> list[dict[str, Any]]:
        """Return raw candidate mappings for the request's new messages.

        Raises:
            ExtractionUnavailable: If the capability cannot produce a result
        """
        ...


class ClaudeExtractor:
    """Extracts candidates from a thread with Claude.

    Attributes:
        _client: Anthropic API client (configured with SDK-level retries)
        _store: Database store for LLM request logging
        _config: Application configuration
        _prompts: Prompt assembler
    """

    def __init__(
        self,
        anthropic_client: anthropic.Anthropic,
        store: DatabaseStore,
        config: AppConfig,
    ):
        self._client = anthropic_client
        self._store = store
        self._config = config
        self._prompts = PromptAssembler(body_max_length=config.extraction.body_max_length)

    def update_config(self, config: AppConfig) -> None:
        """Update the config reference for hot-reload support."""
        self._config = config
        self._prompts = PromptAssembler(body_max_length=config.extraction.body_max_length)

    async def extract(self, request: ExtractionRequest) -> list[dict[str, Any]]:
        """Call Claude with a forced tool choice and return the raw item list.

        Raises:
            ExtractionUnavailable: On API errors or malformed tool output
        """
        model_name = self._config.models.extraction
        system_prompt = self._prompts.build_system_prompt()
        messages = [{"role": "user", "content": self._prompts.build_user_message(request)}]

        start_time = time.monotonic()
        try:
            api_response = await asyncio.to_thread(
                self._client.messages.create,
                model=model_name,
                max_tokens=self._config.extraction.max_tokens,
                system=system_prompt,
                messages=messages,
                tools=[EXTRACT_ITEMS_TOOL],
                tool_choice={"type": "tool", "name": EXTRACT_ITEMS_TOOL["name"]},
                timeout=self._config.extraction.timeout_seconds,
            )
        except anthropic.RateLimitError as e:
            await self._fail(request, model_name, messages, start_time, f"Rate limited after SDK retries: {e}")
        except anthropic.APIConnectionError as e:
            await self._fail(
                request, model_name, messages, start_time, f"API connection error after SDK retries: {e}"
            )
        except anthropic.APIStatusError as e:
            # 4xx other than 429 will not succeed on retry
            await self._fail(
                request,
                model_name,
                messages,
                start_time,
                f"API status error {e.status_code}: {e.message}",
                retryable=e.status_code >= 500,
            )

        duration_ms = int((time.monotonic() - start_time) * 1000)
        tool_call = _extract_tool_call(api_response)
        if tool_call is None:
            error = "No tool call in response (unexpected with forced tool_choice)"
            await self._log_request(model_name, messages, api_response, None, duration_ms, request, error)
            raise ExtractionUnavailable(
                f"Extraction for thread {request.thread_id} returned no tool call.",
                thread_id=request.thread_id,
            )

        items = tool_call.get("items")
        if not isinstance(items, list):
            error = f"Tool call 'items' is {type(items).__name__}, expected list"
            await self._log_request(model_name, messages, api_response, tool_call, duration_ms, request, error)
            raise ExtractionUnavailable(
                f"Extraction for thread {request.thread_id} returned malformed output: {error}",
                thread_id=request.thread_id,
            )

        await self._log_request(model_name, messages, api_response, tool_call, duration_ms, request)
        logger.debug(
            "extraction_response",
            thread_id=request.thread_id,
            raw_items=len(items),
            duration_ms=duration_ms,
        )
        return [item for item in items if isinstance(item, dict)]

    async def _fail(
        self,
        request: ExtractionRequest,
        model: str,
        messages: list[dict[str, Any]],
        start_time: float,
        error: str,
        retryable: bool = True,
    ) -> None:
        duration_ms = int((time.monotonic() - start_time) * 1000)
        logger.error("extraction_api_error", thread_id=request.thread_id, error=error)
        await self._log_request(model, messages, None, None, duration_ms, request, error)
        raise ExtractionUnavailable(
            f"Extraction for thread {request.thread_id} failed: {error}",
            thread_id=request.thread_id,
            retryable=retryable,
        )

    async def _log_request(
        self,
        model: str,
        messages: list[dict[str, Any]],
        response: anthropic.types.Message | None,
        tool_call: dict[str, Any] | None,
        duration_ms: int,
        request: ExtractionRequest,
        error: str | None = None,
    ) -> None:
        """Log an LLM request to the database if LLM logging is enabled."""
        if not self._config.llm_logging.enabled:
            return

        try:
            prompt_data: dict[str, Any] = {"messages": messages}
            if self._config.llm_logging.log_prompts:
                prompt_data["system"] = self._prompts.build_system_prompt()

            response_data: dict[str, Any] | None = None
            input_tokens: int | None = None
            output_tokens: int | None = None

            if response is not None and self._config.llm_logging.log_responses:
                response_data = {
                    "id": response.id,
                    "model": response.model,
                    "stop_reason": response.stop_reason,
                    "content": [_content_block_to_dict(block) for block in response.content],
                }
                input_tokens = response.usage.input_tokens
                output_tokens = response.usage.output_tokens

            await self._store.log_llm_request(
                task_type="extraction",
                model=model,
                prompt=prompt_data,
                response=response_data,
                tool_call=tool_call,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                duration_ms=duration_ms,
                thread_id=request.thread_id,
                error=error,
            )
        except Exception as e:
            # Logging failures never block extraction
            logger.warning("llm_log_failed", error=str(e), thread_id=request.thread_id)


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------


def _extract_tool_call(response: anthropic.types.Message) -> dict[str, Any] | None:
    for block in response.content:
        if block.type == "tool_use" and block.name == EXTRACT_ITEMS_TOOL["name"]:
            return block.input
    return None


def _content_block_to_dict(block: Any) -> dict[str, Any]:
    """Convert an Anthropic content block to a serializable dict."""
    if block.type == "text":
        return {"type": "text", "text": block.text}
    if block.type == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    return {"type": block.type}
