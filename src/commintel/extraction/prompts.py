"""Prompt assembly for thread extraction.

Builds the system prompt, the user message and the forced-tool schema sent
to Claude. The tool schema is deliberately permissive about values (dates
are plain strings, confidence is an enum without case constraints); the
orchestrator validates every candidate before anything is persisted.

Usage:
    from commintel.extraction.prompts import EXTRACT_ITEMS_TOOL, PromptAssembler

    assembler = PromptAssembler(body_max_length=4000)
    user_message = assembler.build_user_message(request)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from commintel.extraction.claude_extractor import ExtractionRequest
    from commintel.extraction.models import Message

# ---------------------------------------------------------------------------
# Tool definition
# ---------------------------------------------------------------------------

EXTRACT_ITEMS_TOOL: dict[str, Any] = {
    "name": "record_extracted_items",
    "description": (
        "Record every deadline, commitment and action item found in the new messages "
        "of a legal matter's communication thread"
    ),
    "input_schema": {
        "type": "object",
        "properties": {
            "items": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "type": {
                            "type": "string",
                            "enum": ["deadline", "commitment", "action_item"],
                        },
                        "source_message_id": {
                            "type": "string",
                            "description": "Id of the message the item was found in",
                        },
                        "confidence": {
                            "type": "string",
                            "enum": ["Low", "Medium", "High"],
                        },
                        "description": {
                            "type": "string",
                            "description": "Deadline or action item text",
                        },
                        "due_date": {
                            "type": ["string", "null"],
                            "description": "Deadline due date, ISO-8601",
                        },
                        "party": {
                            "type": ["string", "null"],
                            "description": "Email address of the participant who made the commitment",
                        },
                        "commitment_text": {
                            "type": ["string", "null"],
                            "description": "What the party committed to",
                        },
                        "date": {
                            "type": ["string", "null"],
                            "description": "Date the commitment is due, ISO-8601, if stated",
                        },
                        "priority": {
                            "type": ["string", "null"],
                            "description": "Action item priority: Low, Medium, High or Urgent",
                        },
                        "suggested_assignee": {
                            "type": ["string", "null"],
                            "description": "Who should do the action item, if clear",
                        },
                    },
                    "required": ["type", "source_message_id", "confidence"],
                },
            },
        },
        "required": ["items"],
    },
}

SYSTEM_PROMPT = """\
You are a legal practice assistant. You read email threads between lawyers, \
clients and opposing counsel and identify three kinds of items:

- deadline: a date by which something must be filed, served or delivered
- commitment: a promise made by one named participant to do something
- action_item: a concrete task someone on the matter needs to do

Rules:
- Only report items stated or clearly implied in the NEW messages.
- Earlier messages are context only. Do not report items from them.
- source_message_id must be the id of the new message containing the item.
- A commitment's party must be the email address of a thread participant.
- Use ISO-8601 dates. Resolve relative dates against the message's sent date.
- confidence is High when the text is explicit, Medium when inferred, Low when unsure.
- Report nothing rather than guess. An empty list is a valid answer.
"""


class PromptAssembler:
    """Renders an ExtractionRequest into the Claude user message.

    Attributes:
        body_max_length: Per-message body character cap
    """

    def __init__(self, body_max_length: int = 4000):
        self.body_max_length = body_max_length

    def build_system_prompt(self) -> str:
        return SYSTEM_PROMPT

    def build_user_message(self, request: ExtractionRequest) -> str:
        """Build the user message: thread header, context messages, new messages."""
        lines = [
            f"Thread: {request.thread_id}",
            f"Subject: {request.subject or '(no subject)'}",
            f"Participants: {', '.join(sorted(request.participants)) or '(none)'}",
            "",
        ]
        if request.context_messages:
            lines.append("=== EARLIER MESSAGES (context only) ===")
            lines.extend(self._render(m) for m in request.context_messages)
            lines.append("")
        lines.append("=== NEW MESSAGES ===")
        lines.extend(self._render(m) for m in request.new_messages)
        return "\n".join(lines)

    def _render(self, message: Message) -> str:
        body = message.body
        if len(body) > self.body_max_length:
            body = body[: self.body_max_length] + " [...]"
        header = (
            f"--- message {message.id} | from {message.sender} | "
            f"to {', '.join(message.recipients) or '-'} | sent {message.sent_date.isoformat()}"
        )
        if message.attachments:
            header += f" | attachments: {', '.join(message.attachments)}"
        return f"{header}\n{body}\n"
