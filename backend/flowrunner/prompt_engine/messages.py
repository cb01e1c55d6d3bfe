"""Provider-agnostic chat messages and flow validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from flowrunner.errors import PromptEngineError

logger = logging.getLogger("flowrunner.prompt_engine.messages")

VALID_ROLES = ("system", "user", "assistant")


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def validate_flow(messages: list[Message]) -> list[str]:
    """Non-fatal warnings about an unusual conversation shape."""
    warnings: list[str] = []
    if not messages:
        return warnings
    if messages[0].role != "system":
        warnings.append("First message is not a system message")
    if sum(1 for m in messages if m.role == "system") > 1:
        warnings.append("Multiple system messages found")
    for prev, cur in zip(messages, messages[1:]):
        if prev.role == cur.role and cur.role != "system":
            warnings.append(f"Consecutive {cur.role} messages")
            break
    if not any(m.role == "user" for m in messages):
        warnings.append("No user message found")
    elif messages[-1].role != "user":
        warnings.append("Conversation does not end with a user message")
    return warnings


def format_messages(segments: Iterable[dict[str, Any]]) -> list[Message]:
    """Turn ``{role, content}`` segments into :class:`Message` objects.

    Raises:
        PromptEngineError: ``VALIDATION_FAILED`` on an empty list, an unknown
            role or missing content.
    """
    segments = list(segments)
    if not segments:
        raise PromptEngineError("VALIDATION_FAILED", "No segments provided for formatting")

    messages: list[Message] = []
    for index, segment in enumerate(segments):
        role = segment.get("role")
        content = segment.get("content")
        if role not in VALID_ROLES:
            raise PromptEngineError(
                "VALIDATION_FAILED", f"Invalid role {role!r} at segment {index}",
                {"index": index, "role": role},
            )
        if content is None:
            raise PromptEngineError("VALIDATION_FAILED", f"Missing content at segment {index}", {"index": index})
        messages.append(Message(role=role, content=str(content)))

    for warning in validate_flow(messages):
        logger.warning("Message flow: %s", warning)
    return messages
