"""Token-budget context shrinking.

Estimates tokens as chars/4 (same rough estimate used everywhere else in
the runtime). Shrinking happens in two passes: oversized tool-result
turns are truncated first, then the oldest middle turns are dropped.
The system prompt, the first user request and the most recent turns
are always kept.
"""

from __future__ import annotations

import logging
from typing import Any

from tether.runtime.prompts import TOOL_RESULTS_HEADER
from tether.runtime.schemas import ContextWindow, ToolDefinition

logger = logging.getLogger(__name__)

KEEP_RECENT = 4
MAX_TOOL_RESULT_CHARS = 8000
_TRUNCATION_MARKER = "\n... [output truncated to fit context]"


def estimate_tokens(text: str) -> int:
    return len(text) // 4


def estimate_messages_tokens(messages: list[dict[str, Any]], tools: list[ToolDefinition] | None = None) -> int:
    total = sum(estimate_tokens(str(m.get("content", ""))) + 4 for m in messages)
    for t in tools or ():
        total += estimate_tokens(t.name + t.description + str(t.input_schema))
    return total


class TokenBudgetShrinker:
    def __init__(self, max_tokens: int = 64000, keep_recent: int = KEEP_RECENT) -> None:
        self._max_tokens = max_tokens
        self._keep_recent = keep_recent

    async def shrink(self, messages: list[dict[str, Any]], available_tools: list[ToolDefinition]) -> ContextWindow:
        messages = [dict(m) for m in messages]
        estimate = estimate_messages_tokens(messages, available_tools)
        if estimate <= self._max_tokens:
            return ContextWindow(messages=messages, estimated_tokens=estimate, max_tokens=self._max_tokens)

        # Pass 1: truncate long tool output
        for m in messages:
            content = m.get("content")
            if (
                isinstance(content, str)
                and content.startswith(TOOL_RESULTS_HEADER)
                and len(content) > MAX_TOOL_RESULT_CHARS
            ):
                m["content"] = content[:MAX_TOOL_RESULT_CHARS] + _TRUNCATION_MARKER
        estimate = estimate_messages_tokens(messages, available_tools)

        # Pass 2: drop oldest middle turns
        dropped = 0
        head = self._protected_head(messages)
        while estimate > self._max_tokens and len(messages) > head + self._keep_recent:
            messages.pop(head)
            dropped += 1
            estimate = estimate_messages_tokens(messages, available_tools)

        if dropped:
            logger.info("Context shrunk: dropped %d message(s), ~%d tokens", dropped, estimate)
        return ContextWindow(messages=messages, estimated_tokens=estimate, max_tokens=self._max_tokens)

    @staticmethod
    def _protected_head(messages: list[dict[str, Any]]) -> int:
        """Number of leading messages never dropped: system + first user turn."""
        head = 0
        if messages and messages[0].get("role") == "system":
            head = 1
        if len(messages) > head and messages[head].get("role") == "user":
            head += 1
        return head
