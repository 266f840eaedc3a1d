"""Prompt assembly: system prompt, tool listing and message formatting."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from tether.runtime.schemas import (
    ConversationEntry,
    Role,
    SessionSnapshot,
    ToolDefinition,
    ToolExecutionResult,
)

NO_OUTPUT = "[No output]"
TOOL_RESULTS_HEADER = "Tool execution results:"

BASE_SYSTEM_PROMPT = """You are an autonomous agent that completes the user's request by calling tools.

Work in steps:
- Call tools through the tool-calling interface whenever you need information or need to act.
- Several independent tool calls may be issued in one response.
- When a tool fails, read the error and adapt: retry with different arguments, use another tool, or explain the blocker.
- When the work is done, reply with the complete final answer. Do not reply with a plan or a status update."""


def build_system_prompt(snapshot: SessionSnapshot, tools: Sequence[ToolDefinition]) -> str:
    """Base instructions + session guidelines + the current tool listing.

    Rebuilt whenever the active tool set changes so excluded tools are
    no longer offered.
    """
    parts = [snapshot.system_prompt or BASE_SYSTEM_PROMPT]

    if snapshot.guidelines.strip():
        parts.append(f"## Guidelines\n{snapshot.guidelines.strip()}")

    if tools:
        listing = "\n".join(
            f"- {t.name}: {t.description}" if t.description else f"- {t.name}" for t in tools
        )
        parts.append(f"## Available tools\n{listing}")
    else:
        parts.append("## Available tools\nNo tools are available. Answer directly.")

    return "\n\n".join(parts)


def format_messages(system_prompt: str, conversation: Sequence[ConversationEntry]) -> list[dict[str, Any]]:
    """Map the working conversation to role/content messages for the model.

    Tool turns become user turns prefixed with a results header. Assistant
    turns that only carried tool calls get a bracketed placeholder so the
    transcript never has an empty assistant message.
    """
    messages: list[dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for entry in conversation:
        if entry.role == Role.TOOL:
            messages.append({"role": "user", "content": f"{TOOL_RESULTS_HEADER}\n{entry.content}"})
            continue
        content = entry.content
        if entry.role == Role.ASSISTANT and not content.strip():
            if entry.tool_calls:
                names = ", ".join(c.name for c in entry.tool_calls)
                content = f"[Calling tools: {names}]"
            else:
                content = "[Processing...]"
        messages.append({"role": entry.role.value, "content": content})
    return messages


def format_tool_results(results: Sequence[ToolExecutionResult]) -> str:
    """Body of the tool-result turn: one block per call, in call order."""
    blocks = []
    for r in results:
        text = r.result.content.strip()
        if r.result.is_error:
            note = f"[{r.tool_call.name}] ERROR: {text or 'Tool failed without an error message'}"
            if r.retry_count:
                note += f" (after {r.retry_count} retr{'y' if r.retry_count == 1 else 'ies'})"
            blocks.append(note)
        else:
            blocks.append(f"[{r.tool_call.name}] {text or NO_OUTPUT}")
    return "\n\n".join(blocks)
