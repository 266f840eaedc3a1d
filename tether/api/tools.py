"""Tool dispatcher: the tool-executor capability consumed by the agent loop.

Handlers are async callables taking the tool arguments as keyword
arguments. They may return plain text or an MCP-format response
({"content": [{"type": "text", "text": "..."}], "isError": bool}).
Handlers that declare an ``on_progress`` parameter receive the progress
callback.
"""

from __future__ import annotations

import inspect
import logging
from collections.abc import Callable
from typing import Any

from tether.runtime.protocols import ToolProgressCallback
from tether.runtime.schemas import ToolCall, ToolDefinition, ToolResult

logger = logging.getLogger(__name__)


def _extract_text(result: Any) -> tuple[str, bool]:
    """Return (text, is_error) from a handler result."""
    if isinstance(result, str):
        return result, False
    if isinstance(result, dict):
        blocks = result.get("content") or []
        text = "\n".join(b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type") == "text")
        return text, bool(result.get("isError", False))
    return str(result), False


class ToolDispatcher:
    """Registers tool handlers and executes tool calls."""

    def __init__(self) -> None:
        self._handlers: dict[str, Callable[..., Any]] = {}
        self._schemas: dict[str, dict[str, Any]] = {}
        self._wants_progress: set[str] = set()

    def register(self, name: str, handler: Callable[..., Any], schema: dict[str, Any]) -> None:
        """Register a tool handler with its JSON schema."""
        self._handlers[name] = handler
        self._schemas[name] = schema
        if "on_progress" in inspect.signature(handler).parameters:
            self._wants_progress.add(name)

    async def execute(self, tool_call: ToolCall, on_progress: ToolProgressCallback | None = None) -> ToolResult:
        handler = self._handlers.get(tool_call.name)
        if not handler:
            return ToolResult(content=f"Unknown tool: {tool_call.name}", is_error=True, tool_call_id=tool_call.id)

        kwargs = dict(tool_call.arguments)
        if tool_call.name in self._wants_progress:
            kwargs["on_progress"] = on_progress
        try:
            text, is_error = _extract_text(await handler(**kwargs))
        except TypeError as e:
            # Bad arguments from the model; not retryable
            return ToolResult(content=f"Invalid arguments for {tool_call.name}: {e}", is_error=True, tool_call_id=tool_call.id)
        except Exception as e:
            logger.exception("Tool dispatch error for %s", tool_call.name)
            return ToolResult(content=f"Tool error: {e}", is_error=True, tool_call_id=tool_call.id)
        return ToolResult(content=text, is_error=is_error, tool_call_id=tool_call.id)

    def tool_definitions(self, allowed: set[str] | None = None) -> list[ToolDefinition]:
        """All registered tools (optionally filtered) as ToolDefinitions."""
        return [
            ToolDefinition(name=name, description=schema.get("description", ""), input_schema=schema)
            for name, schema in self._schemas.items()
            if allowed is None or name in allowed
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._handlers
