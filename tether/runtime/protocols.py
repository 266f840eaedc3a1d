"""Structural interfaces for the collaborators the agent loop consumes.

Any object with matching methods satisfies these; the runtime never
imports concrete implementations.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any, Protocol, runtime_checkable

from tether.runtime.schemas import (
    ContextWindow,
    ModelResponse,
    RetryInfo,
    ToolCall,
    ToolDefinition,
    ToolResult,
    VerificationResult,
)

ToolProgressCallback = Callable[[str], None]
RetryCallback = Callable[[RetryInfo], None]


class EmptyResponseError(Exception):
    """The model returned neither text nor tool calls."""


@runtime_checkable
class ModelClient(Protocol):
    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        on_retry: RetryCallback | None = None,
    ) -> ModelResponse: ...


@runtime_checkable
class StreamingModelClient(ModelClient, Protocol):
    def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[str]: ...


@runtime_checkable
class ToolExecutor(Protocol):
    async def execute(
        self,
        tool_call: ToolCall,
        on_progress: ToolProgressCallback | None = None,
    ) -> ToolResult: ...


@runtime_checkable
class ContextShrinker(Protocol):
    async def shrink(
        self,
        messages: list[dict[str, Any]],
        available_tools: list[ToolDefinition],
    ) -> ContextWindow: ...


@runtime_checkable
class Verifier(Protocol):
    async def verify(self, messages: list[dict[str, Any]]) -> VerificationResult: ...


@runtime_checkable
class ConversationStore(Protocol):
    async def append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        tool_calls: list[ToolCall] | None = None,
        tool_results: list[ToolResult] | None = None,
    ) -> None: ...
