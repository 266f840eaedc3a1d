"""Shared fixtures: settings, scripted collaborators and a progress collector.

No network and no external database: the model, tools and verifier are
scripted fakes, persistence uses SQLite via aiosqlite.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio

from tether.config import Settings
from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.loop import AgentLoop
from tether.runtime.protocols import EmptyResponseError
from tether.runtime.schemas import (
    ModelResponse,
    ProgressEvent,
    ToolCall,
    ToolDefinition,
    ToolResult,
    VerificationResult,
)
from tether.runtime.sessions import SessionRegistry

# ---------------------------------------------------------------------------
# Scripted model
# ---------------------------------------------------------------------------


@dataclass
class ModelCall:
    messages: list[dict[str, Any]]
    tools: list[ToolDefinition] | None


class FakeModel:
    """Replays a script of responses; the last item repeats once exhausted.

    Items may be a ModelResponse, a plain string (text-only response) or
    an exception instance to raise.
    """

    def __init__(self, *script: Any) -> None:
        self.script = list(script)
        self.calls: list[ModelCall] = []

    async def call(self, messages, tools=None, on_retry=None) -> ModelResponse:
        self.calls.append(ModelCall(messages=list(messages), tools=list(tools) if tools else None))
        index = min(len(self.calls) - 1, len(self.script) - 1)
        item = self.script[index]
        if isinstance(item, BaseException):
            raise item
        if isinstance(item, str):
            if not item:
                raise EmptyResponseError("Empty response from model")
            return ModelResponse(content=item)
        return item

    def user_messages(self, call_index: int) -> list[str]:
        return [m["content"] for m in self.calls[call_index].messages if m["role"] == "user"]


def tool_call(name: str, call_id: str | None = None, **arguments: Any) -> ModelResponse:
    """A model response that only requests one tool call."""
    return ModelResponse(tool_calls=[ToolCall(name=name, arguments=arguments, id=call_id)])


# ---------------------------------------------------------------------------
# Scripted tools
# ---------------------------------------------------------------------------


class FakeTools:
    """Tool executor with per-tool handlers.

    A handler is either a ToolResult / string returned as-is, a list of
    them consumed one per call, or an async callable taking the ToolCall.
    """

    def __init__(self, **handlers: Any) -> None:
        self.handlers = handlers
        self.calls: list[ToolCall] = []

    async def execute(self, tool_call: ToolCall, on_progress=None) -> ToolResult:
        self.calls.append(tool_call)
        handler = self.handlers.get(tool_call.name)
        if handler is None:
            return ToolResult(content=f"Unknown tool: {tool_call.name}", is_error=True)
        if isinstance(handler, list):
            handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if callable(handler):
            handler = await handler(tool_call)
        if isinstance(handler, str):
            return ToolResult(content=handler)
        return handler

    def definitions(self) -> list[ToolDefinition]:
        return [ToolDefinition(name=name, description=f"{name} tool") for name in self.handlers]

    def count(self, name: str) -> int:
        return sum(1 for c in self.calls if c.name == name)


def tool_error(text: str) -> ToolResult:
    return ToolResult(content=text, is_error=True)


# ---------------------------------------------------------------------------
# Scripted verifier
# ---------------------------------------------------------------------------


class FakeVerifier:
    """Returns verdicts in order; the last one repeats."""

    def __init__(self, *verdicts: VerificationResult | BaseException) -> None:
        self.verdicts = list(verdicts)
        self.calls = 0

    async def verify(self, messages) -> VerificationResult:
        self.calls += 1
        item = self.verdicts[min(self.calls - 1, len(self.verdicts) - 1)]
        if isinstance(item, BaseException):
            raise item
        return item


def verdict(complete: bool, *missing: str, reason: str = "") -> VerificationResult:
    return VerificationResult(is_complete=complete, missing_items=list(missing), reason=reason, confidence=0.9)


# ---------------------------------------------------------------------------
# Registry / broadcaster helpers
# ---------------------------------------------------------------------------


class CountingRegistry(SessionRegistry):
    """SessionRegistry that counts cleanup() calls per session."""

    def __init__(self, processes=None) -> None:
        super().__init__(processes)
        self.cleanups: dict[str, int] = {}

    def cleanup(self, session_id: str) -> None:
        self.cleanups[session_id] = self.cleanups.get(session_id, 0) + 1
        super().cleanup(session_id)


class Collector:
    """Progress observer that records every delivered event."""

    def __init__(self) -> None:
        self.events: list[ProgressEvent] = []

    async def __call__(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def terminal(self) -> list[ProgressEvent]:
        return [e for e in self.events if e.is_complete]


class RecordingSleep:
    """Injected sleep that records requested delays and returns at once."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        persistence_enabled=False,
        stream_progress=False,
        database_url="sqlite+aiosqlite:///:memory:",
        anthropic_api_key="sk-ant-test-key",
        max_iterations=10,
    )


@pytest.fixture
def registry() -> CountingRegistry:
    return CountingRegistry()


@pytest.fixture
def broadcaster(registry) -> ProgressBroadcaster:
    return ProgressBroadcaster(registry, window_ms=150)


@pytest_asyncio.fixture
async def collector(broadcaster) -> Collector:
    c = Collector()
    broadcaster.subscribe(c)
    return c


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_loop(settings, registry, broadcaster, recording_sleep):
    """Factory for an AgentLoop wired to the shared registry and broadcaster."""

    def _make(model, tools, *, verifier=None, settings_overrides=None, **kwargs) -> AgentLoop:
        s = settings.model_copy(update=settings_overrides or {})
        return AgentLoop(
            model,
            tools,
            registry=registry,
            broadcaster=broadcaster,
            settings=s,
            verifier=verifier,
            sleep=recording_sleep,
            **kwargs,
        )

    return _make
