"""Pydantic DTOs for the agent runtime.

These models define the data contract between the loop, its
collaborators (model client, tool executor, verifier, store) and the
observers of the progress feed.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(UTC)


class Role(StrEnum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ToolCall(BaseModel):
    """A named, argument-carrying request to invoke a tool."""

    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)
    id: str | None = None  # correlation id, when the model provides one


class ToolResult(BaseModel):
    content: str = ""
    is_error: bool = False
    tool_call_id: str | None = None

    @property
    def success(self) -> bool:
        return not self.is_error


class ToolDefinition(BaseModel):
    name: str
    description: str = ""
    input_schema: dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_api(self) -> dict[str, Any]:
        """Anthropic Messages API tool format."""
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ConversationEntry(BaseModel):
    """A single turn of the working conversation.

    ``internal`` marks loop-generated corrective turns (nudges, verifier
    feedback) that the model must see but observers should not.
    """

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str = ""
    tool_calls: list[ToolCall] | None = None
    tool_results: list[ToolResult] | None = None
    internal: bool = False
    timestamp: datetime = Field(default_factory=_now)


class SessionSnapshot(BaseModel):
    """Per-session configuration captured at creation time."""

    model_config = ConfigDict(frozen=True)

    provider: str = "anthropic"
    model: str = ""
    allowed_tools: tuple[str, ...] | None = None  # None = every registered tool
    guidelines: str = ""
    system_prompt: str | None = None


# ---------------------------------------------------------------------------
# Progress feed
# ---------------------------------------------------------------------------


class StepType(StrEnum):
    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_APPROVAL = "tool_approval"
    VERIFICATION = "verification"
    COMPLETION = "completion"


class StepStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    AWAITING_APPROVAL = "awaiting_approval"
    COMPLETED = "completed"
    ERROR = "error"


class ProgressStep(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"step_{uuid4().hex[:12]}")
    type: StepType
    title: str
    description: str = ""
    status: StepStatus = StepStatus.IN_PROGRESS
    llm_content: str | None = None
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    timestamp: datetime = Field(default_factory=_now)


class RetryInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    attempt: int
    max_attempts: int
    delay_seconds: float
    reason: str
    tool_name: str | None = None  # None = model call retry


class PendingApproval(BaseModel):
    model_config = ConfigDict(frozen=True)

    approval_id: str
    tool_name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class StreamingContent(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    is_streaming: bool = True


class ContextInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    estimated_tokens: int
    max_tokens: int


class TerminalState(StrEnum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    FORCED_INCOMPLETE = "forced_incomplete"
    MAX_ITERATIONS = "max_iterations"


class ProgressEvent(BaseModel):
    """Immutable snapshot handed to the broadcaster."""

    model_config = ConfigDict(frozen=True)

    session_id: str
    conversation_id: str | None = None
    iteration: int = 0
    max_iterations: int = 0
    steps: tuple[ProgressStep, ...] = ()
    is_complete: bool = False
    final_content: str | None = None
    streaming: StreamingContent | None = None
    pending_approval: PendingApproval | None = None
    retry: RetryInfo | None = None
    context: ContextInfo | None = None
    conversation: tuple[ConversationEntry, ...] = ()
    terminal_state: TerminalState | None = None
    timestamp: datetime = Field(default_factory=_now)

    @property
    def error_step_ids(self) -> frozenset[str]:
        return frozenset(step.id for step in self.steps if step.status == StepStatus.ERROR)


# ---------------------------------------------------------------------------
# Collaborator results
# ---------------------------------------------------------------------------


class ModelResponse(BaseModel):
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    needs_more_work: bool | None = None  # False = model explicitly signals completion


class VerificationResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    is_complete: bool = Field(validation_alias=AliasChoices("is_complete", "isComplete"))
    missing_items: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("missing_items", "missingItems"),
    )
    reason: str = ""
    confidence: float = Field(0.0, ge=0.0, le=1.0)


class ContextWindow(BaseModel):
    messages: list[dict[str, Any]]
    estimated_tokens: int
    max_tokens: int


class ToolExecutionResult(BaseModel):
    """A tool call paired with its final outcome."""

    tool_call: ToolCall
    result: ToolResult
    retry_count: int = 0
    cancelled: bool = False


class ToolBatchResult(BaseModel):
    results: list[ToolExecutionResult] = Field(default_factory=list)
    cancelled: bool = False


class AgentResult(BaseModel):
    content: str
    conversation: list[ConversationEntry]
    total_iterations: int
    terminal_state: TerminalState
