"""Agent loop controller.

Drives one session from a user request to a terminal state:

  check stop -> assemble + shrink prompt -> call model
    -> no tool calls: verification gate (accept / correct / force incomplete)
    -> tool calls: record turn, execute batch, append results, track failures

bounded by max_iterations. Every exit path (completed, aborted, forced
incomplete, max iterations, error) leaves an assistant turn with the
user-visible text at the end of the conversation, emits one terminal
progress event and cleans up the session exactly once.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections import Counter
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from tether.background import BackgroundWorker
from tether.config import Settings
from tether.runtime.approvals import ApprovalManager
from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.context import estimate_messages_tokens
from tether.runtime.prompts import build_system_prompt, format_messages, format_tool_results
from tether.runtime.protocols import (
    ContextShrinker,
    ConversationStore,
    EmptyResponseError,
    ModelClient,
    StreamingModelClient,
    ToolExecutor,
    Verifier,
)
from tether.runtime.schemas import (
    AgentResult,
    ContextInfo,
    ContextWindow,
    ConversationEntry,
    ModelResponse,
    ProgressEvent,
    ProgressStep,
    RetryInfo,
    Role,
    SessionSnapshot,
    StepStatus,
    StepType,
    StreamingContent,
    TerminalState,
    ToolCall,
    ToolDefinition,
    ToolExecutionResult,
    ToolResult,
)
from tether.runtime.sessions import CancelToken, SessionRegistry, StopRequested, current_session_id
from tether.runtime.tool_execution import (
    ExecutionHooks,
    ToolExecutionEngine,
    analyze_tool_errors,
    base_tool_name,
)
from tether.runtime.verification import (
    CandidateKind,
    DeliverableHeuristics,
    GateDecision,
    VerificationGate,
    has_tool_markers,
    is_tool_call_placeholder,
    strip_tool_markup,
)

logger = logging.getLogger(__name__)

KILL_SWITCH_NOTE = "(Agent mode was stopped by emergency kill switch)"
ERROR_TEXT = "I encountered an error processing your request."
EMPTY_RESPONSES_TEXT = (
    "I wasn't able to get a usable response from the model after repeated empty responses. "
    "Please try again."
)
NO_PROGRESS_TEXT = (
    "I wasn't able to produce a complete answer: the model kept replying with status "
    "updates instead of results."
)
MAX_ITERATIONS_FALLBACK = "I couldn't complete the task within the allowed number of steps."
TOOL_FAILURE_NOTE = (
    "(Note: Task incomplete due to repeated tool failures. Please try again or use alternative methods.)"
)
ITERATION_LIMIT_NOTE = (
    "(Note: Task may not be fully complete - reached maximum iteration limit. "
    "The agent was still working on it.)"
)

EMPTY_RESPONSE_NUDGE = "Your previous response was empty. Please retry or summarize your progress so far."
NATIVE_TOOLS_NUDGE = (
    "Please use the native tool-calling interface to call the tools directly, "
    "rather than describing them in text."
)
NO_PROGRESS_NUDGE = (
    "You have not made progress for several turns. Either call a tool now or reply "
    "with your complete final answer."
)
WRAP_UP_INSTRUCTION = (
    "Some tools failed with permission or authentication errors that retrying will not fix. "
    "Wrap up: tell the user what was completed, what could not be done and why."
)
SUMMARY_REQUEST = (
    "Provide a complete final answer to the original request, summarizing the results "
    "of the tool calls above."
)

_AUTH_ERROR_RE = re.compile(
    r"permission|unauthori[sz]ed|forbidden|authenticat|access denied|\b401\b|\b403\b",
    re.IGNORECASE,
)


def is_auth_error(text: str) -> bool:
    return bool(_AUTH_ERROR_RE.search(text))


def _preview(text: str, limit: int = 100) -> str:
    return text if len(text) <= limit else text[:limit] + "..."


@dataclass
class _RunState:
    session_id: str
    conversation_id: str | None
    max_iterations: int
    snapshot: SessionSnapshot
    token: CancelToken
    gate: VerificationGate
    available_tools: list[ToolDefinition]
    active_tools: list[ToolDefinition] = field(default_factory=list)
    system_prompt: str = ""
    conversation: list[ConversationEntry] = field(default_factory=list)
    steps: list[ProgressStep] = field(default_factory=list)
    iteration: int = 0
    context: ContextInfo | None = None
    tool_failures: Counter[str] = field(default_factory=Counter)
    excluded_tools: set[str] = field(default_factory=set)
    tools_used: bool = False
    last_batch_failed: bool = False
    empty_responses: int = 0
    no_progress: int = 0
    nudges: int = 0


class AgentLoop:
    """Runs agent sessions against injected collaborators.

    One instance serves many concurrent sessions; all per-run state lives
    in a _RunState owned by the run() call.
    """

    def __init__(
        self,
        model: ModelClient,
        tools: ToolExecutor,
        *,
        registry: SessionRegistry,
        broadcaster: ProgressBroadcaster,
        settings: Settings | None = None,
        shrinker: ContextShrinker | None = None,
        verifier: Verifier | None = None,
        store: ConversationStore | None = None,
        background: BackgroundWorker | None = None,
        approvals: ApprovalManager | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._model = model
        self._tools = tools
        self._registry = registry
        self._broadcaster = broadcaster
        self._settings = settings or Settings()
        self._shrinker = shrinker
        self._verifier = verifier
        self._store = store
        self._background = background or (BackgroundWorker() if store is not None else None)
        self._approvals = approvals
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        request: str,
        *,
        session_id: str | None = None,
        conversation_id: str | None = None,
        history: Sequence[ConversationEntry] = (),
        available_tools: Sequence[ToolDefinition] = (),
        snapshot: SessionSnapshot | None = None,
        max_iterations: int | None = None,
    ) -> AgentResult:
        settings = self._settings
        session_id = session_id or f"sess_{uuid4().hex[:12]}"
        session = self._registry.create(
            session_id,
            snapshot or SessionSnapshot(model=settings.model),
            conversation_id,
        )
        self._broadcaster.begin(session_id)

        snap = session.snapshot
        tools = [t for t in available_tools if snap.allowed_tools is None or t.name in snap.allowed_tools]
        state = _RunState(
            session_id=session_id,
            conversation_id=conversation_id,
            max_iterations=max_iterations or settings.max_iterations,
            snapshot=snap,
            token=session.token,
            gate=VerificationGate(
                self._verifier,
                max_failures=settings.max_verification_failures,
                max_attempts=settings.verifier_max_attempts,
                timeout=settings.verifier_timeout,
                tool_nudge_after=settings.tool_nudge_after_failures,
                heuristics=DeliverableHeuristics(
                    min_chars=settings.deliverable_min_chars,
                    status_update_max_chars=settings.status_update_max_chars,
                ),
                enabled=settings.verification_enabled,
            ),
            available_tools=tools,
            active_tools=list(tools),
            conversation=list(history),
        )
        state.system_prompt = build_system_prompt(snap, state.active_tools)

        ctx_token = current_session_id.set(session_id)
        logger.info("Agent run started: session=%s max_iterations=%d", session_id, state.max_iterations)
        try:
            try:
                return await self._iterate(state, request)
            except StopRequested:
                return self._finish_aborted(state)
        except Exception:
            logger.exception("Agent run failed: session=%s", session_id)
            self._finish_error(state)
            raise
        finally:
            current_session_id.reset(ctx_token)
            self._registry.cleanup(session_id)

    # ------------------------------------------------------------------
    # Iteration state machine
    # ------------------------------------------------------------------

    async def _iterate(self, state: _RunState, request: str) -> AgentResult:
        self._append(state, ConversationEntry(role=Role.USER, content=request))
        self._emit(state)

        while state.iteration < state.max_iterations:
            state.token.raise_if_cancelled()
            state.iteration += 1
            self._registry.update_iteration(state.session_id, state.iteration)

            thinking = self._add_step(state, StepType.THINKING, "Analyzing request", "Processing with the model")
            self._emit(state)

            response = await self._call_model(state)
            state.token.raise_if_cancelled()

            if response is None:
                result = self._handle_empty(state, thinking.id)
            else:
                state.empty_responses = 0
                self._update_step(
                    state,
                    thinking.id,
                    status=StepStatus.COMPLETED,
                    title="Agent response",
                    description=_preview(response.content) if response.content else "Planning tool calls",
                    llm_content=response.content,
                )
                self._emit(state)
                if response.tool_calls:
                    result = await self._handle_tool_calls(state, response)
                else:
                    result = await self._handle_candidate(state, response.content)

            if result is not None:
                return result

        return self._finish_max_iterations(state)

    async def _call_model(self, state: _RunState, *, with_tools: bool = True) -> ModelResponse | None:
        """Assemble, shrink and send the prompt. None means an empty/invalid response."""
        messages = format_messages(state.system_prompt, state.conversation)
        tools = state.active_tools if with_tools else []
        window = await self._shrink(state, messages, tools)
        state.context = ContextInfo(estimated_tokens=window.estimated_tokens, max_tokens=window.max_tokens)
        state.token.raise_if_cancelled()

        def on_retry(info: RetryInfo) -> None:
            self._emit(state, retry=info)

        stream_task = None
        if with_tools and self._settings.stream_progress and isinstance(self._model, StreamingModelClient):
            stream_task = asyncio.create_task(self._pump_stream(state, self._model, window.messages, tools))
        try:
            response = await state.token.run(
                asyncio.wait_for(
                    self._model.call(window.messages, tools or None, on_retry=on_retry),
                    self._settings.model_timeout,
                )
            )
        except EmptyResponseError:
            return None
        except (StopRequested, asyncio.TimeoutError):
            raise
        except Exception as e:
            if "empty response" in str(e).lower():
                return None
            raise
        finally:
            if stream_task is not None:
                stream_task.cancel()
                await asyncio.gather(stream_task, return_exceptions=True)

        if not response.content.strip() and not response.tool_calls:
            return None
        return response

    async def _shrink(
        self,
        state: _RunState,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition],
    ) -> ContextWindow:
        if self._shrinker is None:
            estimate = estimate_messages_tokens(messages, tools)
            return ContextWindow(messages=messages, estimated_tokens=estimate, max_tokens=self._settings.context_max_tokens)
        return await state.token.run(self._shrinker.shrink(messages, tools))

    async def _pump_stream(
        self,
        state: _RunState,
        model: StreamingModelClient,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition],
    ) -> None:
        text = ""
        try:
            async for chunk in model.stream(messages, tools or None):
                text += chunk
                self._emit(state, streaming=StreamingContent(text=text))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Streaming preview failed (non-fatal): %s", e)

    def _handle_empty(self, state: _RunState, step_id: str) -> AgentResult | None:
        state.empty_responses += 1
        logger.warning(
            "Empty model response (%d/%d) in session %s",
            state.empty_responses,
            self._settings.max_empty_responses,
            state.session_id,
        )
        if state.empty_responses > self._settings.max_empty_responses:
            self._update_step(state, step_id, status=StepStatus.COMPLETED, description="Repeated empty responses")
            return self._finish(state, TerminalState.FORCED_INCOMPLETE, EMPTY_RESPONSES_TEXT)

        self._update_step(state, step_id, status=StepStatus.COMPLETED, description="Empty response, retrying")
        self._append(state, ConversationEntry(role=Role.USER, content=EMPTY_RESPONSE_NUDGE, internal=True))
        self._emit(state)
        return None

    # ------------------------------------------------------------------
    # Completion candidates
    # ------------------------------------------------------------------

    async def _handle_candidate(self, state: _RunState, content: str) -> AgentResult | None:
        if has_tool_markers(content):
            self._append(state, ConversationEntry(role=Role.ASSISTANT, content=strip_tool_markup(content)))
            self._append(state, ConversationEntry(role=Role.USER, content=NATIVE_TOOLS_NUDGE, internal=True))
            self._emit(state)
            return None

        self._append(state, ConversationEntry(role=Role.ASSISTANT, content=content))

        verify_step = None
        if state.gate.enabled and state.gate.classify(content) == CandidateKind.DELIVERABLE:
            verify_step = self._add_step(state, StepType.VERIFICATION, "Verifying completion")
            self._emit(state)

        outcome = await state.gate.evaluate(
            content,
            format_messages(state.system_prompt, state.conversation),
            tools_used_this_turn=state.tools_used,
            token=state.token,
        )
        state.token.raise_if_cancelled()

        if verify_step is not None:
            description = "Complete" if outcome.decision == GateDecision.ACCEPT else "Not complete yet"
            self._update_step(state, verify_step.id, status=StepStatus.COMPLETED, description=description)

        if outcome.decision == GateDecision.ACCEPT:
            return self._finish(state, TerminalState.COMPLETED, content, append=False)

        if outcome.decision == GateDecision.FORCE_INCOMPLETE:
            logger.info("Verification budget exhausted, forcing incomplete: session=%s", state.session_id)
            return self._finish(state, TerminalState.FORCED_INCOMPLETE, outcome.final_content or content)

        corrections = list(outcome.corrections)
        if outcome.decision == GateDecision.REJECT_NONDELIVERABLE:
            state.no_progress += 1
            if state.no_progress > self._settings.no_progress_threshold:
                if state.nudges >= self._settings.max_nudges:
                    return self._finish(state, TerminalState.FORCED_INCOMPLETE, self._no_progress_text(state))
                state.nudges += 1
                corrections.append(NO_PROGRESS_NUDGE)
        else:
            state.no_progress = 0

        self._append(state, ConversationEntry(role=Role.USER, content="\n\n".join(corrections), internal=True))
        self._emit(state)
        return None

    def _no_progress_text(self, state: _RunState) -> str:
        last = self._last_assistant_text(state, deliverable_only=True)
        return f"{last}\n\n{NO_PROGRESS_TEXT}" if last else NO_PROGRESS_TEXT

    # ------------------------------------------------------------------
    # Tool batches
    # ------------------------------------------------------------------

    async def _handle_tool_calls(self, state: _RunState, response: ModelResponse) -> AgentResult | None:
        settings = self._settings
        calls = response.tool_calls

        # Recorded before execution so partial progress survives an interruption
        self._append(state, ConversationEntry(role=Role.ASSISTANT, content=response.content, tool_calls=calls))
        step_ids = [
            self._add_step(
                state,
                StepType.TOOL_CALL,
                f"Executing {call.name}",
                "Waiting to run",
                status=StepStatus.PENDING,
                tool_call=call,
            ).id
            for call in calls
        ]
        self._emit(state)

        def on_start(index: int, call: ToolCall) -> None:
            self._update_step(state, step_ids[index], status=StepStatus.IN_PROGRESS, description="Running")
            self._emit(state)

        def on_progress(index: int, call: ToolCall, message: str) -> None:
            self._update_step(state, step_ids[index], description=_preview(message))
            self._emit(state)

        def on_retry(index: int, call: ToolCall, retry: int, delay: float, error: str) -> None:
            self._update_step(state, step_ids[index], description=f"Retrying in {delay:.0f}s ({retry}/{settings.tool_max_retries})")
            self._emit(
                state,
                retry=RetryInfo(
                    attempt=retry,
                    max_attempts=settings.tool_max_retries,
                    delay_seconds=delay,
                    reason=_preview(error, 200),
                    tool_name=call.name,
                ),
            )

        def on_complete(index: int, outcome: ToolExecutionResult) -> None:
            if outcome.cancelled:
                return
            self._update_step(
                state,
                step_ids[index],
                status=StepStatus.ERROR if outcome.result.is_error else StepStatus.COMPLETED,
                description=_preview(outcome.result.content) or "Done",
                tool_result=outcome.result,
            )
            self._emit(state)

        engine = ToolExecutionEngine(
            _RunExecutor(self, state),
            max_retries=settings.tool_max_retries,
            base_delay=settings.tool_retry_base_delay,
            parallel=settings.parallel_tool_execution,
            sleep=self._sleep,
        )
        batch = await engine.execute(
            calls,
            state.token,
            hooks=ExecutionHooks(on_start=on_start, on_progress=on_progress, on_retry=on_retry, on_complete=on_complete),
        )
        if batch.cancelled:
            raise StopRequested()
        state.tools_used = True
        # Running tools is progress
        state.no_progress = 0

        results = batch.results
        failed = [r for r in results if not r.result.success]
        body = format_tool_results(results)
        if failed:
            strategy, _ = analyze_tool_errors(failed)
            body = f"{body}\n\n{strategy}"
        self._append(
            state,
            ConversationEntry(role=Role.TOOL, content=body, tool_results=[r.result for r in results]),
        )
        state.last_batch_failed = bool(failed)

        self._track_failures(state, failed)
        if any(is_auth_error(r.result.content) for r in failed):
            self._append(state, ConversationEntry(role=Role.USER, content=WRAP_UP_INSTRUCTION, internal=True))
        self._emit(state)

        if response.needs_more_work is False and not failed:
            candidate = response.content
            if len(candidate.strip()) < settings.summary_min_chars:
                candidate = await self._request_summary(state, fallback=candidate)
            return await self._handle_candidate(state, candidate)
        return None

    def _track_failures(self, state: _RunState, failed: list[ToolExecutionResult]) -> None:
        threshold = self._settings.tool_failure_threshold
        newly_excluded = []
        for r in failed:
            name = r.tool_call.name
            if name in state.excluded_tools:
                continue
            state.tool_failures[name] += 1
            if state.tool_failures[name] >= threshold:
                state.excluded_tools.add(name)
                newly_excluded.append(name)

        if newly_excluded:
            logger.info(
                "Excluding tool(s) after %d failures: %s (session %s)",
                threshold,
                ", ".join(newly_excluded),
                state.session_id,
            )
            state.active_tools = [t for t in state.available_tools if t.name not in state.excluded_tools]
            state.system_prompt = build_system_prompt(state.snapshot, state.active_tools)

    async def _request_summary(self, state: _RunState, fallback: str) -> str:
        """One extra tool-less call asking for the final answer."""
        self._append(state, ConversationEntry(role=Role.USER, content=SUMMARY_REQUEST, internal=True))
        try:
            response = await self._call_model(state, with_tools=False)
        except (StopRequested, asyncio.CancelledError):
            raise
        except Exception as e:
            logger.warning("Summary request failed (non-fatal): %s", e)
            return fallback
        if response is None or not response.content.strip():
            return fallback
        return response.content

    async def _approve(self, state: _RunState, call: ToolCall) -> bool:
        assert self._approvals is not None
        approval, decision = self._approvals.request(state.session_id, call.name, call.arguments)
        step = self._add_step(
            state,
            StepType.TOOL_APPROVAL,
            f"Approve {call.name}?",
            status=StepStatus.AWAITING_APPROVAL,
            tool_call=call,
        )
        self._emit(state, pending_approval=approval)
        approved = await decision
        self._update_step(
            state,
            step.id,
            status=StepStatus.COMPLETED,
            description="Approved" if approved else "Denied",
        )
        self._emit(state)
        return approved

    # ------------------------------------------------------------------
    # Terminal states
    # ------------------------------------------------------------------

    def _finish(
        self,
        state: _RunState,
        terminal: TerminalState,
        content: str,
        *,
        append: bool = True,
    ) -> AgentResult:
        if append:
            self._append(state, ConversationEntry(role=Role.ASSISTANT, content=content))
        title = {
            TerminalState.COMPLETED: "Task completed",
            TerminalState.ABORTED: "Stopped",
            TerminalState.FORCED_INCOMPLETE: "Task incomplete",
            TerminalState.MAX_ITERATIONS: "Iteration limit reached",
        }[terminal]
        self._add_step(state, StepType.COMPLETION, title, _preview(content), status=StepStatus.COMPLETED)
        self._emit(state, is_complete=True, final_content=content, terminal_state=terminal)
        logger.info(
            "Agent run finished: session=%s state=%s iterations=%d",
            state.session_id,
            terminal.value,
            state.iteration,
        )
        return AgentResult(
            content=content,
            conversation=list(state.conversation),
            total_iterations=state.iteration,
            terminal_state=terminal,
        )

    def _finish_aborted(self, state: _RunState) -> AgentResult:
        partial = self._last_assistant_text(state, deliverable_only=True)
        content = f"{partial}\n\n{KILL_SWITCH_NOTE}" if partial else KILL_SWITCH_NOTE
        return self._finish(state, TerminalState.ABORTED, content)

    def _finish_max_iterations(self, state: _RunState) -> AgentResult:
        base = self._last_assistant_text(state, deliverable_only=True) or MAX_ITERATIONS_FALLBACK
        note = TOOL_FAILURE_NOTE if state.last_batch_failed else ITERATION_LIMIT_NOTE
        logger.warning("Max iterations (%d) reached: session=%s", state.max_iterations, state.session_id)
        return self._finish(state, TerminalState.MAX_ITERATIONS, f"{base}\n\n{note}")

    def _finish_error(self, state: _RunState) -> None:
        self._append(state, ConversationEntry(role=Role.ASSISTANT, content=ERROR_TEXT))
        self._add_step(state, StepType.COMPLETION, "Error", ERROR_TEXT, status=StepStatus.ERROR)
        self._emit(state, is_complete=True, final_content=ERROR_TEXT)

    @staticmethod
    def _last_assistant_text(state: _RunState, *, deliverable_only: bool = False) -> str:
        for entry in reversed(state.conversation):
            if entry.role != Role.ASSISTANT or not entry.content.strip():
                continue
            if deliverable_only and (
                is_tool_call_placeholder(entry.content)
                or state.gate.classify(entry.content) != CandidateKind.DELIVERABLE
            ):
                continue
            return entry.content
        return ""

    # ------------------------------------------------------------------
    # Conversation, steps and progress
    # ------------------------------------------------------------------

    def _append(self, state: _RunState, entry: ConversationEntry) -> None:
        state.conversation.append(entry)
        if entry.internal or self._store is None or not state.conversation_id:
            return
        assert self._background is not None
        self._background.submit(
            f"persist:{state.conversation_id}",
            self._store.append_message,
            state.conversation_id,
            entry.role.value,
            entry.content,
            entry.tool_calls,
            entry.tool_results,
        )

    @staticmethod
    def _add_step(
        state: _RunState,
        step_type: StepType,
        title: str,
        description: str = "",
        *,
        status: StepStatus = StepStatus.IN_PROGRESS,
        tool_call: ToolCall | None = None,
    ) -> ProgressStep:
        step = ProgressStep(type=step_type, title=title, description=description, status=status, tool_call=tool_call)
        state.steps.append(step)
        return step

    @staticmethod
    def _update_step(state: _RunState, step_id: str, **changes: Any) -> None:
        for i, step in enumerate(state.steps):
            if step.id == step_id:
                state.steps[i] = step.model_copy(update=changes)
                return

    def _emit(self, state: _RunState, **extra: Any) -> None:
        window = self._settings.progress_step_window
        self._broadcaster.emit(
            ProgressEvent(
                session_id=state.session_id,
                conversation_id=state.conversation_id,
                iteration=state.iteration,
                max_iterations=state.max_iterations,
                steps=tuple(state.steps[-window:]),
                context=state.context,
                conversation=tuple(e for e in state.conversation if not e.internal),
                **extra,
            )
        )


class _RunExecutor:
    """Per-run executor wrapper: excluded tools and human approval."""

    def __init__(self, loop: AgentLoop, state: _RunState) -> None:
        self._loop = loop
        self._state = state

    async def execute(self, tool_call: ToolCall, on_progress: Callable[[str], None] | None = None) -> ToolResult:
        state = self._state
        if tool_call.name in state.excluded_tools:
            return ToolResult(
                content=(
                    f"Tool '{tool_call.name}' is disabled for this session after repeated failures. "
                    "Use a different approach."
                ),
                is_error=True,
                tool_call_id=tool_call.id,
            )
        if state.snapshot.allowed_tools is not None and base_tool_name(tool_call.name) not in {
            base_tool_name(n) for n in state.snapshot.allowed_tools
        }:
            return ToolResult(
                content=f"Tool '{tool_call.name}' is not available in this session.",
                is_error=True,
                tool_call_id=tool_call.id,
            )
        if self._loop._approvals is not None and self._loop._settings.require_tool_approval:
            if not await self._loop._approve(state, tool_call):
                return ToolResult(
                    content=f"Tool call denied by user: {tool_call.name}",
                    is_error=True,
                    tool_call_id=tool_call.id,
                )
        return await self._loop._tools.execute(tool_call, on_progress)
