"""Tool execution engine: bounded retry, cooperative cancellation,
parallel or sequential dispatch.

Every call races against the session's cancel token. When the token
wins, the in-flight call is abandoned and its eventual result is
discarded. Transient failures (matched by keyword) are retried with
exponential backoff; everything else fails fast with the last error.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass

from tether.runtime.protocols import ToolExecutor
from tether.runtime.schemas import (
    ToolBatchResult,
    ToolCall,
    ToolExecutionResult,
    ToolResult,
)
from tether.runtime.sessions import CancelToken, StopRequested

logger = logging.getLogger(__name__)

CANCELLED_TEXT = "Tool execution cancelled by emergency kill switch"

RETRYABLE_ERROR_KEYWORDS = ("timeout", "connection", "network", "temporary", "busy")

# Tools that mutate shared browser state; a batch containing any of them
# runs sequentially.
SEQUENTIAL_TOOL_NAMES = frozenset({
    "browser_click",
    "browser_drag",
    "browser_type",
    "browser_fill_form",
    "browser_hover",
    "browser_press_key",
    "browser_select_option",
    "browser_file_upload",
    "browser_handle_dialog",
    "browser_navigate",
    "browser_navigate_back",
    "browser_close",
    "browser_resize",
    "browser_tabs",
    "browser_wait_for",
    "browser_evaluate",
    "browser_run_code",
    "browser_mouse_click_xy",
    "browser_mouse_drag_xy",
    "browser_mouse_move_xy",
})


def is_retryable_error(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in RETRYABLE_ERROR_KEYWORDS)


def base_tool_name(name: str) -> str:
    """Strip an MCP-style ``server:`` prefix."""
    return name.split(":", 1)[1] if ":" in name else name


def requires_sequential_execution(calls: Sequence[ToolCall]) -> bool:
    return any(base_tool_name(c.name) in SEQUENTIAL_TOOL_NAMES for c in calls)


def analyze_tool_errors(results: Sequence[ToolExecutionResult]) -> tuple[str, list[str]]:
    """Classify failed results and build a recovery hint for the model.

    Returns (recovery_strategy, error_types).
    """
    errors = " ".join(r.result.content for r in results if r.result.is_error).lower()
    error_types: list[str] = []
    if "timeout" in errors or "connection" in errors:
        error_types.append("connectivity")
    if "permission" in errors or "access" in errors or "denied" in errors:
        error_types.append("permissions")
    if "not found" in errors or "does not exist" in errors or "missing" in errors:
        error_types.append("resource_missing")

    lines = ["RECOVERY STRATEGIES:"]
    if "connectivity" in error_types:
        lines.append("- For connectivity issues: Wait a moment and retry, or check if the service is available")
    if "permissions" in error_types:
        lines.append("- For permission errors: Try alternative approaches or check access rights")
    if "resource_missing" in error_types:
        lines.append("- For missing resources: Verify the resource exists or try creating it first")
    lines.append(
        "- General: Try breaking down the task into smaller steps, use alternative tools, "
        "or try a different approach"
    )
    return "\n".join(lines), error_types


@dataclass
class ExecutionHooks:
    """Optional callbacks fired as a batch progresses (all synchronous)."""

    on_start: Callable[[int, ToolCall], None] | None = None
    on_progress: Callable[[int, ToolCall, str], None] | None = None
    on_retry: Callable[[int, ToolCall, int, float, str], None] | None = None
    on_complete: Callable[[int, ToolExecutionResult], None] | None = None


_NO_HOOKS = ExecutionHooks()


class ToolExecutionEngine:
    def __init__(
        self,
        executor: ToolExecutor,
        *,
        max_retries: int = 2,
        base_delay: float = 1.0,
        parallel: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._executor = executor
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._parallel = parallel
        self._sleep = sleep

    async def execute(
        self,
        calls: Sequence[ToolCall],
        token: CancelToken,
        *,
        parallel: bool | None = None,
        hooks: ExecutionHooks | None = None,
    ) -> ToolBatchResult:
        """Run a batch. Results are returned in input order."""
        hooks = hooks or _NO_HOOKS
        use_parallel = self._parallel if parallel is None else parallel
        if len(calls) <= 1 or not use_parallel or requires_sequential_execution(calls):
            return await self.execute_sequential(calls, token, hooks=hooks)
        return await self.execute_parallel(calls, token, hooks=hooks)

    async def execute_parallel(
        self,
        calls: Sequence[ToolCall],
        token: CancelToken,
        *,
        hooks: ExecutionHooks | None = None,
    ) -> ToolBatchResult:
        hooks = hooks or _NO_HOOKS
        results = await asyncio.gather(
            *(self._run_indexed(i, call, token, hooks) for i, call in enumerate(calls))
        )
        cancelled = token.cancelled or any(r.cancelled for r in results)
        return ToolBatchResult(results=list(results), cancelled=cancelled)

    async def execute_sequential(
        self,
        calls: Sequence[ToolCall],
        token: CancelToken,
        *,
        hooks: ExecutionHooks | None = None,
    ) -> ToolBatchResult:
        hooks = hooks or _NO_HOOKS
        results: list[ToolExecutionResult] = []
        for i, call in enumerate(calls):
            if token.cancelled:
                break
            outcome = await self._run_indexed(i, call, token, hooks)
            results.append(outcome)
            if outcome.cancelled:
                break
        cancelled = token.cancelled or any(r.cancelled for r in results)
        return ToolBatchResult(results=results, cancelled=cancelled)

    async def _run_indexed(
        self,
        index: int,
        call: ToolCall,
        token: CancelToken,
        hooks: ExecutionHooks,
    ) -> ToolExecutionResult:
        if hooks.on_start:
            hooks.on_start(index, call)

        on_progress = None
        if hooks.on_progress:
            def on_progress(message: str) -> None:
                hooks.on_progress(index, call, message)

        on_retry = None
        if hooks.on_retry:
            def on_retry(retry: int, delay: float, error: str) -> None:
                hooks.on_retry(index, call, retry, delay, error)

        outcome = await self.execute_one(call, token, on_progress=on_progress, on_retry=on_retry)
        if hooks.on_complete:
            hooks.on_complete(index, outcome)
        return outcome

    async def execute_one(
        self,
        call: ToolCall,
        token: CancelToken,
        *,
        on_progress: Callable[[str], None] | None = None,
        on_retry: Callable[[int, float, str], None] | None = None,
    ) -> ToolExecutionResult:
        """Execute a single call with retry, racing the cancel token."""
        retry_count = 0
        while True:
            try:
                result = await token.run(self._attempt(call, on_progress))
            except StopRequested:
                return self._cancelled(call, retry_count)

            if result.success:
                return ToolExecutionResult(tool_call=call, result=result, retry_count=retry_count)
            if not is_retryable_error(result.content) or retry_count >= self._max_retries:
                return ToolExecutionResult(tool_call=call, result=result, retry_count=retry_count)

            retry_count += 1
            delay = self._base_delay * 2**retry_count
            logger.warning(
                "Tool %s failed with retryable error, retry %d/%d in %.1fs: %s",
                call.name,
                retry_count,
                self._max_retries,
                delay,
                result.content[:200],
            )
            if on_retry:
                on_retry(retry_count, delay, result.content)
            try:
                await token.run(self._sleep(delay))
            except StopRequested:
                return self._cancelled(call, retry_count)

    async def _attempt(
        self,
        call: ToolCall,
        on_progress: Callable[[str], None] | None,
    ) -> ToolResult:
        try:
            result = await self._executor.execute(call, on_progress)
        except Exception as e:
            logger.exception("Tool executor raised for %s", call.name)
            return ToolResult(content=f"Tool error: {e}", is_error=True, tool_call_id=call.id)
        if result.tool_call_id is None and call.id is not None:
            result = result.model_copy(update={"tool_call_id": call.id})
        return result

    @staticmethod
    def _cancelled(call: ToolCall, retry_count: int) -> ToolExecutionResult:
        return ToolExecutionResult(
            tool_call=call,
            result=ToolResult(content=CANCELLED_TEXT, is_error=True, tool_call_id=call.id),
            retry_count=retry_count,
            cancelled=True,
        )
