"""Kill-switch control surface: stop one session, stop everything."""

from __future__ import annotations

import logging

from tether.runtime.approvals import ApprovalManager
from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.loop import KILL_SWITCH_NOTE
from tether.runtime.processes import ProcessTracker
from tether.runtime.schemas import (
    ProgressEvent,
    ProgressStep,
    StepStatus,
    StepType,
    TerminalState,
)
from tether.runtime.sessions import SessionRegistry

logger = logging.getLogger(__name__)


class AgentControl:
    def __init__(
        self,
        registry: SessionRegistry,
        broadcaster: ProgressBroadcaster,
        approvals: ApprovalManager | None = None,
        processes: ProcessTracker | None = None,
    ) -> None:
        self._registry = registry
        self._broadcaster = broadcaster
        self._approvals = approvals
        self._processes = processes

    def stop_session(self, session_id: str) -> bool:
        """Stop one session. Idempotent; returns True if the session was running.

        The terminal event goes out immediately so observers do not wait for
        the loop to reach its next checkpoint.
        """
        state = self._registry.get(session_id)
        newly_stopped = self._registry.request_stop(session_id)
        if self._approvals is not None:
            self._approvals.cancel_session(session_id)
        if state is None:
            return False
        if newly_stopped:
            self._emit_stopped(session_id, state.conversation_id, state.iteration)
        return True

    async def stop_all(self) -> list[str]:
        """Stop every live session and terminate all tracked child processes."""
        sessions = [self._registry.get(sid) for sid in self._registry.active_sessions()]
        stopped = []
        for state in sessions:
            if state is None:
                continue
            if self._registry.request_stop(state.session_id):
                self._emit_stopped(state.session_id, state.conversation_id, state.iteration)
            stopped.append(state.session_id)
        if self._approvals is not None:
            self._approvals.cancel_all()
        if self._processes is not None:
            await self._processes.terminate_all()
        logger.info("Emergency stop: %d session(s) stopped", len(stopped))
        return stopped

    def is_stopped(self, session_id: str) -> bool:
        return self._registry.should_stop(session_id)

    def _emit_stopped(self, session_id: str, conversation_id: str | None, iteration: int) -> None:
        step = ProgressStep(
            type=StepType.COMPLETION,
            title="Stopped",
            description="Agent mode was stopped by emergency kill switch",
            status=StepStatus.COMPLETED,
        )
        self._broadcaster.emit(
            ProgressEvent(
                session_id=session_id,
                conversation_id=conversation_id,
                iteration=iteration,
                steps=(step,),
                is_complete=True,
                final_content=KILL_SWITCH_NOTE,
                terminal_state=TerminalState.ABORTED,
            )
        )
