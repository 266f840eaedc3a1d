"""Session registry and the per-session kill switch.

Each active run owns a SessionState: a cancellation token, an iteration
counter and the configuration snapshot captured when the session was
created. The registry is an injected object (one per orchestrator), not
module state, so tests can build isolated instances.

Cancellation is level-triggered: once a session is stopped it stays
stopped. Stopped ids are remembered after cleanup (bounded) so a late
throttle flush for a finished session still reads as stopped.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from collections.abc import Awaitable
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TypeVar

from tether.runtime.processes import ProcessTracker
from tether.runtime.schemas import SessionSnapshot

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_STOPPED_IDS = 1000

# Session the current task is working for; tools read it to register
# child processes with the kill switch.
current_session_id: ContextVar[str | None] = ContextVar("current_session_id", default=None)


class StopRequested(Exception):
    """The session's kill switch fired while work was in flight."""


def _discard_outcome(task: asyncio.Future) -> None:
    # Mark an abandoned task's exception as retrieved so it is never logged.
    if not task.cancelled():
        task.exception()


class CancelToken:
    """Awaitable cancellation flag.

    ``run()`` races an awaitable against the flag. When the flag wins the
    awaitable is abandoned: it is cancelled and its eventual outcome is
    discarded, never awaited.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise StopRequested()

    async def run(self, awaitable: Awaitable[T]) -> T:
        if self.cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise StopRequested()

        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({work, watcher}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            watcher.cancel()
            raise

        if self.cancelled:
            work.cancel()
            work.add_done_callback(_discard_outcome)
            raise StopRequested()

        watcher.cancel()
        return work.result()

    async def sleep(self, delay: float) -> None:
        await self.run(asyncio.sleep(delay))


@dataclass
class SessionState:
    session_id: str
    snapshot: SessionSnapshot
    conversation_id: str | None = None
    token: CancelToken = field(default_factory=CancelToken)
    iteration: int = 0


class SessionRegistry:
    """Tracks the cancellation flag and snapshot of every live session."""

    def __init__(self, processes: ProcessTracker | None = None) -> None:
        self._sessions: dict[str, SessionState] = {}
        self._stopped: OrderedDict[str, None] = OrderedDict()
        self._processes = processes

    def create(
        self,
        session_id: str,
        snapshot: SessionSnapshot,
        conversation_id: str | None = None,
    ) -> SessionState:
        """Register a session. Idempotent: an existing session keeps its snapshot."""
        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing
        # A fresh run for a previously stopped id starts clean
        self._stopped.pop(session_id, None)
        state = SessionState(session_id=session_id, snapshot=snapshot, conversation_id=conversation_id)
        self._sessions[session_id] = state
        logger.debug("Session created: %s", session_id)
        return state

    def get(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def snapshot(self, session_id: str) -> SessionSnapshot | None:
        state = self._sessions.get(session_id)
        return state.snapshot if state else None

    def token(self, session_id: str) -> CancelToken:
        state = self._sessions.get(session_id)
        if state is None:
            raise KeyError(f"Unknown session: {session_id}")
        return state.token

    def request_stop(self, session_id: str) -> bool:
        """Set the session's kill switch. Returns False if it was already set."""
        state = self._sessions.get(session_id)
        already = session_id in self._stopped or (state is not None and state.token.cancelled)
        if state is not None:
            state.token.cancel()
        self._remember_stopped(session_id)
        if self._processes is not None:
            self._processes.kill_session(session_id)
        if not already:
            logger.info("Stop requested for session %s", session_id)
        return not already

    def should_stop(self, session_id: str) -> bool:
        state = self._sessions.get(session_id)
        if state is not None:
            return state.token.cancelled
        return session_id in self._stopped

    def stop_all(self) -> list[str]:
        """Flag every live session. Returns the ids that were flagged."""
        ids = list(self._sessions)
        for session_id in ids:
            self.request_stop(session_id)
        if ids:
            logger.info("Stop requested for all %d session(s)", len(ids))
        return ids

    def update_iteration(self, session_id: str, iteration: int) -> None:
        state = self._sessions.get(session_id)
        if state is not None:
            state.iteration = iteration

    def cleanup(self, session_id: str) -> None:
        """Drop all per-session state. The stop mark (if any) survives."""
        self._sessions.pop(session_id, None)
        if self._processes is not None:
            self._processes.forget_session(session_id)
        logger.debug("Session cleaned up: %s", session_id)

    def active_sessions(self) -> list[str]:
        return list(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def _remember_stopped(self, session_id: str) -> None:
        self._stopped[session_id] = None
        self._stopped.move_to_end(session_id)
        while len(self._stopped) > MAX_STOPPED_IDS:
            self._stopped.popitem(last=False)
