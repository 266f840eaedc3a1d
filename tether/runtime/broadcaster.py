"""Throttled progress broadcaster.

emit() never blocks: it classifies the update, applies the per-session
throttle and queues whatever must be delivered. A single background task
drains the queue so observers see events in emission order. Observer
errors are isolated, one broken observer never affects the others.

Critical updates (completion, a newly failed step, a pending approval, or the
first update of a session) bypass the throttle and discard any pending
routine update. Routine updates are coalesced last-write-wins into one
delivery per throttle window. After a session's completion event is
sent, further updates for that session are dropped until begin() is
called for a new run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from tether.runtime.schemas import ProgressEvent
from tether.runtime.sessions import SessionRegistry

logger = logging.getLogger(__name__)

ProgressObserver = Callable[[ProgressEvent], Awaitable[None]]

MAX_COMPLETED_IDS = 1000


@dataclass
class _ThrottleState:
    last_sent: float
    pending: ProgressEvent | None = None
    timer: asyncio.TimerHandle | None = None
    # error steps already delivered; a new one makes the update critical
    errors_seen: frozenset[str] = frozenset()


@dataclass
class _Subscription:
    observer: ProgressObserver
    session_id: str | None = None  # None = every session
    label: str = ""


class ProgressBroadcaster:
    def __init__(
        self,
        registry: SessionRegistry,
        window_ms: int = 150,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._registry = registry
        self._window = window_ms / 1000
        self._clock = clock
        self._throttle: dict[str, _ThrottleState] = {}
        self._completed: OrderedDict[str, None] = OrderedDict()
        self._subscriptions: list[_Subscription] = []
        self._queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()
        self._task: asyncio.Task | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(self, observer: ProgressObserver, session_id: str | None = None) -> Callable[[], None]:
        """Register an observer. Returns a callable that unsubscribes it."""
        sub = _Subscription(observer, session_id, getattr(observer, "__qualname__", repr(observer)))
        self._subscriptions.append(sub)

        def unsubscribe() -> None:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

        return unsubscribe

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------

    def begin(self, session_id: str) -> None:
        """Reset bookkeeping for a new run of ``session_id``."""
        self._discard(session_id)
        self._completed.pop(session_id, None)

    def emit(self, event: ProgressEvent) -> None:
        session_id = event.session_id
        if session_id in self._completed:
            logger.debug("Dropping progress for completed session %s", session_id)
            return

        state = self._throttle.get(session_id)
        now = self._clock()
        errors = event.error_step_ids

        if state is None or self._is_critical(event) or not errors <= state.errors_seen:
            seen = state.errors_seen if state is not None else frozenset()
            self._discard(session_id)
            self._send(event)
            if event.is_complete:
                self._mark_completed(session_id)
            else:
                self._throttle[session_id] = _ThrottleState(last_sent=now, errors_seen=seen | errors)
            return

        elapsed = now - state.last_sent
        if elapsed >= self._window:
            self._send(event)
            state.last_sent = now
            state.pending = None
            state.errors_seen |= errors
            return

        state.pending = event
        if state.timer is None:
            loop = asyncio.get_running_loop()
            state.timer = loop.call_later(self._window - elapsed, self._flush, session_id)

    def is_completed(self, session_id: str) -> bool:
        return session_id in self._completed

    def throttle_sessions(self) -> list[str]:
        """Sessions that currently hold throttle bookkeeping."""
        return list(self._throttle)

    @staticmethod
    def _is_critical(event: ProgressEvent) -> bool:
        return event.is_complete or event.pending_approval is not None

    def _flush(self, session_id: str) -> None:
        state = self._throttle.get(session_id)
        if state is None:
            return
        state.timer = None
        event, state.pending = state.pending, None
        if event is None:
            return
        if self._registry.should_stop(session_id):
            logger.debug("Session %s stopped during throttle window, dropping update", session_id)
            return
        self._send(event)
        state.last_sent = self._clock()
        state.errors_seen |= event.error_step_ids

    def _discard(self, session_id: str) -> None:
        state = self._throttle.pop(session_id, None)
        if state is not None and state.timer is not None:
            state.timer.cancel()

    def _mark_completed(self, session_id: str) -> None:
        self._completed[session_id] = None
        while len(self._completed) > MAX_COMPLETED_IDS:
            self._completed.popitem(last=False)

    def _send(self, event: ProgressEvent) -> None:
        self._queue.put_nowait(event)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._process_loop(), name="progress-broadcaster")
        logger.info("Progress broadcaster started")

    async def stop(self) -> None:
        """Cancel the worker, then deliver whatever is still queued."""
        for session_id in list(self._throttle):
            self._discard(session_id)
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._drain_inline()
        logger.info("Progress broadcaster stopped")

    async def drain(self) -> None:
        """Wait until every queued event has been delivered."""
        if self._task is None:
            await self._drain_inline()
        else:
            await self._queue.join()

    async def _drain_inline(self) -> None:
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._deliver(event)
            finally:
                self._queue.task_done()

    async def _process_loop(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._deliver(event)
            except Exception:
                logger.exception("Unexpected error in progress broadcaster loop")
            finally:
                self._queue.task_done()

    async def _deliver(self, event: ProgressEvent) -> None:
        subs = [
            s for s in self._subscriptions
            if s.session_id is None or s.session_id == event.session_id
        ]
        if subs:
            await asyncio.gather(*(self._safe_handle(s, event) for s in subs))

    async def _safe_handle(self, sub: _Subscription, event: ProgressEvent) -> None:
        try:
            await sub.observer(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Progress observer %s failed for session %s", sub.label, event.session_id)

    @property
    def pending(self) -> int:
        """Number of events waiting for delivery."""
        return self._queue.qsize()
