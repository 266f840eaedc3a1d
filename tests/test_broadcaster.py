"""Tests for tether/runtime/broadcaster.py -- throttling, ordering, isolation.

Time inside the throttle window is driven by a fake clock; the flush
timer itself runs on the real event loop, so tests that wait for a
flush sleep briefly.
"""

from __future__ import annotations

import asyncio

from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.schemas import (
    PendingApproval,
    ProgressEvent,
    ProgressStep,
    SessionSnapshot,
    StepStatus,
    StepType,
)
from tether.runtime.sessions import SessionRegistry

from tests.conftest import Collector


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _event(session_id: str = "s1", iteration: int = 0, **kwargs) -> ProgressEvent:
    return ProgressEvent(session_id=session_id, iteration=iteration, **kwargs)


def _setup(window_ms: int = 150):
    registry = SessionRegistry()
    clock = FakeClock()
    broadcaster = ProgressBroadcaster(registry, window_ms=window_ms, clock=clock)
    collector = Collector()
    broadcaster.subscribe(collector)
    return registry, clock, broadcaster, collector


def _iterations(collector: Collector) -> list[int]:
    return [e.iteration for e in collector.events]


# ---------------------------------------------------------------------------
# Throttling
# ---------------------------------------------------------------------------


class TestThrottle:
    async def test_first_event_is_sent_immediately(self):
        _, _, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        await broadcaster.drain()
        assert _iterations(collector) == [1]

    async def test_routine_updates_coalesce_last_write_wins(self):
        """Updates inside the window collapse into one delivery of the newest."""
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.05
        broadcaster.emit(_event(iteration=2))
        clock.now += 0.05
        broadcaster.emit(_event(iteration=3))

        await broadcaster.drain()
        assert _iterations(collector) == [1]

        await asyncio.sleep(0.2)
        await broadcaster.drain()
        assert _iterations(collector) == [1, 3]

    async def test_update_after_window_is_sent_immediately(self):
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.2
        broadcaster.emit(_event(iteration=2))
        await broadcaster.drain()
        assert _iterations(collector) == [1, 2]

    async def test_completion_flushes_and_discards_pending(self):
        """A terminal event goes out at once; the superseded update never does."""
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.01
        broadcaster.emit(_event(iteration=2))
        clock.now += 0.01
        broadcaster.emit(_event(iteration=3, is_complete=True))

        await asyncio.sleep(0.2)
        await broadcaster.drain()
        assert _iterations(collector) == [1, 3]
        assert broadcaster.throttle_sessions() == []

    async def test_updates_after_completion_are_dropped(self):
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1, is_complete=True))
        clock.now += 1
        broadcaster.emit(_event(iteration=2))
        broadcaster.emit(_event(iteration=3, is_complete=True))
        await broadcaster.drain()
        assert _iterations(collector) == [1]
        assert broadcaster.is_completed("s1")

    async def test_begin_resets_completed_session(self):
        _, _, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1, is_complete=True))
        broadcaster.begin("s1")
        broadcaster.emit(_event(iteration=2))
        await broadcaster.drain()
        assert _iterations(collector) == [1, 2]

    async def test_error_step_bypasses_throttle(self):
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.01
        error_step = ProgressStep(type=StepType.TOOL_CALL, title="bash", status=StepStatus.ERROR)
        broadcaster.emit(_event(iteration=2, steps=(error_step,)))
        await broadcaster.drain()
        assert _iterations(collector) == [1, 2]

    async def test_error_step_before_running_step_bypasses_throttle(self):
        """A parallel batch: the failed tool is not the newest step."""
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.01
        failed = ProgressStep(type=StepType.TOOL_CALL, title="bash", status=StepStatus.ERROR)
        running = ProgressStep(type=StepType.TOOL_CALL, title="read_file")
        broadcaster.emit(_event(iteration=2, steps=(failed, running)))
        await broadcaster.drain()
        assert _iterations(collector) == [1, 2]

    async def test_already_delivered_error_step_is_routine(self):
        _, clock, broadcaster, collector = _setup()
        failed = ProgressStep(type=StepType.TOOL_CALL, title="bash", status=StepStatus.ERROR)
        broadcaster.emit(_event(iteration=1, steps=(failed,)))
        clock.now += 0.01
        broadcaster.emit(_event(iteration=2, steps=(failed, ProgressStep(type=StepType.THINKING, title="Thinking"))))
        await broadcaster.drain()
        assert _iterations(collector) == [1]

    async def test_pending_approval_bypasses_throttle(self):
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.01
        approval = PendingApproval(approval_id="appr_1", tool_name="bash")
        broadcaster.emit(_event(iteration=2, pending_approval=approval))
        await broadcaster.drain()
        assert _iterations(collector) == [1, 2]

    async def test_flush_skipped_for_stopped_session(self):
        """A pending update is dropped if the session stops during the window."""
        registry, clock, broadcaster, collector = _setup()
        registry.create("s1", SessionSnapshot())
        broadcaster.emit(_event(iteration=1))
        clock.now += 0.05
        broadcaster.emit(_event(iteration=2))
        registry.request_stop("s1")

        await asyncio.sleep(0.2)
        await broadcaster.drain()
        assert _iterations(collector) == [1]

    async def test_sessions_are_throttled_independently(self):
        _, clock, broadcaster, collector = _setup()
        broadcaster.emit(_event("a", iteration=1))
        clock.now += 0.01
        broadcaster.emit(_event("b", iteration=2))
        await broadcaster.drain()
        assert [(e.session_id, e.iteration) for e in collector.events] == [("a", 1), ("b", 2)]


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------


class TestDelivery:
    async def test_observer_failure_is_isolated(self):
        _, _, broadcaster, collector = _setup()

        async def broken(event):
            raise RuntimeError("observer exploded")

        broadcaster.subscribe(broken)
        broadcaster.emit(_event(iteration=1, is_complete=True))
        await broadcaster.drain()
        assert _iterations(collector) == [1]

    async def test_session_filtered_subscription(self):
        registry = SessionRegistry()
        broadcaster = ProgressBroadcaster(registry)
        only_b = Collector()
        broadcaster.subscribe(only_b, session_id="b")
        broadcaster.emit(_event("a", iteration=1))
        broadcaster.emit(_event("b", iteration=2))
        await broadcaster.drain()
        assert _iterations(only_b) == [2]

    async def test_unsubscribe(self):
        registry = SessionRegistry()
        broadcaster = ProgressBroadcaster(registry)
        collector = Collector()
        unsubscribe = broadcaster.subscribe(collector)
        unsubscribe()
        unsubscribe()
        broadcaster.emit(_event(iteration=1))
        await broadcaster.drain()
        assert collector.events == []

    async def test_emit_does_not_wait_for_slow_observer(self):
        """emit() returns while an observer is blocked; order is kept."""
        registry = SessionRegistry()
        broadcaster = ProgressBroadcaster(registry)
        gate = asyncio.Event()
        seen: list[int] = []

        async def slow(event):
            await gate.wait()
            seen.append(event.iteration)

        broadcaster.subscribe(slow)
        await broadcaster.start()
        try:
            for i in range(1, 4):
                broadcaster.emit(_event(f"s{i}", iteration=i))
            await asyncio.sleep(0.01)
            assert seen == []
            gate.set()
            await broadcaster.drain()
            assert seen == [1, 2, 3]
        finally:
            await broadcaster.stop()

    async def test_stop_delivers_queued_events(self):
        registry = SessionRegistry()
        broadcaster = ProgressBroadcaster(registry)
        collector = Collector()
        broadcaster.subscribe(collector)
        broadcaster.emit(_event("a", iteration=1))
        broadcaster.emit(_event("b", iteration=2))
        assert broadcaster.pending == 2
        await broadcaster.stop()
        assert _iterations(collector) == [1, 2]
