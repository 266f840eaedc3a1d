"""Tests for tether/background.py and tether/runtime/processes.py."""

from __future__ import annotations

import asyncio
import sys

import pytest

from tether.background import BackgroundWorker, Job
from tether.runtime.processes import ProcessTracker

# ---------------------------------------------------------------------------
# BackgroundWorker
# ---------------------------------------------------------------------------


class TestBackgroundWorker:
    async def test_jobs_run_in_submission_order(self):
        worker = BackgroundWorker()
        done: list[int] = []

        async def job(n):
            await asyncio.sleep(0.001 * (5 - n))
            done.append(n)

        for n in range(5):
            worker.submit(f"job-{n}", job, n)
        await worker.join()
        await worker.stop()
        assert done == [0, 1, 2, 3, 4]

    async def test_failure_is_isolated(self):
        worker = BackgroundWorker()
        done = []

        async def bad():
            raise RuntimeError("nope")

        async def good():
            done.append("ok")

        worker.submit("bad", bad)
        worker.submit("good", good)
        await worker.join()
        await worker.stop()
        assert done == ["ok"]
        assert worker.failures == 1

    async def test_full_queue_drops_job(self):
        worker = BackgroundWorker(max_queue=1)
        gate = asyncio.Event()
        ran = []

        async def blocker():
            await gate.wait()

        async def job(label):
            ran.append(label)

        worker.submit("blocker", blocker)
        await asyncio.sleep(0)  # worker picks up the blocker
        worker.submit("kept", job, "kept")
        worker.submit("dropped", job, "dropped")
        gate.set()
        await worker.join()
        await worker.stop()
        assert ran == ["kept"]

    async def test_stop_runs_remaining_jobs(self):
        worker = BackgroundWorker()
        ran = []

        async def job():
            ran.append(1)

        await worker.start()
        await worker.stop()
        worker._queue.put_nowait(Job("late", job))
        await worker.stop()
        assert ran == [1]


# ---------------------------------------------------------------------------
# ProcessTracker
# ---------------------------------------------------------------------------


async def _sleeper() -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(sys.executable, "-c", "import time; time.sleep(30)")


class TestProcessTracker:
    async def test_kill_session(self):
        tracker = ProcessTracker()
        proc = await _sleeper()
        tracker.register(proc, "s1")
        assert len(tracker) == 1

        assert tracker.kill_session("s1") == 1
        await asyncio.wait_for(proc.wait(), timeout=10)
        assert proc.returncode is not None
        assert len(tracker) == 0
        assert tracker.kill_session("s1") == 0

    async def test_terminate_all(self):
        tracker = ProcessTracker(kill_grace=5)
        procs = [await _sleeper(), await _sleeper()]
        tracker.register(procs[0], "s1")
        tracker.register(procs[1])

        assert await tracker.terminate_all() == 2
        assert all(p.returncode is not None for p in procs)
        assert len(tracker) == 0

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX signals")
    async def test_sigkill_after_grace(self):
        """A process ignoring SIGTERM is killed once the grace period expires."""
        tracker = ProcessTracker(kill_grace=0.2)
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(30)",
            stdout=asyncio.subprocess.PIPE,
        )
        await proc.stdout.readline()
        tracker.register(proc, "s1")
        await tracker.terminate_all()
        await asyncio.wait_for(proc.wait(), timeout=10)
        assert proc.returncode == -9
