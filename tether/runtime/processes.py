"""Tracking of child processes spawned by tools.

The kill switch needs to reach processes that tools started on a
session's behalf. A single-session stop kills that session's processes
outright; the global stop terminates everything gracefully (SIGTERM,
then SIGKILL after a grace period).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict

logger = logging.getLogger(__name__)


class ProcessTracker:
    def __init__(self, kill_grace: float = 3.0) -> None:
        self._kill_grace = kill_grace
        self._all: set[asyncio.subprocess.Process] = set()
        self._by_session: dict[str, set[asyncio.subprocess.Process]] = defaultdict(set)

    def register(self, proc: asyncio.subprocess.Process, session_id: str | None = None) -> None:
        self._all.add(proc)
        if session_id:
            self._by_session[session_id].add(proc)

    def unregister(self, proc: asyncio.subprocess.Process) -> None:
        self._all.discard(proc)
        for procs in self._by_session.values():
            procs.discard(proc)

    def forget_session(self, session_id: str) -> None:
        self._by_session.pop(session_id, None)

    def kill_session(self, session_id: str) -> int:
        """SIGKILL every live process of one session. Returns how many were signalled."""
        killed = 0
        for proc in list(self._by_session.get(session_id, ())):
            if proc.returncode is None:
                try:
                    proc.kill()
                    killed += 1
                except ProcessLookupError:
                    pass
            self.unregister(proc)
        if killed:
            logger.info("Killed %d process(es) for session %s", killed, session_id)
        return killed

    async def terminate_all(self) -> int:
        """SIGTERM every tracked process, SIGKILL stragglers after the grace period."""
        procs = [p for p in self._all if p.returncode is None]
        if procs:
            await asyncio.gather(*(self._terminate(p) for p in procs))
            logger.info("Terminated %d tracked process(es)", len(procs))
        self._all.clear()
        self._by_session.clear()
        return len(procs)

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.warning("Process %s ignored SIGTERM, sending SIGKILL", proc.pid)
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    def __len__(self) -> int:
        return len(self._all)
