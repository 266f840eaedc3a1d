"""Human-in-the-loop approval of tool calls.

A pending approval is a future resolved by ``respond()``. Stopping a
session (or everything) denies whatever it was waiting on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from tether.runtime.schemas import PendingApproval

logger = logging.getLogger(__name__)


@dataclass
class _Pending:
    session_id: str
    approval: PendingApproval
    future: asyncio.Future[bool]


class ApprovalManager:
    def __init__(self) -> None:
        self._pending: dict[str, _Pending] = {}

    def request(
        self,
        session_id: str,
        tool_name: str,
        arguments: dict[str, Any],
    ) -> tuple[PendingApproval, asyncio.Future[bool]]:
        approval = PendingApproval(
            approval_id=f"appr_{uuid4().hex[:12]}",
            tool_name=tool_name,
            arguments=arguments,
        )
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending[approval.approval_id] = _Pending(session_id, approval, future)
        future.add_done_callback(lambda _f: self._pending.pop(approval.approval_id, None))
        return approval, future

    def respond(self, approval_id: str, approved: bool) -> bool:
        """Resolve a pending approval. Returns False for unknown or settled ids."""
        pending = self._pending.pop(approval_id, None)
        if pending is None or pending.future.done():
            return False
        pending.future.set_result(approved)
        logger.info(
            "Tool %s %s (session %s)",
            pending.approval.tool_name,
            "approved" if approved else "denied",
            pending.session_id,
        )
        return True

    def cancel_session(self, session_id: str) -> int:
        return self._deny([k for k, p in self._pending.items() if p.session_id == session_id])

    def cancel_all(self) -> int:
        return self._deny(list(self._pending))

    def _deny(self, approval_ids: list[str]) -> int:
        denied = 0
        for approval_id in approval_ids:
            pending = self._pending.pop(approval_id)
            if not pending.future.done():
                pending.future.set_result(False)
                denied += 1
        return denied

    def pending(self, session_id: str | None = None) -> list[PendingApproval]:
        return [
            p.approval
            for p in self._pending.values()
            if not p.future.done() and (session_id is None or p.session_id == session_id)
        ]
