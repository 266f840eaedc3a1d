"""REST API for the agent runtime.

Endpoints:
  POST /runs                      - Start a run (202 + session id, or the result with wait=true)
  POST /runs/stream               - Start a run and stream its progress as SSE
  GET  /runs/{session_id}/events  - SSE progress feed of a running session
  GET  /sessions                  - Active session ids
  GET  /sessions/{session_id}     - Session state (active / stopped / iteration)
  POST /sessions/{session_id}/stop - Kill switch for one session
  POST /sessions/stop-all         - Kill switch for every session + child processes
  GET  /approvals                 - Pending tool approvals
  POST /approvals/{approval_id}   - Approve or deny a pending tool call
  GET  /health                    - Health check (DB connectivity when persistence is on)
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from tether.api.tools import ToolDispatcher
from tether.config import Settings
from tether.runtime.approvals import ApprovalManager
from tether.runtime.broadcaster import ProgressBroadcaster
from tether.runtime.control import AgentControl
from tether.runtime.loop import AgentLoop
from tether.runtime.schemas import AgentResult, ProgressEvent, SessionSnapshot
from tether.runtime.sessions import SessionRegistry
from tether.storage.conversations import SqlConversationStore
from tether.storage.database import Database

logger = logging.getLogger(__name__)

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _result_json(session_id: str, result: AgentResult) -> dict[str, Any]:
    return {
        "session_id": session_id,
        "content": result.content,
        "terminal_state": result.terminal_state.value,
        "total_iterations": result.total_iterations,
    }


def create_app(
    loop: AgentLoop,
    control: AgentControl,
    registry: SessionRegistry,
    broadcaster: ProgressBroadcaster,
    approvals: ApprovalManager,
    dispatcher: ToolDispatcher,
    settings: Settings,
    store: SqlConversationStore | None = None,
    database: Database | None = None,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""
    running: dict[str, asyncio.Task] = {}

    async def _parse_run(request: Request) -> dict[str, Any] | JSONResponse:
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict) or not body.get("message"):
            return JSONResponse({"error": "Missing required field: message"}, status_code=400)
        max_iterations = body.get("max_iterations")
        if max_iterations is not None and (
            isinstance(max_iterations, bool) or not isinstance(max_iterations, int) or max_iterations < 1
        ):
            return JSONResponse({"error": "max_iterations must be a positive integer"}, status_code=400)
        session_id = body.get("session_id") or f"sess_{uuid4().hex[:12]}"
        if session_id in running:
            return JSONResponse({"error": f"Session already running: {session_id}"}, status_code=409)
        return {**body, "session_id": session_id}

    async def _start(body: dict[str, Any]) -> asyncio.Task:
        session_id = body["session_id"]
        conversation_id = body.get("conversation_id")
        history = []
        if store is not None and conversation_id:
            history = await store.load(conversation_id)

        allowed = body.get("allowed_tools")
        snapshot = SessionSnapshot(
            model=settings.model,
            allowed_tools=tuple(allowed) if allowed is not None else None,
            guidelines=body.get("guidelines", ""),
        )
        task = asyncio.create_task(
            loop.run(
                body["message"],
                session_id=session_id,
                conversation_id=conversation_id,
                history=history,
                available_tools=dispatcher.tool_definitions(),
                snapshot=snapshot,
                max_iterations=body.get("max_iterations"),
            ),
            name=f"agent-run-{session_id}",
        )
        running[session_id] = task

        def _done(t: asyncio.Task) -> None:
            running.pop(session_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error("Run %s failed: %s", session_id, t.exception())

        task.add_done_callback(_done)
        return task

    def _event_stream(session_id: str) -> StreamingResponse:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue()

        async def observer(event: ProgressEvent) -> None:
            await queue.put(event)

        unsubscribe = broadcaster.subscribe(observer, session_id)

        async def event_generator() -> AsyncIterator[str]:
            try:
                while True:
                    event = await queue.get()
                    yield f"data: {event.model_dump_json()}\n\n"
                    if event.is_complete:
                        break
            finally:
                unsubscribe()

        return StreamingResponse(event_generator(), media_type="text/event-stream", headers=_SSE_HEADERS)

    async def start_run(request: Request) -> JSONResponse:
        """POST /runs - Start an agent run."""
        body = await _parse_run(request)
        if isinstance(body, JSONResponse):
            return body
        task = await _start(body)
        if not body.get("wait"):
            return JSONResponse({"session_id": body["session_id"], "status": "started"}, status_code=202)
        try:
            result = await task
        except Exception as e:
            return JSONResponse({"session_id": body["session_id"], "error": str(e)}, status_code=502)
        return JSONResponse(_result_json(body["session_id"], result))

    async def stream_run(request: Request) -> StreamingResponse | JSONResponse:
        """POST /runs/stream - Start a run and stream its progress."""
        body = await _parse_run(request)
        if isinstance(body, JSONResponse):
            return body
        # Subscribe before starting so the first event is not missed
        response = _event_stream(body["session_id"])
        await _start(body)
        return response

    async def run_events(request: Request) -> StreamingResponse | JSONResponse:
        """GET /runs/{session_id}/events - Live progress of a running session."""
        session_id = request.path_params["session_id"]
        if session_id not in registry:
            return JSONResponse({"error": f"Session not active: {session_id}"}, status_code=404)
        return _event_stream(session_id)

    async def list_sessions(request: Request) -> JSONResponse:
        """GET /sessions - Active session ids."""
        return JSONResponse({"sessions": registry.active_sessions()})

    async def get_session(request: Request) -> JSONResponse:
        """GET /sessions/{session_id} - Session state."""
        session_id = request.path_params["session_id"]
        state = registry.get(session_id)
        return JSONResponse({
            "session_id": session_id,
            "active": state is not None,
            "stopped": control.is_stopped(session_id),
            "iteration": state.iteration if state else None,
        })

    async def stop_session(request: Request) -> JSONResponse:
        """POST /sessions/{session_id}/stop - Kill switch for one session."""
        session_id = request.path_params["session_id"]
        was_running = control.stop_session(session_id)
        return JSONResponse({"session_id": session_id, "stopped": True, "was_running": was_running})

    async def stop_all(request: Request) -> JSONResponse:
        """POST /sessions/stop-all - Kill switch for everything."""
        stopped = await control.stop_all()
        return JSONResponse({"stopped": stopped})

    async def list_approvals(request: Request) -> JSONResponse:
        """GET /approvals - Pending tool approvals."""
        session_id = request.query_params.get("session_id")
        return JSONResponse({"approvals": [a.model_dump() for a in approvals.pending(session_id)]})

    async def respond_approval(request: Request) -> JSONResponse:
        """POST /approvals/{approval_id} - Approve or deny a tool call."""
        approval_id = request.path_params["approval_id"]
        try:
            body = await request.json()
        except ValueError:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        approved = body.get("approved") if isinstance(body, dict) else None
        if not isinstance(approved, bool):
            return JSONResponse({"error": "Missing required field: approved (bool)"}, status_code=400)
        if not approvals.respond(approval_id, approved):
            return JSONResponse({"error": f"No pending approval: {approval_id}"}, status_code=404)
        return JSONResponse({"approval_id": approval_id, "approved": approved})

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        if database is None:
            return JSONResponse({"status": "healthy", "sessions": len(registry)})
        try:
            await database.ping()
            return JSONResponse({"status": "healthy", "sessions": len(registry)})
        except Exception as e:
            return JSONResponse({"status": "unhealthy", "error": str(e)}, status_code=503)

    routes = [
        Route("/runs", start_run, methods=["POST"]),
        Route("/runs/stream", stream_run, methods=["POST"]),
        Route("/runs/{session_id}/events", run_events),
        Route("/sessions", list_sessions),
        Route("/sessions/stop-all", stop_all, methods=["POST"]),
        Route("/sessions/{session_id}", get_session),
        Route("/sessions/{session_id}/stop", stop_session, methods=["POST"]),
        Route("/approvals", list_approvals),
        Route("/approvals/{approval_id}", respond_approval, methods=["POST"]),
        Route("/health", health),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    app = Starlette(**kwargs)
    app.state.running = running
    return app
