"""Built-in tools: bash, read_file, write_file.

All tools run inside the workspace directory and return MCP-format
responses for consistent handling by ToolDispatcher. The bash tool
registers its child process with the ProcessTracker under the current
session so the kill switch can terminate it.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

from tether.api.tools import ToolDispatcher
from tether.config import Settings
from tether.runtime.processes import ProcessTracker
from tether.runtime.sessions import current_session_id

logger = logging.getLogger(__name__)

# Limits
_MAX_BASH_TIMEOUT = 300  # seconds
_MAX_OUTPUT_CHARS = 100 * 1024  # 100KB
_MAX_FILE_SIZE = 1 * 1024 * 1024  # 1MB


def _mcp_response(text: str, is_error: bool = False) -> dict[str, Any]:
    """Build MCP-format response."""
    return {"content": [{"type": "text", "text": text}], "isError": is_error}


def _validate_path(path_str: str, workspace_dir: str) -> Path:
    """Resolve a path and require it to stay under workspace_dir.

    Raises ValueError if path escapes workspace.
    """
    workspace = Path(workspace_dir).resolve()
    target = Path(path_str).resolve() if Path(path_str).is_absolute() else (workspace / path_str).resolve()
    if not target.is_relative_to(workspace):
        raise ValueError(
            f"Path '{path_str}' is outside workspace '{workspace_dir}'. "
            "Only paths within the workspace directory are allowed."
        )
    return target


def _truncate(text: str, label: str) -> str:
    if len(text) > _MAX_OUTPUT_CHARS:
        return text[:_MAX_OUTPUT_CHARS] + f"\n... [{label} truncated at 100KB]"
    return text


# ---------------------------------------------------------------------------
# Tool handlers
# ---------------------------------------------------------------------------


async def bash_tool(
    command: str,
    timeout: int = 30,
    *,
    _workspace_dir: str = "/tmp/tether-workspace",
    _processes: ProcessTracker | None = None,
) -> dict[str, Any]:
    """Execute a shell command in the workspace directory.

    Args:
        command: Shell command to execute
        timeout: Timeout in seconds (default 30, max 300)
        _workspace_dir: Internal param set by registration closure
        _processes: Internal param set by registration closure

    Returns:
        MCP-format response with stdout + stderr; non-zero exit is an error
    """
    effective_timeout = max(1, min(timeout, _MAX_BASH_TIMEOUT))
    workspace = Path(_workspace_dir)
    workspace.mkdir(parents=True, exist_ok=True)

    try:
        proc = await asyncio.create_subprocess_shell(
            command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(workspace),
        )
    except OSError as e:
        return _mcp_response(f"Error executing command: {e}", is_error=True)

    if _processes is not None:
        _processes.register(proc, current_session_id.get())
    try:
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=effective_timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return _mcp_response(
                f"Command timeout after {effective_timeout}s.\nCommand: {command}",
                is_error=True,
            )
        except asyncio.CancelledError:
            # Abandoned by the kill switch
            if proc.returncode is None:
                proc.kill()
            raise
    finally:
        if _processes is not None:
            _processes.unregister(proc)

    stdout_text = _truncate(stdout.decode("utf-8", errors="replace"), "output")
    stderr_text = _truncate(stderr.decode("utf-8", errors="replace"), "stderr")

    parts = []
    if stdout_text:
        parts.append(stdout_text)
    if stderr_text:
        parts.append(f"STDERR:\n{stderr_text}")
    if proc.returncode != 0:
        parts.append(f"Exit code: {proc.returncode}")

    return _mcp_response("\n".join(parts), is_error=proc.returncode != 0)


async def read_file_tool(path: str, *, _workspace_dir: str = "/tmp/tether-workspace") -> dict[str, Any]:
    """Read a text file from the workspace directory."""
    try:
        target = _validate_path(path, _workspace_dir)
    except ValueError as e:
        return _mcp_response(f"Permission denied: {e}", is_error=True)

    if not target.is_file():
        return _mcp_response(f"File not found: {path}", is_error=True)

    file_size = target.stat().st_size
    if file_size > _MAX_FILE_SIZE:
        return _mcp_response(
            f"File too large: {file_size:,} bytes (limit: {_MAX_FILE_SIZE:,} bytes).",
            is_error=True,
        )

    content = await asyncio.to_thread(target.read_text, encoding="utf-8", errors="replace")
    return _mcp_response(content)


async def write_file_tool(path: str, content: str, *, _workspace_dir: str = "/tmp/tether-workspace") -> dict[str, Any]:
    """Write content to a file in the workspace directory."""
    try:
        target = _validate_path(path, _workspace_dir)
    except ValueError as e:
        return _mcp_response(f"Permission denied: {e}", is_error=True)

    await asyncio.to_thread(target.parent.mkdir, parents=True, exist_ok=True)
    await asyncio.to_thread(target.write_text, content, encoding="utf-8")
    return _mcp_response(f"File written successfully: {target}\nSize: {len(content):,} bytes")


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_BASH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Execute a shell command in the workspace directory",
    "properties": {
        "command": {"type": "string", "description": "Shell command to execute"},
        "timeout": {
            "type": "integer",
            "description": "Timeout in seconds (default 30, max 300)",
            "default": 30,
            "minimum": 1,
            "maximum": 300,
        },
    },
    "required": ["command"],
}

_READ_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Read a text file from the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
    },
    "required": ["path"],
}

_WRITE_FILE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "description": "Write content to a file in the workspace directory",
    "properties": {
        "path": {"type": "string", "description": "File path (relative or absolute within workspace)"},
        "content": {"type": "string", "description": "Content to write to the file"},
    },
    "required": ["path", "content"],
}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


def register_builtin_tools(
    dispatcher: ToolDispatcher,
    settings: Settings,
    processes: ProcessTracker | None = None,
) -> None:
    """Register bash, read_file and write_file with closures that inject
    the workspace directory and the process tracker."""
    workspace = settings.workspace_dir

    async def _bash(command: str, timeout: int = 30) -> dict[str, Any]:
        return await bash_tool(command, timeout, _workspace_dir=workspace, _processes=processes)

    async def _read_file(path: str) -> dict[str, Any]:
        return await read_file_tool(path, _workspace_dir=workspace)

    async def _write_file(path: str, content: str) -> dict[str, Any]:
        return await write_file_tool(path, content, _workspace_dir=workspace)

    dispatcher.register("bash", _bash, _BASH_SCHEMA)
    dispatcher.register("read_file", _read_file, _READ_FILE_SCHEMA)
    dispatcher.register("write_file", _write_file, _WRITE_FILE_SCHEMA)
