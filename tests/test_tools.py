"""Tests for tether/api/tools.py -- ToolDispatcher."""

from __future__ import annotations

from tether.api.tools import ToolDispatcher
from tether.runtime.protocols import ToolExecutor
from tether.runtime.schemas import ToolCall

_SCHEMA = {
    "type": "object",
    "description": "Echo text back",
    "properties": {"text": {"type": "string"}},
    "required": ["text"],
}


async def _echo(text: str) -> str:
    return text


async def _mcp_fail(text: str) -> dict:
    return {"content": [{"type": "text", "text": f"bad: {text}"}], "isError": True}


async def _explode(text: str) -> str:
    raise RuntimeError("handler crashed")


class TestToolDispatcher:
    def _dispatcher(self) -> ToolDispatcher:
        d = ToolDispatcher()
        d.register("echo", _echo, _SCHEMA)
        d.register("fail", _mcp_fail, _SCHEMA)
        d.register("explode", _explode, _SCHEMA)
        return d

    def test_satisfies_tool_executor_protocol(self):
        assert isinstance(ToolDispatcher(), ToolExecutor)

    async def test_plain_text_result(self):
        result = await self._dispatcher().execute(ToolCall(name="echo", arguments={"text": "hi"}, id="t1"))
        assert result.content == "hi"
        assert not result.is_error
        assert result.tool_call_id == "t1"

    async def test_mcp_error_result(self):
        result = await self._dispatcher().execute(ToolCall(name="fail", arguments={"text": "x"}))
        assert result.is_error
        assert result.content == "bad: x"

    async def test_unknown_tool(self):
        result = await self._dispatcher().execute(ToolCall(name="nope"))
        assert result.is_error
        assert result.content == "Unknown tool: nope"

    async def test_invalid_arguments(self):
        result = await self._dispatcher().execute(ToolCall(name="echo", arguments={"wrong": 1}))
        assert result.is_error
        assert result.content.startswith("Invalid arguments for echo")

    async def test_handler_exception(self):
        result = await self._dispatcher().execute(ToolCall(name="explode", arguments={"text": "x"}))
        assert result.is_error
        assert result.content == "Tool error: handler crashed"

    async def test_progress_callback_passed_when_declared(self):
        seen = []

        async def slow(text: str, on_progress=None) -> str:
            on_progress("halfway")
            return "done"

        d = ToolDispatcher()
        d.register("slow", slow, _SCHEMA)
        result = await d.execute(ToolCall(name="slow", arguments={"text": "x"}), on_progress=seen.append)
        assert result.content == "done"
        assert seen == ["halfway"]

    def test_tool_definitions(self):
        d = self._dispatcher()
        assert [t.name for t in d.tool_definitions()] == ["echo", "fail", "explode"]
        [echo] = d.tool_definitions(allowed={"echo"})
        assert echo.description == "Echo text back"
        assert echo.to_api()["input_schema"] == _SCHEMA
        assert "echo" in d and "missing" not in d
