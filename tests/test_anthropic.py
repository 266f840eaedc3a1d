"""Tests for tether/api/anthropic.py -- model client, parsing and verifier.

No network: the httpx client's post() is an AsyncMock returning canned
responses; the streaming test uses httpx.MockTransport.
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from tether.api.anthropic import (
    AnthropicModelClient,
    AnthropicVerifier,
    ModelError,
    build_auth_headers,
    parse_response,
    parse_verdict,
    split_messages,
)
from tether.config import Settings
from tether.runtime.protocols import EmptyResponseError, ModelClient, Verifier
from tether.runtime.schemas import ToolDefinition
from tether.runtime.verification import VerificationError


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, anthropic_api_key="sk-ant-test-key", **overrides)


def _mock_httpx_response(status_code: int = 200, body: dict | None = None, headers: dict | None = None) -> httpx.Response:
    """Build a mock httpx.Response."""
    return httpx.Response(
        status_code=status_code,
        json=body or {},
        headers=headers,
        request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"),
    )


def _text_body(text: str, stop_reason: str = "end_turn") -> dict:
    return {"content": [{"type": "text", "text": text}], "stop_reason": stop_reason}


def _client(*responses: httpx.Response) -> tuple[AnthropicModelClient, MagicMock]:
    http = MagicMock()
    http.post = AsyncMock(side_effect=list(responses))
    return AnthropicModelClient(_settings(), http=http), http


MESSAGES = [
    {"role": "system", "content": "You are an agent."},
    {"role": "user", "content": "List files"},
]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_api_key_header(self):
        headers = build_auth_headers("sk-ant-api-123", "")
        assert headers["x-api-key"] == "sk-ant-api-123"
        assert "authorization" not in headers

    def test_auth_token_takes_precedence(self):
        headers = build_auth_headers("sk-ant-api-123", "tok-abc")
        assert headers["authorization"] == "Bearer tok-abc"
        assert "x-api-key" not in headers

    def test_oauth_key_uses_bearer(self):
        headers = build_auth_headers("sk-ant-oat-xyz", "")
        assert headers["authorization"] == "Bearer sk-ant-oat-xyz"
        assert headers["anthropic-beta"] == "oauth-2025-04-20"

    def test_split_messages_merges_consecutive_roles(self):
        system, turns = split_messages([
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "a"},
            {"role": "user", "content": "b"},
            {"role": "assistant", "content": "c"},
        ])
        assert system == "sys"
        assert turns == [{"role": "user", "content": "a\n\nb"}, {"role": "assistant", "content": "c"}]

    def test_split_messages_starts_with_user(self):
        _, turns = split_messages([{"role": "assistant", "content": "hi"}])
        assert turns[0]["role"] == "user"

    def test_parse_response_tool_use(self):
        response = parse_response({
            "content": [
                {"type": "text", "text": "Running ls"},
                {"type": "tool_use", "id": "tu_1", "name": "bash", "input": {"command": "ls"}},
            ],
            "stop_reason": "tool_use",
        })
        assert response.content == "Running ls"
        assert response.tool_calls[0].id == "tu_1"
        assert response.tool_calls[0].arguments == {"command": "ls"}
        assert response.needs_more_work is None

    def test_parse_response_end_turn_signals_done(self):
        assert parse_response(_text_body("done")).needs_more_work is False
        assert parse_response(_text_body("more", stop_reason="max_tokens")).needs_more_work is None

    def test_protocols(self):
        client = AnthropicModelClient(_settings())
        assert isinstance(client, ModelClient)
        assert isinstance(AnthropicVerifier(client, _settings()), Verifier)


# ---------------------------------------------------------------------------
# call()
# ---------------------------------------------------------------------------


class TestCall:
    async def test_payload(self):
        client, http = _client(_mock_httpx_response(body=_text_body("hello")))
        tools = [ToolDefinition(name="bash", description="Run a command")]
        response = await client.call(MESSAGES, tools)

        assert response.content == "hello"
        payload = http.post.call_args.kwargs["json"]
        assert payload["system"][0]["text"] == "You are an agent."
        assert payload["messages"] == [{"role": "user", "content": "List files"}]
        assert payload["tools"][0]["name"] == "bash"
        assert "stream" not in payload

    async def test_empty_response_raises(self):
        client, _ = _client(_mock_httpx_response(body={"content": [], "stop_reason": "end_turn"}))
        with pytest.raises(EmptyResponseError):
            await client.call(MESSAGES)

    async def test_retry_on_overloaded(self):
        """529 once -> one retry, on_retry informed, then success."""
        client, http = _client(
            _mock_httpx_response(529, {"error": {"type": "overloaded_error", "message": "busy"}}, {"retry-after": "0"}),
            _mock_httpx_response(body=_text_body("ok")),
        )
        retries = []
        response = await client.call(MESSAGES, on_retry=retries.append)
        assert response.content == "ok"
        assert http.post.await_count == 2
        assert retries[0].reason == "overloaded_error: busy"
        assert retries[0].tool_name is None

    async def test_second_failure_raises(self):
        error = {"error": {"type": "rate_limit_error", "message": "slow down"}}
        client, _ = _client(
            _mock_httpx_response(429, error, {"retry-after": "0"}),
            _mock_httpx_response(429, error, {"retry-after": "0"}),
        )
        with pytest.raises(ModelError, match="rate_limit_error"):
            await client.call(MESSAGES)

    async def test_client_error_not_retried(self):
        client, http = _client(
            _mock_httpx_response(400, {"error": {"type": "invalid_request_error", "message": "bad"}}),
        )
        with pytest.raises(ModelError, match="400"):
            await client.call(MESSAGES)
        assert http.post.await_count == 1

    async def test_timeout_retried_once(self):
        client, http = _client(
            httpx.ReadTimeout("read timed out"),
            _mock_httpx_response(body=_text_body("late but fine")),
        )
        with patch("tether.api.anthropic.asyncio.sleep", new=AsyncMock()):
            response = await client.call(MESSAGES)
        assert response.content == "late but fine"

    async def test_not_started(self):
        client = AnthropicModelClient(_settings())
        with pytest.raises(RuntimeError, match="start"):
            await client.call(MESSAGES)


# ---------------------------------------------------------------------------
# stream()
# ---------------------------------------------------------------------------


async def test_stream_yields_text_deltas():
    events = [
        {"type": "message_start", "message": {}},
        {"type": "ping"},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "Hel"}},
        {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": "lo"}},
        {"type": "message_delta", "delta": {"stop_reason": "end_turn"}},
        {"type": "message_stop"},
    ]
    body = "".join(f"event: {e['type']}\ndata: {json.dumps(e)}\n\n" for e in events)

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    http = httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="https://api.anthropic.com")
    client = AnthropicModelClient(_settings(), http=http)
    chunks = [c async for c in client.stream(MESSAGES)]
    await client.close()
    assert chunks == ["Hel", "lo"]


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class TestVerifier:
    def test_parse_verdict_camel_case(self):
        result = parse_verdict('Sure: {"isComplete": false, "missingItems": ["tests"], "reason": "no tests", "confidence": 0.8}')
        assert result.is_complete is False
        assert result.missing_items == ["tests"]
        assert result.confidence == 0.8

    def test_parse_verdict_invalid(self):
        with pytest.raises(VerificationError):
            parse_verdict("I think it is done.")
        with pytest.raises(VerificationError):
            parse_verdict('{"isComplete": "maybe", "confidence": 7}')

    async def test_verify_uses_verifier_model(self):
        client, http = _client(_mock_httpx_response(body=_text_body('{"isComplete": true, "confidence": 0.95}')))
        verifier = AnthropicVerifier(client, _settings(verifier_model="claude-haiku-test"))
        result = await verifier.verify(MESSAGES + [{"role": "assistant", "content": "a.txt b.txt"}])

        assert result.is_complete is True
        payload = http.post.call_args.kwargs["json"]
        assert payload["model"] == "claude-haiku-test"
        transcript = payload["messages"][0]["content"]
        assert "USER: List files" in transcript
        assert "ASSISTANT: a.txt b.txt" in transcript
        assert "You are an agent." not in transcript
