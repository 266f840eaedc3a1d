"""Anthropic Messages API client and completion verifier (direct httpx).

AnthropicModelClient implements the model-call capability consumed by
the agent loop: a structured call() returning text + tool calls, and a
display-only stream() yielding text fragments. AnthropicVerifier asks
the model for a JSON completion verdict.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from tether.config import Settings
from tether.runtime.protocols import EmptyResponseError, RetryCallback
from tether.runtime.schemas import (
    ModelResponse,
    RetryInfo,
    ToolCall,
    ToolDefinition,
    VerificationResult,
)
from tether.runtime.verification import VerificationError

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"
_RETRY_STATUSES = (429, 500, 529)
_MAX_RETRY_AFTER = 30.0


class ModelError(RuntimeError):
    """Transport-level failure talking to the model endpoint."""


@dataclass
class StreamEvent:
    """A single event from the streaming API response."""

    type: str  # text_delta, error, done, message_stop
    text: str = ""
    stop_reason: str = ""


def _parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse an Anthropic SSE event dict. Only text and terminal events matter here.

    Ping keepalives are skipped; in-stream errors (HTTP 200 with an error
    body) become error events.
    """
    event_type = data.get("type")

    if event_type == "error":
        error = data.get("error", {})
        return StreamEvent(
            type="error",
            text=f"{error.get('type', 'unknown')}: {error.get('message', '')}",
        )

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        if delta.get("type") == "text_delta":
            return StreamEvent(type="text_delta", text=delta.get("text", ""))
        return None

    if event_type == "message_delta":
        return StreamEvent(type="done", stop_reason=data.get("delta", {}).get("stop_reason", ""))

    if event_type == "message_stop":
        return StreamEvent(type="message_stop")

    return None


def build_auth_headers(api_key: str, auth_token: str) -> dict[str, str]:
    """Auth header selection: Bearer for auth tokens and OAT keys, x-api-key otherwise."""
    headers: dict[str, str] = {
        "anthropic-version": _API_VERSION,
        "content-type": "application/json",
    }
    if auth_token:
        headers["authorization"] = f"Bearer {auth_token}"
        if "sk-ant-oat" in auth_token:
            headers["anthropic-beta"] = "oauth-2025-04-20"
    elif api_key:
        if "sk-ant-oat" in api_key:
            headers["authorization"] = f"Bearer {api_key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
        else:
            headers["x-api-key"] = api_key
    else:
        logger.warning("Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- API calls will fail")
    return headers


def split_messages(messages: list[dict[str, Any]]) -> tuple[str, list[dict[str, Any]]]:
    """Pull system turns out and merge consecutive same-role turns.

    The runtime's transcript can hold back-to-back user turns (tool results
    followed by a corrective instruction); the API wants them alternating.
    """
    system_parts: list[str] = []
    merged: list[dict[str, Any]] = []
    for m in messages:
        role, content = m.get("role"), str(m.get("content", ""))
        if role == "system":
            system_parts.append(content)
            continue
        if merged and merged[-1]["role"] == role:
            merged[-1]["content"] += f"\n\n{content}"
        else:
            merged.append({"role": role, "content": content})
    if merged and merged[0]["role"] != "user":
        merged.insert(0, {"role": "user", "content": "(conversation continues)"})
    return "\n\n".join(system_parts), merged


def parse_response(data: dict[str, Any]) -> ModelResponse:
    text_parts: list[str] = []
    tool_calls: list[ToolCall] = []
    for block in data.get("content", []):
        if block.get("type") == "text":
            text_parts.append(block.get("text", ""))
        elif block.get("type") == "tool_use":
            tool_calls.append(ToolCall(id=block.get("id"), name=block["name"], arguments=block.get("input") or {}))
    stop_reason = data.get("stop_reason")
    return ModelResponse(
        content="\n".join(p for p in text_parts if p),
        tool_calls=tool_calls,
        needs_more_work=False if stop_reason == "end_turn" and not tool_calls else None,
    )


class AnthropicModelClient:
    def __init__(self, settings: Settings, http: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._http = http

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        if self._http is not None:
            return
        settings = self._settings
        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=build_auth_headers(settings.anthropic_api_key, settings.anthropic_auth_token),
            timeout=timeout,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        )
        logger.info("Model client initialized (%s)", settings.api_base_url)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    def build_payload(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        *,
        model: str | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        system, turns = split_messages(messages)
        payload: dict[str, Any] = {
            "model": model or self._settings.model,
            "max_tokens": self._settings.max_tokens,
            "messages": turns,
        }
        if system:
            payload["system"] = [{"type": "text", "text": system, "cache_control": {"type": "ephemeral"}}]
        if tools:
            payload["tools"] = [t.to_api() for t in tools]
        if stream:
            payload["stream"] = True
        return payload

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
        on_retry: RetryCallback | None = None,
        *,
        model: str | None = None,
    ) -> ModelResponse:
        data = await self._post(self.build_payload(messages, tools, model=model), on_retry)
        response = parse_response(data)
        if not response.content.strip() and not response.tool_calls:
            raise EmptyResponseError(f"Empty response from model (stop_reason={data.get('stop_reason')})")
        return response

    async def _post(self, payload: dict[str, Any], on_retry: RetryCallback | None = None) -> dict[str, Any]:
        """POST /v1/messages with one retry for 429/500/529 and timeouts."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        last_error: Exception | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await self._http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    return response.json()

                try:
                    error_data = response.json()
                    error_type = error_data.get("error", {}).get("type", "unknown")
                    error_msg = error_data.get("error", {}).get("message", "unknown error")
                except ValueError:
                    error_type = "http_error"
                    error_msg = f"HTTP {response.status_code}: {response.text[:500]}"

                if response.status_code in _RETRY_STATUSES and attempt == 0:
                    retry_after = min(float(response.headers.get("retry-after", "1")), _MAX_RETRY_AFTER)
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    if on_retry:
                        on_retry(RetryInfo(
                            attempt=1,
                            max_attempts=1,
                            delay_seconds=retry_after,
                            reason=f"{error_type}: {error_msg}",
                        ))
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ModelError(f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}")
                break

            except httpx.TimeoutException as e:
                last_error = ModelError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    if on_retry:
                        on_retry(RetryInfo(attempt=1, max_attempts=1, delay_seconds=1.0, reason="timeout"))
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ModelError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ModelError("API call failed with unknown error")

    async def stream(
        self,
        messages: list[dict[str, Any]],
        tools: list[ToolDefinition] | None = None,
    ) -> AsyncIterator[str]:
        """Yield text fragments from a streaming call (display only)."""
        if not self._http:
            raise RuntimeError("httpx client not initialized -- call start() first")

        payload = self.build_payload(messages, tools, stream=True)
        async with self._http.stream("POST", "/v1/messages", json=payload) as response:
            if response.status_code != 200:
                body = await response.aread()
                raise ModelError(f"Streaming request failed ({response.status_code}): {body.decode()[:500]}")

            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                event = _parse_sse_event(json.loads(line[6:]))
                if event is None:
                    continue
                if event.type == "error":
                    raise ModelError(f"Stream error: {event.text}")
                if event.type == "text_delta" and event.text:
                    yield event.text
                if event.type == "message_stop":
                    return


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

VERIFIER_SYSTEM_PROMPT = """You are a strict completion verifier for an autonomous agent.

Given the transcript of an agent run, decide whether the agent's latest answer fully satisfies the user's original request.

Respond with a single JSON object and nothing else:
{"isComplete": true|false, "missingItems": ["..."], "reason": "...", "confidence": 0.0-1.0}"""

_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


def parse_verdict(text: str) -> VerificationResult:
    match = _JSON_OBJECT_RE.search(text)
    if not match:
        raise VerificationError(f"Verifier returned no JSON object: {text[:200]}")
    try:
        return VerificationResult.model_validate(json.loads(match.group(0)))
    except (json.JSONDecodeError, ValidationError) as e:
        raise VerificationError(f"Invalid verifier output: {e}") from e


def _transcript(messages: list[dict[str, Any]]) -> str:
    lines = []
    for m in messages:
        if m.get("role") == "system":
            continue
        lines.append(f"{str(m.get('role', '')).upper()}: {m.get('content', '')}")
    return "\n\n".join(lines)


class AnthropicVerifier:
    def __init__(self, client: AnthropicModelClient, settings: Settings) -> None:
        self._client = client
        self._model = settings.effective_verifier_model

    async def verify(self, messages: list[dict[str, Any]]) -> VerificationResult:
        prompt = [
            {"role": "system", "content": VERIFIER_SYSTEM_PROMPT},
            {"role": "user", "content": f"Transcript:\n\n{_transcript(messages)}\n\nReturn the JSON verdict."},
        ]
        try:
            response = await self._client.call(prompt, model=self._model)
        except EmptyResponseError as e:
            raise VerificationError("Verifier returned an empty response") from e
        return parse_verdict(response.content)
