"""Anthropic adapter speaking the native /v1/messages API.

Supports plain API keys (x-api-key) and OAuth tokens (Bearer), the latter
recognised by the 'sk-ant-oat' prefix.
"""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

from ..types import ChatMessage, CompletionRequest, CompletionResponse, TokenUsage, ToolCall
from .base import ACCEPTED, FINISH, TOKEN, TOOL_CALL, BaseProvider

API_VERSION = "2023-06-01"


def convert_messages(messages: list[ChatMessage]) -> tuple[str, list[dict[str, Any]]]:
    """Split system turns out and map the rest onto Anthropic content blocks."""
    system = "\n\n".join(m.content for m in messages if m.role == "system")

    converted: list[dict[str, Any]] = []
    for m in messages:
        if m.role == "system":
            continue
        if m.role == "assistant" and m.tool_calls:
            blocks: list[dict[str, Any]] = []
            if m.content:
                blocks.append({"type": "text", "text": m.content})
            for tc in m.tool_calls:
                try:
                    tool_input = json.loads(tc.arguments or "{}")
                except json.JSONDecodeError:
                    tool_input = {}
                blocks.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tool_input})
            converted.append({"role": "assistant", "content": blocks})
        elif m.role == "tool":
            converted.append({
                "role": "user",
                "content": [{"type": "tool_result", "tool_use_id": m.tool_call_id, "content": m.content}],
            })
        else:
            converted.append({"role": m.role, "content": m.content})
    return system, converted


def convert_tools(tools: list[dict[str, Any]] | None) -> list[dict[str, Any]] | None:
    if not tools:
        return None
    return [
        {
            "name": t["function"]["name"],
            "description": t["function"].get("description", ""),
            "input_schema": t["function"].get("parameters") or {"type": "object", "properties": {}},
        }
        for t in tools
    ]


class AnthropicProvider(BaseProvider):
    family = "anthropic"
    default_endpoint = "https://api.anthropic.com"
    probe_timeout = 10.0

    @property
    def is_oauth(self) -> bool:
        return "sk-ant-oat" in (self.config.api_key or "")

    def build_headers(self) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "anthropic-version": API_VERSION,
        }
        key = self.config.api_key
        if not key:
            return headers

        if self.is_oauth:
            headers["Authorization"] = f"Bearer {key}"
            headers["anthropic-beta"] = "oauth-2025-04-20"
            headers["user-agent"] = "localagent/0.1 (local, api)"
        else:
            headers["x-api-key"] = key
        return headers

    async def _probe(self) -> tuple[bool, list[str] | None, str | None]:
        # Smallest billable request: one output token
        res = await self.http.post(
            f"{self.endpoint}/v1/messages",
            headers=self.build_headers(),
            json={
                "model": self.config.model,
                "max_tokens": 1,
                "messages": [{"role": "user", "content": "hi"}],
            },
            timeout=self.probe_timeout,
        )
        if res.is_success:
            return True, [self.config.model], None
        return False, self.health.models, f"{res.status_code}: {res.text[:200]}"

    def _body(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        system, messages = convert_messages(request.messages)
        body: dict[str, Any] = {
            "model": self.config.model,
            "max_tokens": request.max_tokens or 2048,
            "messages": messages,
        }
        if stream:
            body["stream"] = True
        if system:
            body["system"] = system
        if request.temperature is not None:
            body["temperature"] = request.temperature
        tools = convert_tools(request.tools)
        if tools:
            body["tools"] = tools
        return body

    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        res = await self.http.post(
            f"{self.endpoint}/v1/messages",
            headers=self.build_headers(),
            json=self._body(request, stream=False),
            timeout=self.request_timeout,
        )
        self._raise_for_status(res)
        data = res.json()

        content: str | None = None
        tool_calls: list[ToolCall] = []
        for block in data.get("content") or []:
            if block.get("type") == "text":
                content = (content or "") + block.get("text", "")
            elif block.get("type") == "tool_use":
                tool_calls.append(ToolCall(
                    id=block.get("id", ""),
                    name=block.get("name", ""),
                    arguments=json.dumps(block.get("input") or {}),
                ))

        stop = data.get("stop_reason")
        finish = "tool_calls" if stop == "tool_use" else "length" if stop == "max_tokens" else "stop"

        usage = data.get("usage")
        return CompletionResponse(
            content=content,
            finish_reason=finish,
            provider=self.name,
            model=self.config.model,
            tool_calls=tool_calls,
            tokens_used=TokenUsage(
                prompt=usage.get("input_tokens") or 0,
                completion=usage.get("output_tokens") or 0,
            ) if usage else None,
        )

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[tuple[str, Any]]:
        async with self.http.stream(
            "POST",
            f"{self.endpoint}/v1/messages",
            headers=self.build_headers(),
            json=self._body(request, stream=True),
            timeout=self.request_timeout,
        ) as res:
            if not res.is_success:
                await res.aread()
                self._raise_for_status(res)
            yield ACCEPTED, None

            active: dict[int, dict[str, str]] = {}
            async for line in res.aiter_lines():
                if not line.startswith("data: "):
                    continue
                payload = line[6:].strip()
                if not payload:
                    continue
                try:
                    event = json.loads(payload)
                except json.JSONDecodeError as e:
                    self.logger.warning(f"[{self.name}] Stream parse error: {e}")
                    continue

                etype = event.get("type")
                index = event.get("index", 0)
                if etype == "content_block_start":
                    block = event.get("content_block") or {}
                    if block.get("type") == "tool_use":
                        active[index] = {"id": block.get("id", ""), "name": block.get("name", ""), "args": ""}
                elif etype == "content_block_delta":
                    delta = event.get("delta") or {}
                    if delta.get("type") == "text_delta":
                        yield TOKEN, delta.get("text", "")
                    elif delta.get("type") == "input_json_delta" and index in active:
                        active[index]["args"] += delta.get("partial_json", "")
                elif etype == "content_block_stop" and index in active:
                    tool = active.pop(index)
                    yield TOOL_CALL, ToolCall(id=tool["id"], name=tool["name"], arguments=tool["args"] or "{}")
                elif etype == "message_delta":
                    if (event.get("delta") or {}).get("stop_reason") == "max_tokens":
                        yield FINISH, "length"
                elif etype == "error":
                    raise RuntimeError((event.get("error") or {}).get("message", "stream error"))
