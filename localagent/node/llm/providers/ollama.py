"""Ollama adapter using the official Python SDK."""

from __future__ import annotations

import json
from typing import Any, AsyncIterator

import httpx
import ollama

from ..types import ChatMessage, CompletionRequest, CompletionResponse, LLMProviderConfig, TokenUsage, ToolCall
from .base import ACCEPTED, TOKEN, TOOL_CALL, BaseProvider, new_call_id


def _as_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    if isinstance(obj, dict):
        return obj
    return dict(obj)


def _to_ollama_message(msg: ChatMessage) -> dict[str, Any]:
    out: dict[str, Any] = {"role": msg.role, "content": msg.content}
    if msg.tool_calls:
        calls = []
        for tc in msg.tool_calls:
            try:
                args = json.loads(tc.arguments or "{}")
            except json.JSONDecodeError:
                args = {}
            calls.append({"function": {"name": tc.name, "arguments": args}})
        out["tool_calls"] = calls
    if msg.tool_call_id:
        # Ollama expects tool results as role 'tool'
        out["role"] = "tool"
    return out


def _parse_tool_calls(message: dict[str, Any]) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for tc in message.get("tool_calls") or []:
        fn = tc.get("function") or {}
        args = fn.get("arguments") or {}
        calls.append(ToolCall(
            id=new_call_id(),
            name=fn.get("name") or "",
            arguments=args if isinstance(args, str) else json.dumps(args),
        ))
    return calls


class OllamaProvider(BaseProvider):
    family = "ollama"
    default_endpoint = "http://localhost:11434"

    def __init__(
        self,
        config: LLMProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(config, transport)
        kwargs: dict[str, Any] = {"host": self.endpoint, "timeout": self.request_timeout}
        if transport is not None:
            kwargs["transport"] = transport
        self._client = ollama.AsyncClient(**kwargs)

    async def _probe(self) -> tuple[bool, list[str] | None, str | None]:
        response = _as_dict(await self._client.list())
        models = [
            m.get("model") or m.get("name") or ""
            for m in (_as_dict(m) for m in response.get("models", []))
        ]
        target = self.config.model
        available = any(m == target or m.startswith(target + ":") for m in models)
        error = None if available else f'Model "{target}" not found. Available: {", ".join(models)}'
        return available, models, error

    def _build_kwargs(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.config.model,
            "messages": [_to_ollama_message(m) for m in request.messages],
            "stream": stream,
            "options": {
                "temperature": request.temperature if request.temperature is not None else 0.7,
                "num_predict": request.max_tokens or 2048,
            },
        }
        if request.tools:
            kwargs["tools"] = request.tools
        return kwargs

    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        data = _as_dict(await self._client.chat(**self._build_kwargs(request, stream=False)))
        message = _as_dict(data.get("message"))
        tool_calls = _parse_tool_calls(message)

        usage = None
        if data.get("eval_count"):
            usage = TokenUsage(prompt=data.get("prompt_eval_count") or 0, completion=data["eval_count"])

        finish = "tool_calls" if tool_calls else ("length" if data.get("done_reason") == "length" else "stop")
        return CompletionResponse(
            content=message.get("content") or None,
            finish_reason=finish,
            provider=self.name,
            model=self.config.model,
            tool_calls=tool_calls,
            tokens_used=usage,
        )

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[tuple[str, Any]]:
        # The SDK defers the HTTP request to the first iteration
        first = True
        async for chunk in await self._client.chat(**self._build_kwargs(request, stream=True)):
            if first:
                first = False
                yield ACCEPTED, None
            message = _as_dict(_as_dict(chunk).get("message"))
            if message.get("content"):
                yield TOKEN, message["content"]
            for tc in _parse_tool_calls(message):
                yield TOOL_CALL, tc

    async def aclose(self) -> None:
        await super().aclose()
        inner = getattr(self._client, "_client", None)
        if inner is not None:
            await inner.aclose()
