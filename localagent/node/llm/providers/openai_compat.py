"""OpenAI-compatible adapter.

Works with LM Studio, vLLM, LocalAI, text-generation-webui, OpenRouter and
anything else exposing /v1/chat/completions.
"""

from __future__ import annotations

import json
import re
from typing import Any, AsyncIterator

from ..types import CompletionRequest, CompletionResponse, TokenUsage, ToolCall
from .base import ACCEPTED, FINISH, TOKEN, TOOL_CALL, BaseProvider, ProviderError, new_call_id

_HEADER_NAME_RE = re.compile(r"^[A-Za-z0-9-]+$")


class OpenAICompatProvider(BaseProvider):
    family = "openai_compat"

    def auth_headers(self) -> dict[str, str]:
        key = self.config.api_key
        if not key:
            return {}

        auth_type = (self.config.auth_type or "bearer").lower()
        if auth_type == "x-api-key":
            return {"X-API-Key": key}
        if auth_type == "api-key":
            return {"api-key": key}  # Azure style
        if auth_type == "custom":
            header = self.config.custom_header or ""
            if _HEADER_NAME_RE.match(header):
                return {header: key}
            self.logger.warning(f"{self.name}: ignoring invalid custom auth header name")
            return {}
        return {"Authorization": f"Bearer {key}"}

    async def _probe(self) -> tuple[bool, list[str] | None, str | None]:
        res = await self.http.get(
            f"{self.endpoint}/v1/models",
            headers=self.auth_headers(),
            timeout=self.probe_timeout,
        )
        if not res.is_success:
            return False, self.health.models, f"HTTP {res.status_code}"
        models = [m.get("id", "") for m in (res.json().get("data") or [])]
        return True, models, None

    def _body(self, request: CompletionRequest, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.to_dict() for m in request.messages],
            "temperature": request.temperature if request.temperature is not None else 0.7,
            "max_tokens": request.max_tokens or 2048,
            "stream": stream,
        }
        if request.tools:
            body["tools"] = request.tools
            body["tool_choice"] = "auto"
        return body

    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        res = await self.http.post(
            f"{self.endpoint}/v1/chat/completions",
            json=self._body(request, stream=False),
            headers={"Content-Type": "application/json", **self.auth_headers()},
            timeout=self.request_timeout,
        )
        self._raise_for_status(res)

        try:
            data = res.json()
        except json.JSONDecodeError as e:
            raise ProviderError(f"{self.name} returned malformed JSON: {e}") from e

        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=tc.get("id") or new_call_id(),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=(tc.get("function") or {}).get("arguments") or "{}",
            )
            for tc in message.get("tool_calls") or []
        ]

        reason = choice.get("finish_reason")
        if reason == "tool_calls" or tool_calls:
            finish = "tool_calls"
        elif reason == "length":
            finish = "length"
        else:
            finish = "stop"

        usage = data.get("usage")
        return CompletionResponse(
            content=message.get("content") or None,
            finish_reason=finish,
            provider=self.name,
            model=self.config.model,
            tool_calls=tool_calls,
            tokens_used=TokenUsage(
                prompt=usage.get("prompt_tokens") or 0,
                completion=usage.get("completion_tokens") or 0,
            ) if usage else None,
        )

    async def _stream(self, request: CompletionRequest) -> AsyncIterator[tuple[str, Any]]:
        headers = {"Content-Type": "application/json", **self.auth_headers()}
        async with self.http.stream(
            "POST",
            f"{self.endpoint}/v1/chat/completions",
            json=self._body(request, stream=True),
            headers=headers,
            timeout=self.request_timeout,
        ) as res:
            if not res.is_success:
                await res.aread()
                self._raise_for_status(res)
            yield ACCEPTED, None

            # Tool call fragments arrive spread across chunks, keyed by index
            partial: dict[int, dict[str, str]] = {}
            async for line in res.aiter_lines():
                if not line.startswith("data: "):
                    continue
                payload = line[6:].strip()
                if payload == "[DONE]":
                    continue
                try:
                    chunk = json.loads(payload)
                except json.JSONDecodeError as e:
                    self.logger.warning(f"[{self.name}] Stream parse error: {e}")
                    continue

                choice = (chunk.get("choices") or [{}])[0]
                delta = choice.get("delta") or {}
                if delta.get("content"):
                    yield TOKEN, delta["content"]
                for tc in delta.get("tool_calls") or []:
                    idx = tc.get("index", 0)
                    fn = tc.get("function") or {}
                    entry = partial.setdefault(idx, {"id": tc.get("id") or new_call_id(), "name": "", "args": ""})
                    if fn.get("name"):
                        entry["name"] = fn["name"]
                    if fn.get("arguments"):
                        entry["args"] += fn["arguments"]
                if choice.get("finish_reason") == "length":
                    yield FINISH, "length"

            for entry in partial.values():
                yield TOOL_CALL, ToolCall(id=entry["id"], name=entry["name"], arguments=entry["args"] or "{}")
