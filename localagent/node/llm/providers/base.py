"""Common behaviour shared by every provider adapter.

Each adapter implements three hooks:
    _probe()     -> (available, models, error)   cheap family-specific check
    _complete()  -> CompletionResponse           may raise; wrapped here
    _stream()    -> async iterator of deltas     may raise; wrapped here

The public ``health_check``/``complete``/``stream`` methods own the timing,
health bookkeeping and the error contract, so adapters stay thin.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, AsyncIterator

import httpx

from ..types import (
    CompletionRequest,
    CompletionResponse,
    LLMProviderConfig,
    ProviderHealth,
    StreamCallback,
    ToolCall,
)


class ProviderError(RuntimeError):
    """A provider call failed (transport, status code or malformed payload)."""


class StreamRejected(ProviderError):
    """A streaming request failed before the provider accepted it."""


# Stream delta kinds yielded by _stream()
ACCEPTED = "accepted"
TOKEN = "token"
TOOL_CALL = "tool_call"
FINISH = "finish"


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


class BaseProvider:
    family = "base"
    default_endpoint = ""
    request_timeout = 120.0
    probe_timeout = 5.0

    def __init__(
        self,
        config: LLMProviderConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._http_client: httpx.AsyncClient | None = None
        self.health = ProviderHealth(
            name=config.name,
            endpoint=self.endpoint,
            model=config.model,
        )
        self.logger = logging.getLogger(f"localagent.provider.{self.family}")

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def endpoint(self) -> str:
        return (self.config.endpoint or self.default_endpoint).rstrip("/")

    @property
    def is_local(self) -> bool:
        return self.config.is_local

    def get_health(self) -> ProviderHealth:
        return self.health

    @property
    def http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(transport=self._transport)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    # ─── Health ──────────────────────────────────────────────────────

    async def health_check(self) -> bool:
        start = time.monotonic()
        try:
            available, models, error = await asyncio.wait_for(
                self._probe(), timeout=self.probe_timeout
            )
        except asyncio.TimeoutError:
            available, models, error = False, self.health.models, f"Health check timed out after {self.probe_timeout}s"
        except Exception as e:
            available, models, error = False, self.health.models, str(e) or type(e).__name__

        self.health.available = available
        self.health.models = models
        self.health.error = error
        self.health.last_check = time.time()
        self.health.last_latency = time.monotonic() - start

        if not available:
            self.logger.debug(f"{self.name} unavailable: {error}")
        return available

    async def _probe(self) -> tuple[bool, list[str] | None, str | None]:
        raise NotImplementedError

    # ─── Completion ──────────────────────────────────────────────────

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        start = time.monotonic()
        try:
            response = await self._complete(request)
        except Exception as e:
            latency = time.monotonic() - start
            self.logger.warning(f"{self.name} completion failed after {latency:.2f}s: {e}")
            return CompletionResponse.error(self.name, self.config.model, latency=latency)

        response.latency = time.monotonic() - start
        self.health.last_latency = response.latency
        return response

    async def _complete(self, request: CompletionRequest) -> CompletionResponse:
        raise NotImplementedError

    # ─── Streaming ───────────────────────────────────────────────────

    async def stream(self, request: CompletionRequest, callbacks: StreamCallback) -> None:
        """Stream a completion into ``callbacks``.

        Raises StreamRejected if the provider fails before accepting the
        request. Once accepted, failures are delivered via ``on_error``.
        """
        start = time.monotonic()
        accepted = False
        content: list[str] = []
        tool_calls: list[ToolCall] = []
        finish_reason = "stop"

        try:
            async for kind, value in self._stream(request):
                if kind == ACCEPTED:
                    accepted = True
                elif kind == TOKEN:
                    accepted = True
                    content.append(value)
                    callbacks.on_token(value)
                elif kind == TOOL_CALL:
                    accepted = True
                    tool_calls.append(value)
                    if callbacks.on_tool_call:
                        callbacks.on_tool_call(value)
                elif kind == FINISH and value:
                    finish_reason = value
        except Exception as e:
            if not accepted:
                raise StreamRejected(f"{self.name}: {e}") from e
            self.logger.warning(f"{self.name} stream aborted mid-response: {e}")
            callbacks.on_error(e)
            return

        if tool_calls:
            finish_reason = "tool_calls"
        callbacks.on_done(CompletionResponse(
            content="".join(content) or None,
            finish_reason=finish_reason,  # type: ignore[arg-type]
            provider=self.name,
            model=self.config.model,
            latency=time.monotonic() - start,
            tool_calls=tool_calls,
        ))

    def _stream(self, request: CompletionRequest) -> AsyncIterator[tuple[str, Any]]:
        raise NotImplementedError

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.is_success:
            return
        raise ProviderError(f"{self.name} {response.status_code}: {response.text[:200]}")
