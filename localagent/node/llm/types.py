"""Shared types for the completion router and provider adapters."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Literal

RoutingStrategy = Literal["local_first", "cloud_first", "local_only", "cloud_only", "cost_optimized"]
FinishReason = Literal["stop", "tool_calls", "length", "error"]

ROUTING_STRATEGIES: tuple[str, ...] = (
    "local_first", "cloud_first", "local_only", "cloud_only", "cost_optimized",
)

# Provider names treated as zero-marginal-cost local backends
LOCAL_PROVIDER_NAMES = frozenset({"ollama", "lm_studio", "openai_compat"})


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"  # JSON string
    type: str = "function"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ChatMessage:
    role: str  # "system", "user", "assistant", "tool"
    content: str
    name: str | None = None
    tool_call_id: str | None = None
    tool_calls: list[ToolCall] | None = None

    def to_dict(self) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            msg["name"] = self.name
        if self.tool_call_id:
            msg["tool_call_id"] = self.tool_call_id
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        return msg


@dataclass
class CompletionRequest:
    messages: list[ChatMessage]
    tools: list[dict[str, Any]] | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass
class TokenUsage:
    prompt: int = 0
    completion: int = 0


@dataclass
class CompletionResponse:
    content: str | None
    finish_reason: FinishReason
    provider: str
    model: str
    latency: float = 0.0  # seconds
    tool_calls: list[ToolCall] = field(default_factory=list)
    tokens_used: TokenUsage | None = None

    @property
    def is_error(self) -> bool:
        return self.finish_reason == "error"

    @classmethod
    def error(cls, provider: str, model: str, message: str | None = None, latency: float = 0.0) -> CompletionResponse:
        return cls(content=message, finish_reason="error", provider=provider, model=model, latency=latency)


@dataclass
class LLMProviderConfig:
    """Static configuration for one backend."""

    name: str
    endpoint: str = ""
    model: str = ""
    api_key: str | None = None
    type: str | None = None  # "ollama", "anthropic", "openai_compat"; None = infer
    auth_type: str = "bearer"  # openai-compatible only
    custom_header: str | None = None
    priority: int = 100  # lower = preferred
    capabilities: list[str] = field(default_factory=list)
    max_context: int = 8192
    enabled: bool = True

    @property
    def is_local(self) -> bool:
        return self.name in LOCAL_PROVIDER_NAMES or (self.type or "").lower() == "ollama"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LLMProviderConfig:
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})

    def __repr__(self) -> str:
        # Never print credentials
        return (
            f"LLMProviderConfig(name={self.name!r}, endpoint={self.endpoint!r}, "
            f"model={self.model!r}, type={self.type!r}, priority={self.priority}, "
            f"enabled={self.enabled})"
        )


@dataclass
class ProviderHealth:
    """Mutable observed state of one provider, refreshed by health checks."""

    name: str
    endpoint: str
    model: str
    available: bool = False
    last_check: float = 0.0
    last_latency: float = 0.0
    error: str | None = None
    models: list[str] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "endpoint": self.endpoint,
            "model": self.model,
            "available": self.available,
            "last_check": self.last_check,
            "last_latency": self.last_latency,
            "error": self.error,
            "models": self.models,
        }


@dataclass
class LLMRouterConfig:
    strategy: str = "local_first"
    providers: list[LLMProviderConfig] = field(default_factory=list)
    max_latency: float = 30.0  # per-attempt budget, seconds
    retries: int = 1  # per-provider retry count
    retry_backoff: float = 0.5
    health_interval: float = 30.0


@dataclass
class StreamCallback:
    """Consumer hooks for a streamed completion.

    Exactly one of ``on_done`` / ``on_error`` fires per stream.
    """

    on_token: Callable[[str], None]
    on_done: Callable[[CompletionResponse], None]
    on_error: Callable[[Exception], None]
    on_tool_call: Callable[[ToolCall], None] | None = None
