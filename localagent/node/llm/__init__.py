"""LLM package.

    router.py    — LLMRouter (strategy ordering, retry/fallback, health, stats)
    providers/   — Ollama, OpenAI-compatible and Anthropic adapters
    safety.py    — tool output / history sanitization, tool-call validation
    types.py     — request/response/provider dataclasses
"""

from .router import LLMRouter
from .safety import (
    MAX_TOOL_CALLS_PER_TURN,
    build_system_prompt,
    sanitize_history,
    sanitize_tool_output,
    strip_secrets,
    validate_tool_call,
)
from .types import (
    ChatMessage,
    CompletionRequest,
    CompletionResponse,
    LLMProviderConfig,
    LLMRouterConfig,
    ProviderHealth,
    StreamCallback,
    ToolCall,
)

__all__ = [
    "ChatMessage",
    "CompletionRequest",
    "CompletionResponse",
    "LLMProviderConfig",
    "LLMRouter",
    "LLMRouterConfig",
    "MAX_TOOL_CALLS_PER_TURN",
    "ProviderHealth",
    "StreamCallback",
    "ToolCall",
    "build_system_prompt",
    "sanitize_history",
    "sanitize_tool_output",
    "strip_secrets",
    "validate_tool_call",
]
