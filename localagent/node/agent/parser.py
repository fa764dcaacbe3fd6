"""Parse the agent's structured JSON turn.

The model is asked for exactly one JSON object, either
``{"thought": ..., "tool": ..., "params": {...}}`` or
``{"thought": ..., "answer": ...}``. Models wander from the format, so
anything else parses to ``None`` and the caller degrades to a direct answer.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_DECODER = json.JSONDecoder()


@dataclass(frozen=True)
class FinalAnswer:
    thought: str
    answer: str


@dataclass(frozen=True)
class ToolRequest:
    thought: str
    tool: str
    params: dict[str, Any] = field(default_factory=dict)


def extract_json_block(content: str) -> str | None:
    """First fenced block if there is one, then the first complete ``{...}`` object inside it.

    Braces in prose after the object (``fill in {name}``) are left alone.
    """
    text = content.strip()
    fence = _FENCE_RE.search(text)
    if fence:
        text = fence.group(1).strip()

    start = text.find("{")
    while start != -1:
        try:
            _, end = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        return text[start:end]
    return None


def parse_agent_response(content: str) -> FinalAnswer | ToolRequest | None:
    if not isinstance(content, str):
        return None

    block = extract_json_block(content)
    if block is None:
        return None

    try:
        parsed = json.loads(block)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None

    thought = parsed.get("thought")
    thought = thought if isinstance(thought, str) else ""

    if isinstance(parsed.get("answer"), str):
        return FinalAnswer(thought=thought, answer=parsed["answer"])
    if isinstance(parsed.get("tool"), str):
        params = parsed.get("params")
        return ToolRequest(
            thought=thought,
            tool=parsed["tool"],
            params=params if isinstance(params, dict) else {},
        )
    return None
