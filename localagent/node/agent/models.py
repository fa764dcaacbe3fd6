from __future__ import annotations

import math
import time
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Awaitable, Callable, Literal, Mapping, Union

# Server-side bounds; a caller override is clamped into [MIN, HARD]
HARD_LIMITS: dict[str, float] = {
    "max_steps": 25,
    "max_tokens_per_step": 4096,
    "tool_timeout": 60.0,
    "total_timeout": 600.0,
    "temperature": 1.0,
}
MIN_LIMITS: dict[str, float] = {
    "max_steps": 1,
    "max_tokens_per_step": 256,
    "tool_timeout": 5.0,
    "total_timeout": 10.0,
    "temperature": 0.0,
}

_INT_FIELDS = ("max_steps", "max_tokens_per_step")
_FLOAT_FIELDS = ("tool_timeout", "total_timeout", "temperature")

RunStatus = Literal["running", "completed", "failed", "cancelled", "max_steps"]
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled", "max_steps"})


class AgentConfigError(ValueError):
    """A run was requested with an invalid goal or config override."""


@dataclass(frozen=True)
class AgentConfig:
    max_steps: int = 10
    max_tokens_per_step: int = 2048
    tool_timeout: float = 30.0  # seconds
    total_timeout: float = 300.0  # seconds
    confirm_destructive: bool = True
    allowed_tools: tuple[str, ...] = ()  # empty = every registered tool
    blocked_tools: tuple[str, ...] = ()
    temperature: float = 0.3

    @classmethod
    def from_app_config(cls, cfg: Any) -> AgentConfig:
        """Server defaults from the application Config, clamped like any override."""
        return cls(
            max_steps=_clamp_number("max_steps", cfg.agent_max_steps, cls.max_steps),
            max_tokens_per_step=_clamp_number(
                "max_tokens_per_step", cfg.agent_max_tokens_per_step, cls.max_tokens_per_step
            ),
            tool_timeout=_clamp_number("tool_timeout", cfg.agent_tool_timeout, cls.tool_timeout),
            total_timeout=_clamp_number("total_timeout", cfg.agent_total_timeout, cls.total_timeout),
            confirm_destructive=bool(cfg.agent_confirm_destructive),
            blocked_tools=tuple(t for t in cfg.agent_blocked_tools if isinstance(t, str)),
            temperature=_clamp_number("temperature", cfg.agent_temperature, cls.temperature),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            f.name: list(getattr(self, f.name)) if f.name.endswith("_tools") else getattr(self, f.name)
            for f in fields(self)
        }


def _clamp_number(key: str, value: Any, default: float) -> Any:
    # bool is an int subclass; "true" is not a step count
    if isinstance(value, bool):
        number = float(default)
    else:
        try:
            number = float(value)
        except OverflowError:
            # Integers past float range clamp like infinity
            number = math.inf if value > 0 else -math.inf
        except (TypeError, ValueError):
            number = float(default)
        if math.isnan(number):
            number = float(default)

    number = min(max(number, MIN_LIMITS[key]), HARD_LIMITS[key])
    return int(number) if key in _INT_FIELDS else number


def _narrow_allow_list(requested: Any, server: tuple[str, ...]) -> tuple[str, ...]:
    if not isinstance(requested, (list, tuple)):
        return server
    names = tuple(t for t in requested if isinstance(t, str) and t)
    if not names:
        return server
    if not server:
        return names
    # Only entries that already fall inside the server allow-list survive
    kept = tuple(n for n in names if any(n.startswith(s) for s in server))
    return kept or server


def sanitize_agent_config(raw: Mapping[str, Any] | None, defaults: AgentConfig | None = None) -> AgentConfig:
    """Merge a caller override onto server defaults.

    Numeric fields are clamped into [MIN_LIMITS, HARD_LIMITS]; an invalid
    value falls back to the default. ``confirm_destructive`` can be turned on
    but never off, ``allowed_tools`` can only narrow, and ``blocked_tools``
    always comes from ``defaults``.
    """
    defaults = defaults or AgentConfig()
    if raw is None:
        return defaults
    if not isinstance(raw, Mapping):
        raise AgentConfigError(f"Agent config override must be a mapping, got {type(raw).__name__}")

    numbers = {
        key: _clamp_number(key, raw.get(key, getattr(defaults, key)), getattr(defaults, key))
        for key in _INT_FIELDS + _FLOAT_FIELDS
    }
    return AgentConfig(
        **numbers,
        confirm_destructive=defaults.confirm_destructive or raw.get("confirm_destructive") is True,
        allowed_tools=_narrow_allow_list(raw.get("allowed_tools"), defaults.allowed_tools),
        blocked_tools=defaults.blocked_tools,
    )


@dataclass(frozen=True)
class AgentStep:
    index: int
    thought: str
    action: str | None  # tool name; None for a final answer
    action_input: dict[str, Any] | None
    observation: str | None
    timestamp: float
    duration: float  # seconds

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def new_run_id() -> str:
    return f"run_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


@dataclass
class AgentRun:
    """Aggregate result of one agent run. Read-only once sealed."""

    goal: str
    id: str = field(default_factory=new_run_id)
    status: RunStatus = "running"
    steps: list[AgentStep] = field(default_factory=list)
    result: str | None = None
    error: str | None = None
    started_at: float = field(default_factory=time.time)
    completed_at: float | None = None
    total_duration: float = 0.0
    provider: str | None = None
    model: str | None = None
    tools_used: list[str] = field(default_factory=list)
    _sealed: bool = field(default=False, init=False, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_sealed", False):
            raise AttributeError(f"AgentRun {self.id} is {self.status} and can no longer change")
        super().__setattr__(name, value)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def add_step(self, step: AgentStep) -> None:
        if self._sealed:
            raise AttributeError(f"AgentRun {self.id} is {self.status} and can no longer change")
        self.steps.append(step)

    def record_tool(self, name: str) -> None:
        if name not in self.tools_used:
            self.tools_used.append(name)

    def seal(self) -> None:
        if self.status not in TERMINAL_STATUSES:
            raise ValueError(f"Cannot seal run {self.id} in status {self.status}")
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "tools_used", tuple(self.tools_used))
        object.__setattr__(self, "_sealed", True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "goal": self.goal,
            "status": self.status,
            "steps": [s.to_dict() for s in self.steps],
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "total_duration": self.total_duration,
            "provider": self.provider,
            "model": self.model,
            "tools_used": list(self.tools_used),
        }


MaybeAwaitable = Union[Any, Awaitable[Any]]


@dataclass
class AgentCallbacks:
    """Observer hooks for a run. Each may be a plain function or a coroutine function.

    Hooks run inline on the loop, so a hook that never returns stalls its run.
    Exceptions raised by a hook are logged and ignored; an exception from
    ``on_confirm_action`` counts as a decline.
    """

    on_step: Callable[[AgentStep, AgentRun], MaybeAwaitable] | None = None
    on_tool_call: Callable[[str, dict[str, Any]], MaybeAwaitable] | None = None
    on_tool_result: Callable[[str, Any], MaybeAwaitable] | None = None
    on_thinking: Callable[[str], MaybeAwaitable] | None = None
    on_complete: Callable[[AgentRun], MaybeAwaitable] | None = None
    on_error: Callable[[BaseException, AgentRun], MaybeAwaitable] | None = None
    on_confirm_action: Callable[[str, dict[str, Any]], MaybeAwaitable] | None = None


@dataclass
class AgentEvent:
    type: str  # "agent.started", "agent.tool_call", "agent.step", "agent.completed"
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, **self.data}


class ActiveRunRegistry:
    """Run id -> cancellation flag for every in-flight run, bounded in size."""

    def __init__(self, max_concurrent: int = 3) -> None:
        self.max_concurrent = max(1, int(max_concurrent))
        self._runs: dict[str, bool] = {}

    def register(self, run_id: str) -> bool:
        """Claim a slot. False when the ceiling is reached."""
        if len(self._runs) >= self.max_concurrent:
            return False
        self._runs[run_id] = False
        return True

    def cancel(self, run_id: str) -> bool:
        if run_id not in self._runs:
            return False
        self._runs[run_id] = True
        return True

    def is_cancelled(self, run_id: str) -> bool:
        return self._runs.get(run_id, False)

    def remove(self, run_id: str) -> None:
        self._runs.pop(run_id, None)

    def list_active(self) -> list[str]:
        return list(self._runs)

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)
