"""Tool plugin registry.

Plugins expose named actions; each action is advertised to the model as
``<plugin>_<action>`` in OpenAI function-schema form. Execution goes through
the registry, which enforces safety tiers and per-action rate limits and
never raises: every failure comes back as ``ToolResult(success=False)``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger("localagent.tools")

RATE_WINDOW = 60.0  # seconds


class SafetyTier(str, Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    FINANCIAL = "financial"
    ADMIN = "admin"  # always refused


@dataclass
class ToolAction:
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
    safety: SafetyTier = SafetyTier.READ
    rate_limit: int = 0  # calls per minute, 0 = unlimited


@dataclass
class ToolResult:
    success: bool
    output: str
    data: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"success": self.success, "output": self.output}
        if self.data is not None:
            result["data"] = self.data
        if self.error:
            result["error"] = self.error
        return result


class ToolPlugin:
    name = "base"
    display_name = "Base"
    category = "general"
    actions: list[ToolAction] = []

    def is_ready(self) -> bool:
        return True

    async def execute(self, action: str, params: dict[str, Any]) -> ToolResult:
        raise NotImplementedError


class ToolRegistry:

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._plugins: dict[str, ToolPlugin] = {}
        self._rate: dict[str, tuple[int, float]] = {}
        self._clock = clock

    def register(self, plugin: ToolPlugin) -> None:
        self._plugins[plugin.name] = plugin
        logger.info(f"Registered tool plugin: {plugin.name} ({len(plugin.actions)} actions)")

    def get(self, name: str) -> ToolPlugin | None:
        return self._plugins.get(name)

    def get_all(self) -> list[ToolPlugin]:
        return list(self._plugins.values())

    def get_schemas(self) -> list[dict[str, Any]]:
        """Function schemas for every action of every ready plugin."""
        schemas: list[dict[str, Any]] = []
        for plugin in self._plugins.values():
            if not plugin.is_ready():
                continue
            for action in plugin.actions:
                schemas.append({
                    "type": "function",
                    "function": {
                        "name": f"{plugin.name}_{action.name}",
                        "description": f"[{plugin.category}] {action.description}",
                        "parameters": action.parameters,
                    },
                })
        return schemas

    def resolve(self, full_name: str) -> tuple[ToolPlugin, ToolAction] | None:
        for plugin in self._plugins.values():
            for action in plugin.actions:
                if f"{plugin.name}_{action.name}" == full_name:
                    return plugin, action
        return None

    def safety_tier(self, full_name: str) -> SafetyTier | None:
        found = self.resolve(full_name)
        return found[1].safety if found else None

    def get_status(self) -> list[dict[str, Any]]:
        return [
            {
                "name": p.name,
                "display_name": p.display_name,
                "category": p.category,
                "ready": p.is_ready(),
                "actions": [{"name": a.name, "safety": a.safety.value} for a in p.actions],
            }
            for p in self._plugins.values()
        ]

    def _check_rate_limit(self, key: str, limit: int) -> bool:
        if limit <= 0:
            return True
        now = self._clock()
        count, reset_at = self._rate.get(key, (0, 0.0))
        if now >= reset_at:
            self._rate[key] = (1, now + RATE_WINDOW)
            return True
        if count >= limit:
            return False
        self._rate[key] = (count + 1, reset_at)
        return True

    async def execute(self, tool_name: str, action_name: str, params: dict[str, Any]) -> ToolResult:
        plugin = self._plugins.get(tool_name)
        if plugin is None:
            return ToolResult(False, f"Unknown tool: {tool_name}", error="TOOL_NOT_FOUND")

        action = next((a for a in plugin.actions if a.name == action_name), None)
        if action is None:
            return ToolResult(
                False, f"Unknown action: {action_name} for tool {tool_name}", error="ACTION_NOT_FOUND"
            )

        if not plugin.is_ready():
            return ToolResult(False, f"Tool {tool_name} is not configured", error="NOT_READY")

        if action.safety is SafetyTier.ADMIN:
            logger.warning(f"Refused admin action {tool_name}.{action_name}")
            return ToolResult(
                False,
                f"Action {action_name} requires admin approval and is currently blocked",
                error="SAFETY_BLOCKED",
            )

        if not self._check_rate_limit(f"{tool_name}_{action_name}", action.rate_limit):
            return ToolResult(
                False,
                f"Rate limit exceeded for {tool_name}.{action_name} (max {action.rate_limit}/min)",
                error="RATE_LIMITED",
            )

        start = time.monotonic()
        try:
            result = await plugin.execute(action_name, params or {})
        except Exception as e:
            duration = time.monotonic() - start
            logger.warning(f"{plugin.display_name}: {action_name} FAILED ({duration:.2f}s): {e}")
            return ToolResult(False, f"Tool execution error: {e}", error=str(e) or type(e).__name__)

        duration = time.monotonic() - start
        logger.info(
            f"{plugin.display_name}: {action_name} "
            f"{'ok' if result.success else 'failed'} ({duration:.2f}s)"
        )
        return result

    async def execute_by_name(self, full_name: str, params: dict[str, Any]) -> ToolResult:
        """Execute a combined ``<plugin>_<action>`` name as advertised in the schemas."""
        found = self.resolve(full_name)
        if found is None:
            return ToolResult(False, f"Unknown tool action: {full_name}", error="TOOL_NOT_FOUND")
        plugin, action = found
        return await self.execute(plugin.name, action.name, params)
