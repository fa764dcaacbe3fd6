"""Tools package.

    registry.py   — ToolRegistry, ToolPlugin, ToolAction, ToolResult, SafetyTier
    workspace.py  — WorkspacePlugin (read/list/write confined to the workspace)
    web_search.py — WebSearchPlugin (DuckDuckGo)
"""

from .registry import SafetyTier, ToolAction, ToolPlugin, ToolRegistry, ToolResult
from .web_search import WebSearchPlugin
from .workspace import WorkspacePlugin


def create_default_registry(cfg) -> ToolRegistry:
    """Registry with the built-in plugins enabled by the application config."""
    registry = ToolRegistry()
    registry.register(WorkspacePlugin(cfg.workspace_root()))
    if cfg.enable_web_search:
        registry.register(WebSearchPlugin())
    return registry


__all__ = [
    "SafetyTier",
    "ToolAction",
    "ToolPlugin",
    "ToolRegistry",
    "ToolResult",
    "WebSearchPlugin",
    "WorkspacePlugin",
    "create_default_registry",
]
