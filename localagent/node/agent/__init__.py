"""Agent package.

Public API:
    from localagent.node.agent import AgentOrchestrator, AgentCallbacks, AgentRun

Internal layout:
    models.py  — AgentConfig + sanitize_agent_config, AgentStep, AgentRun, AgentEvent, ActiveRunRegistry
    parser.py  — parse_agent_response (FinalAnswer / ToolRequest / None)
    prompts.py — agent system prompt and tool list rendering
    loop.py    — AgentOrchestrator (bounded ReAct loop), filter_tools
"""

from .loop import AgentOrchestrator, filter_tools
from .models import (
    ActiveRunRegistry,
    AgentCallbacks,
    AgentConfig,
    AgentConfigError,
    AgentEvent,
    AgentRun,
    AgentStep,
    sanitize_agent_config,
)
from .parser import FinalAnswer, ToolRequest, parse_agent_response

__all__ = [
    "ActiveRunRegistry",
    "AgentCallbacks",
    "AgentConfig",
    "AgentConfigError",
    "AgentEvent",
    "AgentOrchestrator",
    "AgentRun",
    "AgentStep",
    "FinalAnswer",
    "ToolRequest",
    "filter_tools",
    "parse_agent_response",
    "sanitize_agent_config",
]
