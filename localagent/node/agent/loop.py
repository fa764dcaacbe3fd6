from __future__ import annotations

import asyncio
import inspect
import logging
import time
from typing import Any, Callable, Mapping

from ..llm.router import LLMRouter
from ..llm.safety import sanitize_tool_output, validate_tool_call
from ..llm.types import ChatMessage, CompletionRequest
from ..tools.registry import SafetyTier, ToolRegistry
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
from .parser import FinalAnswer, parse_agent_response
from .prompts import MAX_STEPS_PROMPT, build_agent_system_prompt

logger = logging.getLogger("localagent.agent")

MAX_MESSAGES = 50
SUMMARY_MAX_TOKENS = 1024

EventListener = Callable[[AgentEvent], None]


def _matches(name: str, patterns: tuple[str, ...]) -> bool:
    return any(name == p or name.startswith(p) for p in patterns)


def filter_tools(schemas: list[dict[str, Any]], cfg: AgentConfig) -> list[dict[str, Any]]:
    """Narrow the registry schemas to the allow-list, then drop the deny-list."""
    filtered = schemas
    if cfg.allowed_tools:
        filtered = [t for t in filtered if _matches(t["function"]["name"], cfg.allowed_tools)]
    if cfg.blocked_tools:
        filtered = [t for t in filtered if not _matches(t["function"]["name"], cfg.blocked_tools)]
    return filtered


class AgentOrchestrator:
    """Bounded Think -> Act -> Observe loop over the router and tool registry.

    One instance owns the active-run registry, so the concurrency ceiling
    and cancellation flags are shared by every run started through it.
    """

    def __init__(
        self,
        router: LLMRouter,
        registry: ToolRegistry,
        defaults: AgentConfig | None = None,
        max_concurrent_runs: int = 3,
        max_messages: int = MAX_MESSAGES,
        on_event: EventListener | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.router = router
        self.registry = registry
        self.defaults = defaults or AgentConfig()
        self.max_messages = max(2, int(max_messages))
        self.active = ActiveRunRegistry(max_concurrent_runs)
        self._listeners: list[EventListener] = [on_event] if on_event else []
        self._clock = clock

    # ─── Public API ──────────────────────────────────────────────────

    def cancel(self, run_id: str) -> bool:
        """Flag a run for cancellation. Takes effect at its next iteration."""
        cancelled = self.active.cancel(run_id)
        if cancelled:
            logger.info(f"Cancellation requested for {run_id}")
        return cancelled

    def list_active(self) -> list[str]:
        return self.active.list_active()

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def available_tools(self, cfg: AgentConfig | None = None) -> list[dict[str, Any]]:
        return filter_tools(self.registry.get_schemas(), cfg or self.defaults)

    async def run(
        self,
        goal: str,
        config: Mapping[str, Any] | None = None,
        callbacks: AgentCallbacks | None = None,
    ) -> AgentRun:
        """Run the agent to a terminal status. Provider, tool and parse failures never raise."""
        if not isinstance(goal, str) or not goal.strip():
            raise AgentConfigError("Goal must be a non-empty string")
        cfg = sanitize_agent_config(config, self.defaults)
        callbacks = callbacks or AgentCallbacks()

        run = AgentRun(goal=goal)
        if not self.active.register(run.id):
            run.status = "failed"
            run.error = f"Too many concurrent agent runs (max {self.active.max_concurrent})"
            run.completed_at = run.started_at
            run.seal()
            logger.warning(run.error)
            return run

        started = self._clock()
        preview = goal[:60] + ("..." if len(goal) > 60 else "")
        logger.info(f"Agent started [{run.id}]: \"{preview}\"")
        self._emit("agent.started", run_id=run.id, goal=goal)

        try:
            await self._loop(run, cfg, callbacks, started)
        except Exception as e:
            logger.exception(f"Agent run {run.id} crashed")
            run.status = "failed"
            run.error = str(e) or type(e).__name__
            await self._notify(callbacks.on_error, e, run)
        finally:
            # Always release the concurrency slot
            self.active.remove(run.id)

        run.completed_at = time.time()
        run.total_duration = self._clock() - started
        run.seal()

        logger.info(f"Agent {run.status} [{run.id}]: {len(run.steps)} steps, {run.total_duration:.1f}s")
        self._emit("agent.completed", run_id=run.id, status=run.status, steps=len(run.steps))
        await self._notify(callbacks.on_complete, run)
        return run

    # ─── Loop ────────────────────────────────────────────────────────

    async def _loop(
        self,
        run: AgentRun,
        cfg: AgentConfig,
        callbacks: AgentCallbacks,
        started: float,
    ) -> None:
        tools = filter_tools(self.registry.get_schemas(), cfg)
        tool_names = ", ".join(t["function"]["name"] for t in tools)
        messages = [
            ChatMessage(role="system", content=build_agent_system_prompt(tools)),
            ChatMessage(role="user", content=run.goal),
        ]

        for index in range(cfg.max_steps):
            if self.active.is_cancelled(run.id):
                run.status = "cancelled"
                break

            if self._clock() - started > cfg.total_timeout:
                run.status = "failed"
                run.error = f"Total timeout exceeded ({cfg.total_timeout:g}s)"
                break

            step_start = self._clock()
            response = await self.router.complete(CompletionRequest(
                messages=list(messages),
                temperature=cfg.temperature,
                max_tokens=cfg.max_tokens_per_step,
            ))

            if response.is_error or not response.content:
                run.status = "failed"
                run.error = "LLM returned no response"
                if response.is_error and response.content:
                    run.error += f": {response.content}"
                break

            if run.provider is None:
                run.provider = response.provider
                run.model = response.model

            content = response.content
            parsed = parse_agent_response(content)

            def make_step(thought: str, action=None, action_input=None, observation=None) -> AgentStep:
                return AgentStep(
                    index=index,
                    thought=thought,
                    action=action,
                    action_input=action_input,
                    observation=observation,
                    timestamp=time.time(),
                    duration=self._clock() - step_start,
                )

            if parsed is None:
                # Off-format reply: take the raw text as the answer
                step = make_step("Giving direct answer")
                await self._record(run, step, callbacks)
                run.result = content
                run.status = "completed"
                break

            if parsed.thought:
                await self._notify(callbacks.on_thinking, parsed.thought)

            if isinstance(parsed, FinalAnswer):
                step = make_step(parsed.thought)
                await self._record(run, step, callbacks)
                run.result = parsed.answer
                run.status = "completed"
                messages.append(ChatMessage(role="assistant", content=content))
                break

            tool_name, params = parsed.tool, parsed.params

            if not validate_tool_call(tool_name, tools):
                step = make_step(
                    parsed.thought, tool_name, params,
                    f'Error: tool "{tool_name}" is not available.',
                )
                await self._record(run, step, callbacks)
                logger.warning(f"[{run.id}] Model requested unavailable tool '{tool_name}'")
                self._append(
                    messages,
                    ChatMessage(role="assistant", content=content),
                    ChatMessage(
                        role="system",
                        content=f'[TOOL_ERROR] Tool "{tool_name}" is not available. Available tools: {tool_names}',
                    ),
                )
                continue

            if cfg.confirm_destructive and self._is_destructive(tool_name):
                if not await self._confirm(callbacks, tool_name, params):
                    step = make_step(parsed.thought, tool_name, params, "User declined this action.")
                    await self._record(run, step, callbacks)
                    logger.info(f"[{run.id}] {tool_name} declined")
                    self._append(
                        messages,
                        ChatMessage(role="assistant", content=content),
                        ChatMessage(
                            role="system",
                            content=(
                                "[TOOL_DECLINED] User declined this action. "
                                "Try a different approach or ask the user for guidance."
                            ),
                        ),
                    )
                    continue

            await self._notify(callbacks.on_tool_call, tool_name, params)
            self._emit("agent.tool_call", run_id=run.id, step=index, tool=tool_name)

            observation = await self._execute_tool(run, tool_name, params, cfg, callbacks)

            step = make_step(parsed.thought, tool_name, params, observation)
            await self._record(run, step, callbacks)
            self._emit(
                "agent.step",
                run_id=run.id,
                step=index,
                action=tool_name,
                observation=observation[:200],
            )

            self._append(
                messages,
                ChatMessage(role="assistant", content=content),
                ChatMessage(role="system", content=f"[TOOL_RESULT] {observation}"),
            )

        if run.status != "running":
            return

        # Cancelled while the last iteration was in flight
        if self.active.is_cancelled(run.id):
            run.status = "cancelled"
            return

        # Best-effort summary, not held to total_timeout
        run.error = f"Reached max steps ({cfg.max_steps})"
        messages.append(ChatMessage(role="user", content=MAX_STEPS_PROMPT))
        summary = await self.router.complete(CompletionRequest(
            messages=list(messages),
            max_tokens=SUMMARY_MAX_TOKENS,
        ))
        if not summary.is_error and summary.content:
            run.result = summary.content
        else:
            run.result = f"Agent stopped after {cfg.max_steps} steps."
        run.status = "max_steps"

    # ─── Helpers ─────────────────────────────────────────────────────

    def _append(self, messages: list[ChatMessage], *turns: ChatMessage) -> None:
        """Append turns, then slide the window: system prompt + newest max_messages-1."""
        messages.extend(turns)
        if len(messages) > self.max_messages:
            recent = messages[-(self.max_messages - 1):]
            del messages[1:]
            messages.extend(recent)

    def _is_destructive(self, tool_name: str) -> bool:
        return self.registry.safety_tier(tool_name) is not SafetyTier.READ

    async def _execute_tool(
        self,
        run: AgentRun,
        tool_name: str,
        params: dict[str, Any],
        cfg: AgentConfig,
        callbacks: AgentCallbacks,
    ) -> str:
        try:
            result = await asyncio.wait_for(
                self.registry.execute_by_name(tool_name, params),
                timeout=cfg.tool_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"[{run.id}] {tool_name} timed out after {cfg.tool_timeout:g}s")
            return sanitize_tool_output(
                f"Tool execution error: {tool_name} timed out after {cfg.tool_timeout:g}s"
            )
        except Exception as e:
            logger.warning(f"[{run.id}] {tool_name} raised: {e}")
            return sanitize_tool_output(f"Tool execution error: {e}")

        run.record_tool(tool_name)
        await self._notify(callbacks.on_tool_result, tool_name, result)
        return sanitize_tool_output(result.output or result.error or "")

    async def _record(self, run: AgentRun, step: AgentStep, callbacks: AgentCallbacks) -> None:
        run.add_step(step)
        await self._notify(callbacks.on_step, step, run)

    async def _confirm(self, callbacks: AgentCallbacks, tool_name: str, params: dict[str, Any]) -> bool:
        if callbacks.on_confirm_action is None:
            # Nobody to ask: destructive actions stay blocked
            return False
        try:
            answer = callbacks.on_confirm_action(tool_name, params)
            if inspect.isawaitable(answer):
                answer = await answer
        except Exception as e:
            logger.warning(f"Confirmation callback failed for {tool_name}: {e}")
            return False
        return bool(answer)

    async def _notify(self, callback: Callable[..., Any] | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning(f"Agent callback {getattr(callback, '__name__', callback)!r} failed: {e}")

    def _emit(self, event_type: str, **data: Any) -> None:
        event = AgentEvent(type=event_type, data=data)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.debug(f"Agent event listener failed: {e}")
