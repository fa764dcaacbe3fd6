"""FastAPI server: HTTP/SSE surface over the agent orchestrator and completion router."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from .agent import AgentCallbacks, AgentConfigError, AgentOrchestrator, AgentRun, sanitize_agent_config
from .agent.models import AgentConfig
from .config import Config, get_config
from .llm import ChatMessage, CompletionRequest, CompletionResponse, LLMRouter, StreamCallback
from .llm.safety import build_system_prompt, sanitize_history, strip_secrets
from .tools import ToolRegistry, create_default_registry

logger = logging.getLogger("localagent.server")

EVENT_QUEUE_SIZE = 256

# Global instances
router: LLMRouter | None = None
registry: ToolRegistry | None = None
orchestrator: AgentOrchestrator | None = None
_subscribers: set[asyncio.Queue] = set()


def publish(event: dict[str, Any]) -> None:
    """Fan an event out to every /api/events subscriber. Slow subscribers drop events."""
    for queue in list(_subscribers):
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.debug("Event subscriber queue full, dropping event")


def build_components(
    cfg: Config,
    on_event: Callable[[dict[str, Any]], None] | None = None,
) -> tuple[LLMRouter, ToolRegistry, AgentOrchestrator]:
    """Wire router, tool registry and orchestrator from the application config."""
    llm = LLMRouter(cfg.router_config(), on_event=on_event)
    tools = create_default_registry(cfg)
    agent = AgentOrchestrator(
        llm,
        tools,
        defaults=AgentConfig.from_app_config(cfg),
        max_concurrent_runs=cfg.agent_max_concurrent_runs,
        max_messages=cfg.agent_max_messages,
        on_event=(lambda event: on_event(event.to_dict())) if on_event else None,
    )
    return llm, tools, agent


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    global router, registry, orchestrator

    cfg = get_config()
    logger.info(f"Starting local agent on {cfg.server_host}:{cfg.server_port}")

    router, registry, orchestrator = build_components(cfg, on_event=publish)

    await router.start()
    for health in router.get_health_status():
        mark = "✓ available" if health.available else f"✗ unavailable ({health.error})"
        logger.info(f"  {health.name} ({health.model}): {mark}")
    logger.info(f"  Tools: {len(registry.get_schemas())} actions registered")

    yield

    if router:
        await router.aclose()
    logger.info("Local agent shutdown complete")


app = FastAPI(
    title="Local Agent",
    version="0.1.0",
    description="Local automation agent with multi-provider LLM routing",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─── Request/Response Models ─────────────────────────────────────────

class AgentRunRequest(BaseModel):
    goal: str
    config: dict[str, Any] | None = None
    stream: bool = False


class ChatRequest(BaseModel):
    message: str
    history: list[dict[str, Any]] = Field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None


def _not_ready() -> JSONResponse:
    return JSONResponse({"error": "Agent not initialized"}, status_code=503)


def _sse(event_type: str, data: dict[str, Any]) -> dict[str, str]:
    return {"event": event_type, "data": json.dumps({"type": event_type, **data}, default=str)}


# ─── Routes ──────────────────────────────────────────────────────────

@app.get("/api/status")
async def get_status() -> JSONResponse:
    """Health and load summary."""
    if not router or not orchestrator:
        return _not_ready()

    llm_ok = router.has_available_provider()
    return JSONResponse({
        "status": "ok" if llm_ok else "degraded",
        "llm": {
            "available": llm_ok,
            "strategy": router.config.strategy,
            "providers": len(router.providers),
        },
        "agent": {
            "active_runs": orchestrator.list_active(),
            "max_concurrent": orchestrator.active.max_concurrent,
        },
        "tools": len(orchestrator.available_tools()),
    })


@app.get("/api/llm/health")
async def llm_health() -> JSONResponse:
    if not router:
        return _not_ready()
    return JSONResponse({
        "strategy": router.config.strategy,
        "providers": [h.to_dict() for h in router.get_health_status()],
    })


@app.post("/api/llm/health/check")
async def llm_health_check() -> JSONResponse:
    """Probe every provider now instead of waiting for the next interval."""
    if not router:
        return _not_ready()
    await router.run_health_checks()
    return JSONResponse({
        "strategy": router.config.strategy,
        "providers": [h.to_dict() for h in router.get_health_status()],
    })


@app.get("/api/llm/stats")
async def llm_stats() -> JSONResponse:
    if not router:
        return _not_ready()
    return JSONResponse(router.get_stats())


@app.get("/api/tools")
async def list_tools() -> JSONResponse:
    """Tool schemas advertised to the agent under the server defaults."""
    if not orchestrator or not registry:
        return _not_ready()
    tools = orchestrator.available_tools()
    return JSONResponse({
        "count": len(tools),
        "tools": tools,
        "plugins": registry.get_status(),
    })


@app.post("/api/agent/run", response_model=None)
async def run_agent(request: AgentRunRequest) -> EventSourceResponse | JSONResponse:
    if not orchestrator:
        return _not_ready()

    # Reject bad input before a stream is opened
    try:
        if not request.goal.strip():
            raise AgentConfigError("Goal must be a non-empty string")
        sanitize_agent_config(request.config, orchestrator.defaults)
    except AgentConfigError as e:
        return JSONResponse({"error": str(e)}, status_code=400)

    if request.stream:
        return EventSourceResponse(
            _stream_agent_run(orchestrator, request.goal, request.config),
            media_type="text/event-stream",
        )

    run = await orchestrator.run(request.goal, request.config)
    return JSONResponse(run.to_dict())


async def _drain(queue: asyncio.Queue, task: asyncio.Task) -> AsyncIterator[dict]:
    """Yield queued SSE events until ``task`` has finished and the queue is empty."""
    while not task.done() or not queue.empty():
        getter = asyncio.ensure_future(queue.get())
        done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
        if getter in done:
            yield getter.result()
        else:
            getter.cancel()


async def _stream_agent_run(
    agent: AgentOrchestrator,
    goal: str,
    config: dict[str, Any] | None,
) -> AsyncIterator[dict]:
    """Stream one run's steps as SSE, finishing with the full run."""
    queue: asyncio.Queue = asyncio.Queue()

    callbacks = AgentCallbacks(
        on_step=lambda step, run: queue.put_nowait(_sse("step", {"run_id": run.id, **step.to_dict()})),
        on_thinking=lambda thought: queue.put_nowait(_sse("thinking", {"thought": thought})),
        on_tool_call=lambda tool, params: queue.put_nowait(_sse("tool_call", {"tool": tool, "params": params})),
        on_tool_result=lambda tool, result: queue.put_nowait(
            _sse("tool_result", {"tool": tool, "success": result.success})
        ),
    )
    task = asyncio.create_task(agent.run(goal, config, callbacks))
    try:
        async for event in _drain(queue, task):
            yield event
        run: AgentRun = task.result()
        yield _sse("done", run.to_dict())
    finally:
        if not task.done():
            # Client went away
            task.cancel()


@app.post("/api/agent/{run_id}/cancel")
async def cancel_agent(run_id: str) -> JSONResponse:
    if not orchestrator:
        return _not_ready()
    if orchestrator.cancel(run_id):
        return JSONResponse({"status": "ok", "run_id": run_id, "cancelled": True})
    return JSONResponse({"error": f"No active run {run_id}", "cancelled": False}, status_code=404)


@app.get("/api/agent/active")
async def active_agents() -> JSONResponse:
    if not orchestrator:
        return _not_ready()
    return JSONResponse({"runs": orchestrator.list_active()})


@app.post("/api/chat", response_model=None)
async def chat(request: ChatRequest) -> EventSourceResponse | JSONResponse:
    """Plain chat (no agent loop), streamed token by token."""
    if not router:
        return _not_ready()

    messages = [ChatMessage(role="system", content=build_system_prompt())]
    messages += [ChatMessage(role=m["role"], content=m["content"]) for m in sanitize_history(request.history)]
    messages.append(ChatMessage(role="user", content=request.message))

    completion = CompletionRequest(
        messages=messages,
        temperature=request.temperature,
        max_tokens=request.max_tokens,
    )
    return EventSourceResponse(_stream_chat(router, completion), media_type="text/event-stream")


async def _stream_chat(llm: LLMRouter, completion: CompletionRequest) -> AsyncIterator[dict]:
    queue: asyncio.Queue = asyncio.Queue()

    def on_done(response: CompletionResponse) -> None:
        queue.put_nowait(_sse("done", {
            "content": strip_secrets(response.content or ""),
            "finish_reason": response.finish_reason,
            "provider": response.provider,
            "model": response.model,
            "latency": response.latency,
        }))

    def on_error(error: BaseException) -> None:
        queue.put_nowait(_sse("error", {"error": str(error)}))

    callbacks = StreamCallback(
        on_token=lambda token: queue.put_nowait(_sse("token", {"content": token})),
        on_done=on_done,
        on_error=on_error,
        on_tool_call=lambda call: queue.put_nowait(_sse("tool_call", call.to_dict())),
    )

    task = asyncio.create_task(llm.stream(completion, callbacks))
    try:
        async for event in _drain(queue, task):
            yield event
        if task.exception() is not None:
            logger.error(f"Chat stream failed: {task.exception()}")
            yield _sse("error", {"error": str(task.exception())})
    finally:
        if not task.done():
            task.cancel()


@app.get("/api/events")
async def events() -> EventSourceResponse:
    """Live feed of agent and router notifications."""
    return EventSourceResponse(_stream_events(), media_type="text/event-stream")


async def _stream_events() -> AsyncIterator[dict]:
    queue: asyncio.Queue = asyncio.Queue(maxsize=EVENT_QUEUE_SIZE)
    _subscribers.add(queue)
    try:
        while True:
            event = await queue.get()
            yield {"event": event.get("type", "message"), "data": json.dumps(event, default=str)}
    finally:
        _subscribers.discard(queue)


def create_app() -> FastAPI:
    """Factory function for creating the app."""
    return app


def run_server(host: str | None = None, port: int | None = None) -> None:
    """Run the HTTP server."""
    import uvicorn

    cfg = get_config()

    # Logging is configured in __main__.py; keep uvicorn from overriding it
    uvicorn.run(
        "localagent.node.server:app",
        host=host or cfg.server_host,
        port=port or cfg.server_port,
        log_level="warning",
        log_config=None,
        reload=False,
    )
