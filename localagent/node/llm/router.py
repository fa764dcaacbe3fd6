"""Completion router: picks a provider per request by strategy and health,
retries and falls back, and keeps per-provider counters.

The router never raises for provider failure. When every candidate has been
exhausted it returns a CompletionResponse with finish_reason="error".
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable

from .providers import BaseProvider, ProviderError, StreamRejected, create_provider
from .types import (
    ROUTING_STRATEGIES,
    CompletionRequest,
    CompletionResponse,
    LLMProviderConfig,
    LLMRouterConfig,
    ProviderHealth,
    StreamCallback,
)

logger = logging.getLogger("localagent.router")

NO_PROVIDERS_MESSAGE = (
    "No LLM providers configured or available. Add one under 'llm_providers' in the config file."
)

EventListener = Callable[[dict[str, Any]], None]
ProviderFactory = Callable[[LLMProviderConfig], BaseProvider]


@dataclass
class ProviderStats:
    requests: int = 0
    errors: int = 0
    total_latency: float = 0.0


class LLMRouter:

    def __init__(
        self,
        config: LLMRouterConfig | None = None,
        provider_factory: ProviderFactory = create_provider,
        on_event: EventListener | None = None,
    ) -> None:
        self.config = config or LLMRouterConfig()
        self._factory = provider_factory
        self._listeners: list[EventListener] = [on_event] if on_event else []
        self.providers: list[BaseProvider] = []
        self._health_task: asyncio.Task | None = None

        self.total_requests = 0
        self.total_fallbacks = 0
        self.total_errors = 0
        self.by_provider: dict[str, ProviderStats] = {}

        self.init()

    # ─── Lifecycle ───────────────────────────────────────────────────

    def init(self) -> None:
        """(Re)build adapters from config. Disabled providers are skipped."""
        if self.config.strategy not in ROUTING_STRATEGIES:
            logger.warning(f"Unknown routing strategy '{self.config.strategy}', using local_first")
            self.config.strategy = "local_first"

        self.providers = []
        for pc in sorted(self.config.providers, key=lambda p: p.priority):
            if not pc.enabled:
                continue
            self.providers.append(self._factory(pc))
            self.by_provider.setdefault(pc.name, ProviderStats())

        logger.info(f"LLM Router: {len(self.providers)} providers, strategy: {self.config.strategy}")

    async def start(self) -> None:
        """Run one health pass now and keep refreshing on the configured interval."""
        if not self.providers or self._health_task is not None:
            return
        await self.run_health_checks()
        self._health_task = asyncio.create_task(self._health_loop(), name="llm-health")

    async def stop(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def aclose(self) -> None:
        await self.stop()
        for provider in self.providers:
            try:
                await provider.aclose()
            except Exception as e:
                logger.debug(f"Error closing provider {provider.name}: {e}")

    async def _health_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.health_interval)
            try:
                await self.run_health_checks()
            except Exception:
                logger.exception("Health check pass failed")

    async def run_health_checks(self) -> None:
        """Probe every provider concurrently; each probe updates only its own health."""
        await asyncio.gather(*(p.health_check() for p in self.providers), return_exceptions=True)
        self._emit({
            "type": "llm.health",
            "providers": [h.to_dict() for h in self.get_health_status()],
            "strategy": self.config.strategy,
        })

    async def update_config(self, **partial: Any) -> None:
        """Apply a runtime config change (e.g. new model) and rebuild providers."""
        was_running = self._health_task is not None
        await self.aclose()
        self.config = replace(self.config, **partial)
        self.init()
        if was_running:
            await self.start()

    async def add_provider(self, config: LLMProviderConfig) -> BaseProvider:
        self.config.providers.append(config)
        provider = self._factory(config)
        self.providers.append(provider)
        self.by_provider.setdefault(config.name, ProviderStats())
        await provider.health_check()
        return provider

    # ─── Introspection ───────────────────────────────────────────────

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def get_health_status(self) -> list[ProviderHealth]:
        return [p.get_health() for p in self.providers]

    def has_available_provider(self) -> bool:
        return any(p.get_health().available for p in self.providers)

    def get_stats(self) -> dict[str, Any]:
        return {
            "total_requests": self.total_requests,
            "total_fallbacks": self.total_fallbacks,
            "total_errors": self.total_errors,
            "strategy": self.config.strategy,
            "provider_count": len(self.providers),
            "by_provider": {name: asdict(s) for name, s in self.by_provider.items()},
        }

    def _emit(self, event: dict[str, Any]) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.debug(f"Router event listener failed: {e}")

    def _stats(self, provider: BaseProvider) -> ProviderStats:
        return self.by_provider.setdefault(provider.name, ProviderStats())

    # ─── Routing ─────────────────────────────────────────────────────

    def get_provider_order(self) -> list[BaseProvider]:
        """Candidate list for the active strategy.

        Preference strategies append at most one unavailable provider as a
        last resort, so a provider whose health check is stale still gets a
        chance when nothing else is up.
        """
        available = [p for p in self.providers if p.get_health().available]
        unavailable = [p for p in self.providers if not p.get_health().available]
        local = [p for p in available if p.is_local]
        cloud = [p for p in available if not p.is_local]

        strategy = self.config.strategy
        if strategy == "local_only":
            return local
        if strategy == "cloud_only":
            return cloud
        if strategy == "cloud_first":
            return cloud + local + unavailable[:1]
        # local_first; cost_optimized treats local providers as free
        return local + cloud + unavailable[:1]

    async def complete(self, request: CompletionRequest) -> CompletionResponse:
        self.total_requests += 1
        ordered = self.get_provider_order()

        if not ordered:
            return CompletionResponse.error("none", "none", NO_PROVIDERS_MESSAGE)

        last_error = ""
        for i, provider in enumerate(ordered):
            health = provider.get_health()
            if not health.available and i < len(ordered) - 1:
                continue

            stats = self._stats(provider)
            for attempt in range(self.config.retries + 1):
                if attempt and self.config.retry_backoff > 0:
                    await asyncio.sleep(self.config.retry_backoff * attempt)

                try:
                    result = await asyncio.wait_for(
                        provider.complete(request), timeout=self.config.max_latency
                    )
                except asyncio.TimeoutError:
                    last_error = f"{provider.name} timed out after {self.config.max_latency}s"
                    stats.errors += 1
                    logger.warning(last_error)
                    continue
                except Exception as e:
                    last_error = f"{provider.name}: {e}"
                    stats.errors += 1
                    logger.warning(f"Provider {provider.name} raised (attempt {attempt + 1}): {e}")
                    continue

                if result.is_error:
                    last_error = f"{provider.name} returned error"
                    stats.errors += 1
                    logger.debug(f"{last_error} (attempt {attempt + 1}/{self.config.retries + 1})")
                    continue

                stats.requests += 1
                stats.total_latency += result.latency

                if i > 0:
                    self.total_fallbacks += 1
                    logger.info(f"LLM fallback: {ordered[0].name} → {provider.name}")
                    self._emit({"type": "llm.fallback", "from": ordered[0].name, "to": provider.name})

                return result

        self.total_errors += 1
        logger.error(f"All LLM providers failed. Last error: {last_error}")
        return CompletionResponse.error(
            "none", "none", f"All LLM providers failed. Last error: {last_error}"
        )

    async def stream(self, request: CompletionRequest, callbacks: StreamCallback) -> None:
        """Stream from the first available provider that accepts the request.

        There is no fallback once tokens have been delivered: mid-stream
        failures reach the consumer through ``callbacks.on_error``.
        """
        self.total_requests += 1
        ordered = self.get_provider_order()

        if not ordered:
            callbacks.on_error(ProviderError("No LLM providers available"))
            return

        for provider in ordered:
            if not provider.get_health().available:
                continue

            stats = self._stats(provider)
            try:
                await provider.stream(request, callbacks)
            except StreamRejected as e:
                stats.errors += 1
                logger.warning(f"Stream rejected by {provider.name}: {e}")
                continue
            stats.requests += 1
            return

        self.total_errors += 1
        callbacks.on_error(ProviderError("All LLM providers failed"))
