"""Tests for the completion router: strategy ordering, retry/fallback, stats, streaming."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from localagent.node.llm import LLMRouter
from localagent.node.llm.providers import StreamRejected
from localagent.node.llm.router import NO_PROVIDERS_MESSAGE
from localagent.node.llm.types import (
    ChatMessage,
    CompletionRequest,
    CompletionResponse,
    LLMProviderConfig,
    LLMRouterConfig,
    ProviderHealth,
    StreamCallback,
)


def _fake_provider(name, local=False, available=True):
    provider = MagicMock()
    provider.name = name
    provider.is_local = local
    provider.health = ProviderHealth(name=name, endpoint=f"http://{name}", model="m", available=available)
    provider.get_health.side_effect = lambda: provider.health
    provider.complete = AsyncMock(return_value=CompletionResponse(
        content=f"from {name}", finish_reason="stop", provider=name, model="m", latency=0.25,
    ))
    provider.stream = AsyncMock()
    provider.health_check = AsyncMock(return_value=available)
    provider.aclose = AsyncMock()
    return provider


def _router(specs, strategy="local_first", retries=0, events=None, **kwargs):
    """specs: list of (name, local, available). Priority follows list order."""
    fakes = {name: _fake_provider(name, local, available) for name, local, available in specs}
    configs = [LLMProviderConfig(name=name, priority=i) for i, (name, _, _) in enumerate(specs)]
    router = LLMRouter(
        LLMRouterConfig(strategy=strategy, providers=configs, retries=retries, retry_backoff=0, **kwargs),
        provider_factory=lambda pc: fakes[pc.name],
        on_event=events.append if events is not None else None,
    )
    return router, fakes


def _request():
    return CompletionRequest(messages=[ChatMessage(role="user", content="hi")])


def _names(providers):
    return [p.name for p in providers]


# ═══════════════════════════════════════════════════════════════
# Provider Ordering
# ═══════════════════════════════════════════════════════════════

class TestProviderOrder:

    SPECS = [
        ("ollama", True, True),
        ("anthropic", False, True),
        ("lm_studio", True, False),
        ("openrouter", False, True),
    ]

    def test_local_first(self):
        router, _ = _router(self.SPECS, "local_first")
        assert _names(router.get_provider_order()) == ["ollama", "anthropic", "openrouter", "lm_studio"]

    def test_cloud_first(self):
        router, _ = _router(self.SPECS, "cloud_first")
        assert _names(router.get_provider_order()) == ["anthropic", "openrouter", "ollama", "lm_studio"]

    def test_cost_optimized_matches_local_first(self):
        router, _ = _router(self.SPECS, "cost_optimized")
        assert _names(router.get_provider_order()) == ["ollama", "anthropic", "openrouter", "lm_studio"]

    def test_local_only_has_no_last_resort(self):
        router, _ = _router(self.SPECS, "local_only")
        assert _names(router.get_provider_order()) == ["ollama"]

    def test_cloud_only(self):
        router, _ = _router(self.SPECS, "cloud_only")
        assert _names(router.get_provider_order()) == ["anthropic", "openrouter"]

    def test_at_most_one_last_resort(self):
        router, _ = _router([("a", False, False), ("b", True, False), ("c", True, False)])
        assert _names(router.get_provider_order()) == ["a"]

    def test_disabled_providers_skipped(self):
        fakes = {"ollama": _fake_provider("ollama", True), "anthropic": _fake_provider("anthropic")}
        router = LLMRouter(
            LLMRouterConfig(providers=[
                LLMProviderConfig(name="ollama", priority=1),
                LLMProviderConfig(name="anthropic", priority=2, enabled=False),
            ]),
            provider_factory=lambda pc: fakes[pc.name],
        )
        assert _names(router.providers) == ["ollama"]

    def test_unknown_strategy_falls_back(self):
        router, _ = _router(self.SPECS, "fastest")
        assert router.config.strategy == "local_first"


# ═══════════════════════════════════════════════════════════════
# Completion
# ═══════════════════════════════════════════════════════════════

class TestComplete:

    @pytest.mark.asyncio
    async def test_no_providers_returns_error(self):
        router = LLMRouter(LLMRouterConfig(providers=[]))
        response = await router.complete(_request())

        assert response.is_error
        assert response.provider == "none"
        assert response.content == NO_PROVIDERS_MESSAGE
        assert response.latency == 0.0

    @pytest.mark.asyncio
    async def test_nothing_eligible_for_strategy(self):
        router, fakes = _router([("anthropic", False, True)], "local_only")
        response = await router.complete(_request())
        assert response.is_error
        fakes["anthropic"].complete.assert_not_called()

    @pytest.mark.asyncio
    async def test_first_available_wins(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)])
        response = await router.complete(_request())

        assert response.content == "from ollama"
        fakes["anthropic"].complete.assert_not_called()
        assert router.total_fallbacks == 0

    @pytest.mark.asyncio
    async def test_fallback_on_error(self):
        events = []
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)], events=events)
        fakes["ollama"].complete.return_value = CompletionResponse.error("ollama", "m")

        response = await router.complete(_request())

        assert response.provider == "anthropic"
        assert router.total_fallbacks == 1
        assert {"type": "llm.fallback", "from": "ollama", "to": "anthropic"} in events
        stats = router.get_stats()
        assert stats["by_provider"]["ollama"]["errors"] == 1
        assert stats["by_provider"]["anthropic"]["requests"] == 1
        assert stats["by_provider"]["anthropic"]["total_latency"] == 0.25

    @pytest.mark.asyncio
    async def test_fallback_on_exception(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)])
        fakes["ollama"].complete.side_effect = ConnectionError("refused")

        response = await router.complete(_request())

        assert response.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_retries_before_moving_on(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)], retries=2)
        fakes["ollama"].complete.side_effect = [
            CompletionResponse.error("ollama", "m"),
            CompletionResponse.error("ollama", "m"),
            CompletionResponse(content="third time", finish_reason="stop", provider="ollama", model="m"),
        ]

        response = await router.complete(_request())

        assert response.content == "third time"
        assert fakes["ollama"].complete.await_count == 3
        fakes["anthropic"].complete.assert_not_called()
        assert router.total_fallbacks == 0

    @pytest.mark.asyncio
    async def test_all_fail(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)], retries=1)
        for fake in fakes.values():
            fake.complete.return_value = CompletionResponse.error(fake.name, "m")

        response = await router.complete(_request())

        assert response.is_error
        assert response.content.startswith("All LLM providers failed")
        assert router.total_errors == 1
        assert fakes["ollama"].complete.await_count == 2
        assert fakes["anthropic"].complete.await_count == 2

    @pytest.mark.asyncio
    async def test_last_resort_is_tried(self):
        router, fakes = _router([("ollama", True, False)])
        response = await router.complete(_request())
        assert response.content == "from ollama"

    @pytest.mark.asyncio
    async def test_per_attempt_latency_budget(self):
        router, fakes = _router(
            [("ollama", True, True), ("anthropic", False, True)], max_latency=0.05,
        )

        async def hang(request):
            await asyncio.sleep(10)

        fakes["ollama"].complete.side_effect = hang

        response = await router.complete(_request())

        assert response.provider == "anthropic"
        assert router.get_stats()["by_provider"]["ollama"]["errors"] == 1

    @pytest.mark.asyncio
    async def test_counters(self):
        router, _ = _router([("ollama", True, True)])
        await router.complete(_request())
        await router.complete(_request())
        stats = router.get_stats()
        assert stats["total_requests"] == 2
        assert stats["provider_count"] == 1
        assert stats["strategy"] == "local_first"


# ═══════════════════════════════════════════════════════════════
# Streaming
# ═══════════════════════════════════════════════════════════════

class TestStream:

    def _callbacks(self):
        return StreamCallback(on_token=MagicMock(), on_done=MagicMock(), on_error=MagicMock())

    @pytest.mark.asyncio
    async def test_rejected_stream_falls_back(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)])
        fakes["ollama"].stream.side_effect = StreamRejected("ollama: 503")
        callbacks = self._callbacks()

        await router.stream(_request(), callbacks)

        fakes["anthropic"].stream.assert_awaited_once()
        callbacks.on_error.assert_not_called()

    @pytest.mark.asyncio
    async def test_accepted_stream_never_falls_back(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)])
        callbacks = self._callbacks()

        async def fail_mid_stream(request, cb):
            cb.on_token("partial")
            cb.on_error(RuntimeError("connection reset"))

        fakes["ollama"].stream.side_effect = fail_mid_stream

        await router.stream(_request(), callbacks)

        fakes["anthropic"].stream.assert_not_called()
        callbacks.on_token.assert_called_once_with("partial")
        callbacks.on_error.assert_called_once()

    @pytest.mark.asyncio
    async def test_all_rejected(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)])
        for fake in fakes.values():
            fake.stream.side_effect = StreamRejected("down")
        callbacks = self._callbacks()

        await router.stream(_request(), callbacks)

        callbacks.on_error.assert_called_once()
        assert router.total_errors == 1

    @pytest.mark.asyncio
    async def test_no_providers(self):
        router = LLMRouter(LLMRouterConfig(providers=[]))
        callbacks = self._callbacks()
        await router.stream(_request(), callbacks)
        callbacks.on_error.assert_called_once()
        callbacks.on_done.assert_not_called()


# ═══════════════════════════════════════════════════════════════
# Health & Lifecycle
# ═══════════════════════════════════════════════════════════════

class TestRouterHealth:

    @pytest.mark.asyncio
    async def test_health_checks_probe_every_provider(self):
        events = []
        router, fakes = _router([("ollama", True, True), ("anthropic", False, False)], events=events)
        fakes["anthropic"].health_check.side_effect = RuntimeError("probe crashed")

        await router.run_health_checks()

        for fake in fakes.values():
            fake.health_check.assert_awaited_once()
        assert events[-1]["type"] == "llm.health"
        assert len(events[-1]["providers"]) == 2

    @pytest.mark.asyncio
    async def test_has_available_provider(self):
        router, fakes = _router([("ollama", True, False)])
        assert router.has_available_provider() is False
        fakes["ollama"].health.available = True
        assert router.has_available_provider() is True

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        router, fakes = _router([("ollama", True, True)], health_interval=3600)
        await router.start()
        assert router._health_task is not None
        await router.aclose()
        assert router._health_task is None
        fakes["ollama"].aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_update_config_rebuilds(self):
        router, fakes = _router([("ollama", True, True), ("anthropic", False, True)])

        await router.update_config(strategy="cloud_first")

        assert router.config.strategy == "cloud_first"
        assert _names(router.get_provider_order())[0] == "anthropic"
        fakes["ollama"].aclose.assert_awaited()
