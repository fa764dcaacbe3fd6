"""Tests for configuration loading and the derived router/agent settings."""

import json

import pytest

from localagent.node import config as config_module
from localagent.node.agent import AgentConfig
from localagent.node.config import DEFAULT_CONFIG, Config, get_config, reset_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in DEFAULT_CONFIG:
        monkeypatch.delenv(f"LOCALAGENT_{key.upper()}", raising=False)
    reset_config()
    yield
    reset_config()


def _write(tmp_path, data):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestConfigLoad:

    def test_defaults_when_file_missing(self, tmp_path):
        cfg = Config.load(tmp_path / "missing.json")
        assert cfg.server_port == 3847
        assert cfg.llm_strategy == "local_first"
        assert cfg.agent_confirm_destructive is True
        assert not (tmp_path / "missing.json").exists()

    def test_file_values_override_defaults(self, tmp_path):
        path = _write(tmp_path, {"server_port": 9000, "agent_max_steps": 4, "llm_strategy": "cloud_first"})
        cfg = Config.load(path)
        assert cfg.server_port == 9000
        assert cfg.agent_max_steps == 4
        assert cfg.llm_strategy == "cloud_first"
        assert cfg.agent_tool_timeout == DEFAULT_CONFIG["agent_tool_timeout"]

    def test_unknown_keys_ignored(self, tmp_path):
        cfg = Config.load(_write(tmp_path, {"server_port": 9001, "ollama_url": "http://x"}))
        assert cfg.server_port == 9001
        assert not hasattr(cfg, "ollama_url")

    def test_corrupt_file_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        assert Config.load(path).server_port == DEFAULT_CONFIG["server_port"]

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOCALAGENT_SERVER_PORT", "4000")
        monkeypatch.setenv("LOCALAGENT_AGENT_TEMPERATURE", "0.9")
        monkeypatch.setenv("LOCALAGENT_AGENT_CONFIRM_DESTRUCTIVE", "false")
        monkeypatch.setenv("LOCALAGENT_AGENT_BLOCKED_TOOLS", '["web_"]')
        monkeypatch.setenv("LOCALAGENT_LLM_STRATEGY", "cloud_only")

        cfg = Config.load(_write(tmp_path, {"server_port": 9000}))

        assert cfg.server_port == 4000
        assert cfg.agent_temperature == 0.9
        assert cfg.agent_confirm_destructive is False
        assert cfg.agent_blocked_tools == ["web_"]
        assert cfg.llm_strategy == "cloud_only"

    def test_invalid_env_keeps_current(self, tmp_path, monkeypatch):
        monkeypatch.setenv("LOCALAGENT_SERVER_PORT", "eighty")
        monkeypatch.setenv("LOCALAGENT_AGENT_BLOCKED_TOOLS", '{"not": "a list"}')
        cfg = Config.load(_write(tmp_path, {"server_port": 9000}))
        assert cfg.server_port == 9000
        assert cfg.agent_blocked_tools == []

    def test_singleton(self, tmp_path):
        path = _write(tmp_path, {"server_port": 9100})
        first = get_config(str(path))
        assert get_config() is first
        reset_config()
        assert config_module._config is None


class TestDerivedConfig:

    def test_router_config_autodetects_ollama(self, tmp_path):
        router_cfg = Config.load(tmp_path / "missing.json").router_config()
        assert [p.name for p in router_cfg.providers] == ["ollama"]
        assert router_cfg.providers[0].endpoint == "http://localhost:11434"

    def test_router_config_from_providers(self, tmp_path):
        path = _write(tmp_path, {
            "llm_strategy": "cloud_first",
            "llm_retries": 3,
            "llm_providers": [
                {"name": "anthropic", "model": "claude", "api_key": "k", "priority": 2, "unknown": 1},
                {"name": "lm_studio", "endpoint": "http://localhost:1234", "model": "qwen", "priority": 1},
            ],
        })
        router_cfg = Config.load(path).router_config()
        assert router_cfg.strategy == "cloud_first"
        assert router_cfg.retries == 3
        assert [p.name for p in router_cfg.providers] == ["anthropic", "lm_studio"]
        assert router_cfg.providers[0].api_key == "k"

    def test_agent_defaults_are_clamped(self, tmp_path):
        path = _write(tmp_path, {"agent_max_steps": 500, "agent_temperature": 3, "agent_blocked_tools": ["web_"]})
        agent_cfg = AgentConfig.from_app_config(Config.load(path))
        assert agent_cfg.max_steps == 25
        assert agent_cfg.temperature == 1.0
        assert agent_cfg.blocked_tools == ("web_",)
        assert agent_cfg.allowed_tools == ()

    def test_workspace_root_created(self, tmp_path):
        target = tmp_path / "ws"
        cfg = Config.load(_write(tmp_path, {"workspace_dir": str(target)}))
        assert cfg.workspace_root() == target
        assert target.is_dir()
