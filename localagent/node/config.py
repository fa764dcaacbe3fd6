"""Configuration management for the local agent node."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .llm.types import LLMProviderConfig, LLMRouterConfig

logger = logging.getLogger("localagent.config")

APP_DIR_NAME = ".localagent"
CONFIG_FILENAME = "config.json"
ENV_PREFIX = "LOCALAGENT_"

# Used when no provider is configured at all
AUTODETECT_PROVIDER = {
    "name": "ollama",
    "endpoint": "http://localhost:11434",
    "model": "llama3.1:8b",
    "priority": 1,
    "capabilities": ["tool_calling"],
    "max_context": 32768,
    "enabled": True,
}

DEFAULT_CONFIG = {
    "server_host": "127.0.0.1",
    "server_port": 3847,
    "llm_strategy": "local_first",
    "llm_providers": [],
    "llm_max_latency": 30.0,
    "llm_retries": 1,
    "llm_retry_backoff": 0.5,
    "llm_health_interval": 30.0,
    "agent_max_steps": 10,
    "agent_max_tokens_per_step": 2048,
    "agent_tool_timeout": 30.0,
    "agent_total_timeout": 300.0,
    "agent_confirm_destructive": True,
    "agent_blocked_tools": [],
    "agent_temperature": 0.3,
    "agent_max_concurrent_runs": 3,
    "agent_max_messages": 50,
    "workspace_dir": "",
    "enable_web_search": True,
    "log_file": "log/localagent.log",
    "log_level": "INFO",
}


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from ~/.localagent/config.json."""

    # HTTP server
    server_host: str
    server_port: int

    # Completion router
    llm_strategy: str
    llm_providers: list
    llm_max_latency: float
    llm_retries: int
    llm_retry_backoff: float
    llm_health_interval: float

    # Agent defaults (clamped per run)
    agent_max_steps: int
    agent_max_tokens_per_step: int
    agent_tool_timeout: float
    agent_total_timeout: float
    agent_confirm_destructive: bool
    agent_blocked_tools: list
    agent_temperature: float
    agent_max_concurrent_runs: int
    agent_max_messages: int

    # Tools
    workspace_dir: str
    enable_web_search: bool

    # Logging
    log_file: str
    log_level: str

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> Config:
        """Load config from specified path or default ~/.localagent/config.json."""
        if config_path:
            config_file = Path(config_path)
        else:
            config_dir = Path.home() / APP_DIR_NAME
            config_file = config_dir / CONFIG_FILENAME
            config_dir.mkdir(parents=True, exist_ok=True)

        current_config = dict(DEFAULT_CONFIG)

        if config_file.exists():
            try:
                with open(config_file, "r", encoding="utf-8") as f:
                    user_config = json.load(f)
                current_config.update({k: v for k, v in user_config.items() if k in DEFAULT_CONFIG})
                unknown = sorted(set(user_config) - set(DEFAULT_CONFIG))
                if unknown:
                    logger.warning(f"Ignoring unknown config keys: {', '.join(unknown)}")
            except (OSError, ValueError, AttributeError) as e:
                logger.error(f"Failed to load config from {config_file}: {e}. Using defaults.")
        elif config_path is None:
            # Only generate a default file at the default location
            logger.info(f"No config found. Generating default config at {config_file}")
            try:
                with open(config_file, "w", encoding="utf-8") as f:
                    json.dump(DEFAULT_CONFIG, f, indent=4)
            except OSError as e:
                logger.error(f"Failed to write default config: {e}")
        else:
            logger.warning(f"Configuration file not found at {config_file}. Using defaults.")

        for key, default_val in DEFAULT_CONFIG.items():
            env_key = f"{ENV_PREFIX}{key.upper()}"
            if env_key in os.environ:
                current_config[key] = _coerce_env(env_key, os.environ[env_key], default_val, current_config[key])

        return cls(**current_config)

    def router_config(self) -> LLMRouterConfig:
        providers = self.llm_providers or [AUTODETECT_PROVIDER]
        if not self.llm_providers:
            logger.info("No LLM providers configured. Auto-detecting Ollama on the default port.")
        return LLMRouterConfig(
            strategy=self.llm_strategy,
            providers=[LLMProviderConfig.from_dict(p) for p in providers],
            max_latency=self.llm_max_latency,
            retries=self.llm_retries,
            retry_backoff=self.llm_retry_backoff,
            health_interval=self.llm_health_interval,
        )

    def workspace_root(self) -> Path:
        root = Path(self.workspace_dir).expanduser() if self.workspace_dir else Path.cwd() / "workspace"
        root.mkdir(parents=True, exist_ok=True)
        return root


def _coerce_env(env_key: str, raw: str, default_val: Any, current: Any) -> Any:
    """Type an env override after the default value's type."""
    try:
        if isinstance(default_val, bool):
            return raw.lower() in ("true", "1", "yes")
        if isinstance(default_val, int):
            return int(raw)
        if isinstance(default_val, float):
            return float(raw)
        if isinstance(default_val, (list, dict)):
            value = json.loads(raw)
            if not isinstance(value, type(default_val)):
                raise ValueError(f"expected {type(default_val).__name__}")
            return value
    except ValueError as e:
        logger.warning(f"Ignoring invalid {env_key}: {e}")
        return current
    return raw


# Singleton
_config: Config | None = None


def get_config(config_path: str | None = None) -> Config:
    """Get or create the global config instance, optionally loading from a path."""
    global _config
    if _config is None:
        _config = Config.load(config_path)
    return _config


def reset_config() -> None:
    global _config
    _config = None
