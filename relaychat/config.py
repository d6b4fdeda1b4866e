"""Configuration management for relaychat."""

from __future__ import annotations

import copy
import logging
import os
from collections.abc import Callable
from typing import Any, cast

import yaml
from dotenv import load_dotenv

from relaychat.clients.provider import ProviderConfig

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "RELAYCHAT_CONFIG"


class Configuration:
    """
    YAML configuration with an optional override file and change observers.

    The packaged ``config.yaml`` supplies defaults. An override file (the
    ``config_path`` argument, else ``$RELAYCHAT_CONFIG``) is deep-merged on
    top and re-read by ``reload()`` when its modification time changes.
    """

    def __init__(self, config_path: str | None = None) -> None:
        self.load_env()
        self._default_config = self._load_yaml(os.path.join(os.path.dirname(__file__), "config.yaml"))
        self._override_path = config_path or os.getenv(CONFIG_ENV_VAR)
        self._override_mtime: float | None = None
        self._current_config: dict[str, Any] = {}
        self._config_change_callbacks: list[Callable[[dict[str, Any]], None]] = []
        self._reload_config()

    @staticmethod
    def load_env() -> None:
        """Load environment variables (API keys) from a .env file."""
        load_dotenv()

    @staticmethod
    def _load_yaml(path: str) -> dict[str, Any]:
        with open(path) as file:
            config = yaml.safe_load(file) or {}
        if not isinstance(config, dict):
            raise ValueError(f"Configuration file {path} must contain a dictionary")
        return cast(dict[str, Any], config)

    def _deep_merge(self, base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Deep merge two dictionaries, with override taking precedence."""
        result = copy.deepcopy(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(cast(dict[str, Any], result[key]), cast(dict[str, Any], value))
            else:
                result[key] = value
        return result

    def _reload_config(self) -> bool:
        """Rebuild the merged config if the override file changed. Returns True if it did."""
        current_mtime = None
        if self._override_path and os.path.exists(self._override_path):
            current_mtime = os.path.getmtime(self._override_path)

        if self._current_config and current_mtime == self._override_mtime:
            return False

        old_config = self._current_config
        self._override_mtime = current_mtime
        override = self._load_yaml(self._override_path) if current_mtime is not None else {}
        self._current_config = self._deep_merge(self._default_config, override)

        if old_config and self._current_config != old_config:
            self._notify_config_change()
        return True

    def reload(self) -> bool:
        return self._reload_config()

    def _notify_config_change(self) -> None:
        for callback in list(self._config_change_callbacks):
            try:
                callback(copy.deepcopy(self._current_config))
            except Exception as e:
                logger.error("Error in config change callback: %s", e)

    def subscribe_to_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Call ``callback`` with the new config whenever a reload changes it."""
        if callback not in self._config_change_callbacks:
            self._config_change_callbacks.append(callback)

    def unsubscribe_from_changes(self, callback: Callable[[dict[str, Any]], None]) -> None:
        if callback in self._config_change_callbacks:
            self._config_change_callbacks.remove(callback)

    def get_config_dict(self) -> dict[str, Any]:
        return self._current_config

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def get_chat_service_config(self) -> dict[str, Any]:
        return self._current_config.get("chat", {}).get("service", {})

    def get_max_tool_rounds(self) -> int:
        """Maximum number of stream/execute rounds per turn (default: 8)."""
        max_rounds = self.get_chat_service_config().get("max_tool_rounds", 8)
        if not isinstance(max_rounds, int) or isinstance(max_rounds, bool) or max_rounds < 1:
            raise ValueError("max_tool_rounds must be a positive integer")
        return max_rounds

    def get_flush_config(self) -> dict[str, Any]:
        """Snapshot flush thresholds and intervals, validated."""
        flush = self.get_chat_service_config().get("streaming", {}).get("flush", {})
        intervals = list(flush.get("intervals_ms", [80, 100, 120]))
        thresholds = list(flush.get("thresholds", [4000, 12000]))

        if len(intervals) != len(thresholds) + 1:
            raise ValueError("flush.intervals_ms must have exactly one more entry than flush.thresholds")
        if any(not isinstance(v, int) or v <= 0 for v in intervals):
            raise ValueError("flush.intervals_ms must contain positive integers")
        if thresholds != sorted(thresholds) or any(not isinstance(v, int) or v <= 0 for v in thresholds):
            raise ValueError("flush.thresholds must be ascending positive integers")

        return {"intervals_ms": intervals, "thresholds": thresholds}

    def get_title_config(self) -> dict[str, Any]:
        title = self.get_chat_service_config().get("title", {})
        max_characters = title.get("max_characters", 40)
        if not isinstance(max_characters, int) or max_characters < 1:
            raise ValueError("title.max_characters must be a positive integer")
        return {"max_characters": max_characters}

    def get_chat_conf(self) -> dict[str, Any]:
        """Validated chat service settings in the shape the turn handlers read."""
        return {
            "max_tool_rounds": self.get_max_tool_rounds(),
            "streaming": {"flush": self.get_flush_config()},
            "title": self.get_title_config(),
        }

    def get_history_config(self) -> dict[str, Any]:
        history = self._current_config.get("chat", {}).get("history", {})
        context_window = history.get("context_window", 0) or 0
        reserved = history.get("reserved_output_tokens", 0) or 0
        max_messages = history.get("max_messages")

        if context_window < 0 or reserved < 0:
            raise ValueError("history token settings must not be negative")
        if max_messages is not None and (not isinstance(max_messages, int) or max_messages < 1):
            raise ValueError("history.max_messages must be a positive integer or null")

        return {
            "truncate": bool(history.get("truncate", True)),
            "context_window": context_window,
            "reserved_output_tokens": reserved,
            "max_messages": max_messages,
        }

    def get_storage_config(self) -> dict[str, Any]:
        return self._current_config.get("chat", {}).get("storage", {})

    # ------------------------------------------------------------------
    # Providers
    # ------------------------------------------------------------------

    def get_provider_configs(self) -> list[ProviderConfig]:
        return [ProviderConfig.model_validate(entry) for entry in self._current_config.get("providers", [])]

    def get_provider_config(self, provider_id: str) -> ProviderConfig:
        for provider in self.get_provider_configs():
            if provider.id == provider_id:
                return provider
        raise ValueError(f"Provider '{provider_id}' not found in providers config")

    def api_key_for(self, provider: ProviderConfig) -> str:
        if not provider.api_key_env:
            raise ValueError(f"Provider '{provider.id}' has no api_key_env configured")
        api_key = os.getenv(provider.api_key_env)
        if not api_key:
            raise ValueError(
                f"API key '{provider.api_key_env}' not found in environment variables for provider '{provider.id}'"
            )
        return api_key

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def get_builtin_search_config(self) -> dict[str, Any]:
        return self._current_config.get("tools", {}).get("builtin_search", {})

    def get_tool_logging_config(self) -> dict[str, Any]:
        return self._current_config.get("tools", {}).get("logging", {})

    def get_mcp_servers(self) -> dict[str, dict[str, Any]]:
        return self._current_config.get("mcp", {}).get("servers", {}) or {}

    def get_mcp_connection_config(self) -> dict[str, Any]:
        """MCP connection settings with validated defaults."""
        connection_config = self._current_config.get("mcp", {}).get("connection", {})

        max_attempts = connection_config.get("max_reconnect_attempts", 5)
        initial_delay = connection_config.get("initial_reconnect_delay", 1.0)
        max_delay = connection_config.get("max_reconnect_delay", 30.0)
        connection_timeout = connection_config.get("connection_timeout", 30.0)

        if max_attempts < 1:
            raise ValueError("max_reconnect_attempts must be at least 1")
        if initial_delay <= 0:
            raise ValueError("initial_reconnect_delay must be positive")
        if max_delay < initial_delay:
            raise ValueError("max_reconnect_delay must be >= initial_reconnect_delay")
        if connection_timeout <= 0:
            raise ValueError("connection_timeout must be positive")

        return {
            "max_reconnect_attempts": max_attempts,
            "initial_reconnect_delay": initial_delay,
            "max_reconnect_delay": max_delay,
            "connection_timeout": connection_timeout,
        }

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def get_logging_config(self) -> dict[str, Any]:
        return self._current_config.get("logging", {})
