"""
Application wiring: logging setup and component assembly.

``ChatApplication`` builds every collaborator of the chat orchestrator from
a ``Configuration``: MCP clients and their tool hub, the built-in web search
hub, the conversation store, and the streaming session registry.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from relaychat.chat.chat_orchestrator import ChatOrchestrator, TurnRequest
from relaychat.chat.models import GenerationControls
from relaychat.chat.session_registry import StreamingSessionRegistry
from relaychat.clients.provider import PassthroughCacheOptimizer, ProviderManager
from relaychat.config import Configuration
from relaychat.history import ConversationStore, create_store
from relaychat.tools.builtin_search import BUILTIN_SEARCH_HUB_NAME, BuiltinSearchToolHub
from relaychat.tools.hub import CompositeToolHub
from relaychat.tools.mcp_client import MCPClient
from relaychat.tools.mcp_hub import MCP_HUB_NAME, MCPToolHub

logger = logging.getLogger(__name__)

MAX_CONCURRENT_CONNECTIONS = 5

_LEVEL_MAP = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Config module name -> loggers it controls
_MODULE_LOGGER_MAP: dict[str, dict[str, Any]] = {
    "chat": {"loggers": ["relaychat.chat"], "default_level": "INFO"},
    "tools": {"loggers": ["relaychat.tools"], "default_level": "INFO"},
    "history": {"loggers": ["relaychat.history"], "default_level": "WARNING"},
    "clients": {"loggers": ["relaychat.clients"], "default_level": "INFO"},
    "mcp": {"loggers": ["mcp"], "default_level": "WARNING"},
}


def configure_logging(logging_config: dict[str, Any]) -> None:
    """
    Apply the ``logging`` config section.

    Sets the root level and handler format, a level per module logger
    hierarchy, and stores each module's ``enable_features`` flags on
    ``logging._module_features`` for ``should_log_feature``.
    """
    global_level = logging_config.get("level", "WARNING")
    root = logging.getLogger()
    root.setLevel(_LEVEL_MAP.get(global_level, logging.WARNING))

    if "format" in logging_config:
        for handler in root.handlers:
            if isinstance(handler, logging.StreamHandler):
                handler.setFormatter(logging.Formatter(logging_config["format"]))

    features: dict[str, dict[str, Any]] = {}
    for module_name, module_config in logging_config.get("modules", {}).items():
        if not isinstance(module_config, dict):
            continue

        mapping = _MODULE_LOGGER_MAP.get(module_name, {})
        module_level = module_config.get("level", mapping.get("default_level", global_level))
        level_value = _LEVEL_MAP.get(module_level, logging.WARNING)
        for logger_name in mapping.get("loggers", []):
            logging.getLogger(logger_name).setLevel(level_value)

        features[module_name] = dict(module_config.get("enable_features", {}) or {})

    logging._module_features = features  # type: ignore[attr-defined]


def _on_logging_config_change(new_config: dict[str, Any]) -> None:
    """Re-apply logging settings after a configuration reload."""
    try:
        logging_config = new_config.get("logging", {})
        if logging_config:
            configure_logging(logging_config)
            logger.info("Logging configuration updated")
    except Exception as e:
        logger.error("Failed to update logging configuration: %s", e)


class ChatApplication:
    """
    Owns the long-lived components behind a ``ChatOrchestrator``.

    Use as an async context manager, or call ``initialize()`` and
    ``cleanup()`` explicitly. Provider adapters are registered on
    ``provider_manager`` by the embedding application.
    """

    def __init__(
        self,
        configuration: Configuration | None = None,
        provider_manager: ProviderManager | None = None,
        store: ConversationStore | None = None,
    ) -> None:
        self.configuration = configuration or Configuration()
        self.provider_manager = provider_manager or ProviderManager()
        self.store: ConversationStore = store or create_store(self.configuration.get_storage_config())
        self.registry = StreamingSessionRegistry()

        connection_config = self.configuration.get_mcp_connection_config()
        self.clients: list[MCPClient] = []
        for name, server_config in self.configuration.get_mcp_servers().items():
            client = MCPClient(name, server_config, connection_config)
            if client.enabled:
                self.clients.append(client)
            else:
                logger.info("Skipping disabled server: %s", name)

        self.mcp_hub: MCPToolHub | None = None
        self.orchestrator: ChatOrchestrator | None = None
        self._init_lock = asyncio.Lock()
        self._ready = asyncio.Event()

    async def __aenter__(self) -> ChatApplication:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.cleanup()

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._ready.is_set():
                logger.debug("Chat application already initialized")
                return

            configure_logging(self.configuration.get_logging_config())
            self.configuration.subscribe_to_changes(_on_logging_config_change)

            logger.info("→ Application: connecting to %d MCP clients", len(self.clients))
            connection_semaphore = asyncio.Semaphore(MAX_CONCURRENT_CONNECTIONS)

            async def connect_with_semaphore(client: MCPClient) -> None:
                async with connection_semaphore:
                    await client.connect()

            connection_results = await asyncio.gather(
                *(connect_with_semaphore(c) for c in self.clients),
                return_exceptions=True,
            )

            connected_clients: list[MCPClient] = []
            for client, result in zip(self.clients, connection_results, strict=True):
                if isinstance(result, Exception):
                    logger.warning("Client '%s' failed to connect: %s", client.name, result)
                else:
                    connected_clients.append(client)

            if self.clients and not connected_clients:
                logger.warning("No MCP clients connected - running without MCP tools")
            else:
                logger.info(
                    "← Application: connected to %d out of %d MCP clients",
                    len(connected_clients),
                    len(self.clients),
                )

            self.mcp_hub = MCPToolHub(connected_clients)
            await self.mcp_hub.initialize()

            tool_hub = CompositeToolHub(
                {
                    MCP_HUB_NAME: self.mcp_hub,
                    BUILTIN_SEARCH_HUB_NAME: BuiltinSearchToolHub(self.configuration.get_builtin_search_config()),
                }
            )

            self.orchestrator = ChatOrchestrator(
                ChatOrchestrator.ChatOrchestratorConfig(
                    store=self.store,
                    registry=self.registry,
                    provider_manager=self.provider_manager,
                    tool_hub=tool_hub,
                    cache_optimizer=PassthroughCacheOptimizer(),
                    chat_conf=self.configuration.get_chat_conf(),
                    tool_logging_config=self.configuration.get_tool_logging_config(),
                )
            )
            self.configuration.subscribe_to_changes(self._on_chat_config_change)
            self._ready.set()
            logger.info("← Application: ready")

    def _on_chat_config_change(self, new_config: dict[str, Any]) -> None:
        """Push reloaded chat service settings into the running orchestrator."""
        if self.orchestrator is None:
            return
        try:
            self.orchestrator.update_chat_conf(self.configuration.get_chat_conf())
            logger.info("Chat service configuration updated")
        except ValueError as e:
            logger.error("Ignoring invalid chat service configuration: %s", e)

    def turn_request(
        self,
        conversation_id: str,
        provider_id: str,
        model_id: str,
        controls: GenerationControls | None = None,
        system_prompt: str | None = None,
    ) -> TurnRequest:
        """Build a ``TurnRequest`` with history limits taken from configuration."""
        history_config = self.configuration.get_history_config()
        truncate = history_config["truncate"]
        return TurnRequest(
            conversation_id=conversation_id,
            provider_config=self.configuration.get_provider_config(provider_id),
            model_id=model_id,
            controls=controls or GenerationControls(),
            system_prompt=system_prompt,
            context_window=history_config["context_window"] if truncate else 0,
            reserved_output_tokens=history_config["reserved_output_tokens"],
            max_history_messages=history_config["max_messages"],
        )

    async def cleanup(self) -> None:
        """Cancel in-flight turns and close every MCP client."""
        logger.info("→ Application: starting cleanup")
        for conversation_id in self.registry.active_conversations():
            self.registry.cancel(conversation_id)

        self.configuration.unsubscribe_from_changes(_on_logging_config_change)
        self.configuration.unsubscribe_from_changes(self._on_chat_config_change)

        for client in self.clients:
            try:
                await client.close()
                logger.debug("Closed MCP client: %s", client.name)
            except Exception as e:
                logger.warning("Error closing client %s: %s", client.name, e)

        self._ready.clear()
        self.orchestrator = None
        logger.info("← Application: cleanup completed")
