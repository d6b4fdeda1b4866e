"""
MCP server connection over stdio, using the official MCP SDK.

Connection behaviour is driven by the ``mcp.connection`` config section:
- max_reconnect_attempts: attempts before ``connect`` gives up
- initial_reconnect_delay / max_reconnect_delay: exponential backoff bounds
- connection_timeout: limit for the initialize handshake
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from contextlib import AsyncExitStack
from typing import Any

from mcp import ClientSession, McpError, StdioServerParameters, types
from mcp.client.stdio import stdio_client

logger = logging.getLogger(__name__)


class MCPClient:
    """One configured MCP server and its SDK session."""

    def __init__(
        self,
        name: str,
        config: dict[str, Any],
        connection_config: dict[str, Any] | None = None,
    ) -> None:
        """
        Args:
            name: Server id, used for logging and for prefixing conflicting tool names
            config: Server entry (command, args, env, enabled, disabled_tools)
            connection_config: Retry and timeout settings
        """
        self.name: str = name
        self.config: dict[str, Any] = config
        self.session: ClientSession | None = None
        self.exit_stack: AsyncExitStack = AsyncExitStack()
        self._cleanup_lock: asyncio.Lock = asyncio.Lock()
        self._reconnect_attempts: int = 0
        self._is_connected: bool = False
        self.client_version = "0.1.0"

        conn_config = connection_config or {}
        self._max_reconnect_attempts: int = conn_config.get("max_reconnect_attempts", 5)
        self._initial_reconnect_delay: float = conn_config.get("initial_reconnect_delay", 1.0)
        self._max_reconnect_delay: float = conn_config.get("max_reconnect_delay", 30.0)
        self._connection_timeout: float = conn_config.get("connection_timeout", 30.0)
        self._reconnect_delay: float = self._initial_reconnect_delay

    @property
    def enabled(self) -> bool:
        return bool(self.config.get("enabled", True))

    @property
    def disabled_tools(self) -> set[str]:
        return set(self.config.get("disabled_tools", []))

    def _resolve_command(self) -> str | None:
        """Resolve the configured command to an executable path, or None if it cannot be found."""
        command = self.config.get("command")
        if not command:
            return None

        if os.path.isabs(command):
            return command if os.path.exists(command) else None

        return shutil.which(command)

    async def connect(self) -> None:
        """
        Connect with exponential backoff.

        The delay starts at ``initial_reconnect_delay``, doubles after each
        failed attempt and is capped at ``max_reconnect_delay``. The last
        failure is re-raised once ``max_reconnect_attempts`` is reached.
        """
        while self._reconnect_attempts < self._max_reconnect_attempts:
            try:
                await self._attempt_connection()
                self._is_connected = True
                self._reconnect_attempts = 0
                self._reconnect_delay = self._initial_reconnect_delay
                return
            except Exception as e:
                self._reconnect_attempts += 1
                self._is_connected = False

                if self._reconnect_attempts >= self._max_reconnect_attempts:
                    self._reconnect_delay = self._initial_reconnect_delay
                    self._reconnect_attempts = 0
                    logger.error(
                        "Failed to connect to %s after %d attempts: %s",
                        self.name,
                        self._max_reconnect_attempts,
                        e,
                    )
                    raise

                logger.warning(
                    "Connection attempt %d failed for %s: %s. Retrying in %ss...",
                    self._reconnect_attempts,
                    self.name,
                    e,
                    self._reconnect_delay,
                )
                await asyncio.sleep(self._reconnect_delay)
                self._reconnect_delay = min(self._reconnect_delay * 2, self._max_reconnect_delay)

    async def _attempt_connection(self) -> None:
        command = self._resolve_command()
        if not command:
            raise ValueError(f"Command '{self.config.get('command')}' not found in PATH")

        server_params = StdioServerParameters(
            command=command,
            args=self.config.get("args", []),
            env={**os.environ, **self.config.get("env", {})} if self.config.get("env") else None,
        )

        read_stream, write_stream = await self.exit_stack.enter_async_context(stdio_client(server_params))
        client_info = types.Implementation(name=self.name, version=self.client_version)
        self.session = await self.exit_stack.enter_async_context(
            ClientSession(read_stream, write_stream, client_info=client_info)
        )

        await asyncio.wait_for(self.session.initialize(), timeout=self._connection_timeout)
        logger.info("← MCP[%s]: connected", self.name)

    def _require_session(self) -> ClientSession:
        if not self.session:
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Client {self.name} not connected",
                )
            )
        return self.session

    async def list_tools(self) -> list[types.Tool]:
        session = self._require_session()
        try:
            result = await session.list_tools()
            return result.tools
        except McpError as e:
            logger.error("MCP error listing tools from %s: %s", self.name, e.error.message)
            raise
        except Exception as e:
            logger.error("Error listing tools from %s: %s", self.name, e)
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Failed to list tools: {e!s}",
                )
            ) from e

    async def call_tool(self, name: str, arguments: dict[str, Any] | None = None) -> types.CallToolResult:
        session = self._require_session()
        try:
            logger.debug("→ MCP[%s]: calling tool '%s'", self.name, name)
            return await session.call_tool(name, arguments)
        except McpError as e:
            logger.error("MCP error calling tool '%s': %s", name, e.error.message)
            raise
        except Exception as e:
            logger.error("Error calling tool '%s': %s", name, e)
            raise McpError(
                error=types.ErrorData(
                    code=types.INTERNAL_ERROR,
                    message=f"Tool call failed: {e!s}",
                )
            ) from e

    async def close(self) -> None:
        async with self._cleanup_lock:
            try:
                self._is_connected = False
                await self.exit_stack.aclose()
                self.session = None
                logger.info("MCP client '%s' disconnected", self.name)
            except Exception as e:
                logger.error("Error during cleanup of client %s: %s", self.name, e)

    @property
    def is_connected(self) -> bool:
        return self._is_connected
