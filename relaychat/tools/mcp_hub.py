"""MCP Tool Hub

Registry of tools discovered on connected MCP servers:
- Discovers tools via the MCP SDK at initialization
- Emits tool definitions straight from each tool's ``inputSchema``
- Calls tools through the MCP SDK (server-side validation only)
- Flattens ``CallToolResult`` content into text for the conversation
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from mcp import McpError, types

from relaychat.chat.models import GenerationControls, ToolDefinition

from .hub import ToolExecutionOutput, ToolRoute, ToolRoutes, UnknownToolError

if TYPE_CHECKING:
    from .mcp_client import MCPClient

logger = logging.getLogger(__name__)

MCP_HUB_NAME = "mcp"


class ToolInfo:
    """A registered tool and the client that serves it."""

    def __init__(self, tool: types.Tool, client: MCPClient):
        self.tool = tool
        self.client = client


class MCPToolHub:
    """
    Tool hub backed by MCP servers.

    Tool names are exposed as the server reports them; when two servers
    report the same name, the later one is prefixed with its client name.
    """

    def __init__(self, clients: list[MCPClient]) -> None:
        self.clients = clients
        self._tool_registry: dict[str, ToolInfo] = {}

    async def initialize(self) -> None:
        self._tool_registry.clear()
        for client in self.clients:
            await self._register_client_tools(client)
        logger.info("Initialized MCP tool registry with %d tools", len(self._tool_registry))

    async def _register_client_tools(self, client: MCPClient) -> None:
        if not client.is_connected:
            logger.warning("Skipping tool registration for disconnected client '%s'", client.name)
            return

        disabled = client.disabled_tools
        try:
            tools = await client.list_tools()
        except McpError as e:
            logger.error("Error registering tools from client '%s': %s", client.name, e.error.message)
            raise

        registered = 0
        for tool in tools:
            if tool.name in disabled:
                logger.debug("Tool '%s' on '%s' is disabled in config", tool.name, client.name)
                continue

            registry_name = tool.name
            if registry_name in self._tool_registry:
                logger.warning("Tool name conflict: '%s' already exists", registry_name)
                registry_name = f"{client.name}_{registry_name}"

            self._tool_registry[registry_name] = ToolInfo(tool, client)
            registered += 1

        logger.info("Registered %d tools from client '%s'", registered, client.name)

    def _to_definition(self, registry_name: str, tool: types.Tool) -> ToolDefinition:
        if not tool.inputSchema:
            raise ValueError(f"Tool {tool.name} has no input schema")
        return ToolDefinition(
            name=registry_name,
            description=tool.description or "",
            parameters=tool.inputSchema,
            source="mcp",
        )

    async def tool_definitions(self, controls: GenerationControls) -> tuple[list[ToolDefinition], ToolRoutes]:
        definitions: list[ToolDefinition] = []
        routes: dict[str, ToolRoute] = {}

        for registry_name, info in self._tool_registry.items():
            if not info.client.enabled:
                continue
            try:
                definitions.append(self._to_definition(registry_name, info.tool))
            except ValueError as e:
                logger.error("Skipping tool '%s' due to schema error: %s", registry_name, e)
                continue
            routes[registry_name] = ToolRoute(hub_name=MCP_HUB_NAME, target=(info.client.name, info.tool.name))

        return definitions, ToolRoutes(routes)

    def get_tool_info(self, tool_name: str) -> ToolInfo:
        tool_info = self._tool_registry.get(tool_name)
        if not tool_info:
            raise UnknownToolError(tool_name)
        return tool_info

    async def execute_tool(self, name: str, arguments: dict[str, Any], routes: ToolRoutes) -> ToolExecutionOutput:
        """
        Call a tool through the client recorded in this turn's routes.

        No client-side validation is performed; the MCP server validates
        arguments and reports failures either as ``isError`` results or as
        ``McpError``.
        """
        route = routes.get(name)
        if route is None or route.hub_name != MCP_HUB_NAME:
            raise UnknownToolError(name)

        client_name, tool_name = route.target
        client = next((c for c in self.clients if c.name == client_name), None)
        if client is None:
            raise UnknownToolError(name)

        result = await client.call_tool(tool_name, arguments)
        return ToolExecutionOutput(text=pluck_content(result), is_error=bool(result.isError))


def pluck_content(res: types.CallToolResult) -> str:
    """
    Flatten an MCP ``CallToolResult`` into text for the model.

    Structured content wins when present (JSON-serialized). Otherwise each
    content item is rendered: text as-is, images and blobs as size
    placeholders, embedded text resources inline. Returns an empty string for
    an empty result.
    """
    if res.structuredContent:
        try:
            return json.dumps(res.structuredContent, indent=2)
        except (TypeError, ValueError) as e:
            logger.warning("Failed to serialize structured content: %s", e)

    if not res.content:
        return ""

    out: list[str] = []
    for item in res.content:
        if isinstance(item, types.TextContent):
            out.append(item.text)
        elif isinstance(item, types.ImageContent):
            out.append(f"[Image: {item.mimeType}, {len(item.data)} bytes]")
        elif isinstance(item, types.EmbeddedResource):
            if isinstance(item.resource, types.TextResourceContents):
                out.append(f"[Embedded resource: {item.resource.text}]")
            elif isinstance(item.resource, types.BlobResourceContents):
                out.append(f"[Binary content: {len(item.resource.blob)} bytes]")
            else:
                out.append(f"[Embedded resource: {type(item.resource).__name__}]")
        else:
            out.append(f"[{type(item).__name__}]")

    content = "\n".join(out)
    logger.debug("Extracted tool result content: %d characters", len(content))
    return content
