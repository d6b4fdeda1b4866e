"""
Tool Hub Interface

A tool hub advertises tool definitions and executes tools by function name.
Each turn takes one immutable ``ToolRoutes`` snapshot when it collects the
definitions, so a tool catalog refresh in the middle of a turn cannot change
where that turn's calls are sent.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Protocol, runtime_checkable

from pydantic import BaseModel

from relaychat.chat.models import GenerationControls, ToolDefinition

logger = logging.getLogger(__name__)


class ToolHubError(Exception):
    """Base class for tool routing and execution failures."""


class UnknownToolError(ToolHubError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' not found")


class ToolExecutionOutput(BaseModel):
    text: str
    is_error: bool = False


@dataclass(frozen=True)
class ToolRoute:
    hub_name: str
    target: Any = None
    search_provider: str | None = None


class ToolRoutes(Mapping[str, ToolRoute]):
    """Read-only mapping of function name to route."""

    def __init__(self, routes: Mapping[str, ToolRoute] | None = None) -> None:
        self._routes = MappingProxyType(dict(routes or {}))

    def __getitem__(self, name: str) -> ToolRoute:
        return self._routes[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._routes)

    def __len__(self) -> int:
        return len(self._routes)

    def search_provider(self, name: str) -> str | None:
        route = self._routes.get(name)
        return route.search_provider if route else None


@runtime_checkable
class ToolHub(Protocol):
    async def tool_definitions(self, controls: GenerationControls) -> tuple[list[ToolDefinition], ToolRoutes]: ...

    async def execute_tool(self, name: str, arguments: dict[str, Any], routes: ToolRoutes) -> ToolExecutionOutput: ...


class CompositeToolHub:
    """Presents several named hubs as one, dispatching by each route's hub name."""

    def __init__(self, hubs: Mapping[str, ToolHub]) -> None:
        self.hubs = dict(hubs)

    async def tool_definitions(self, controls: GenerationControls) -> tuple[list[ToolDefinition], ToolRoutes]:
        definitions: list[ToolDefinition] = []
        routes: dict[str, ToolRoute] = {}

        for hub_name, hub in self.hubs.items():
            hub_definitions, hub_routes = await hub.tool_definitions(controls)
            for definition in hub_definitions:
                if definition.name in routes:
                    logger.warning("Tool name conflict: '%s' from hub '%s' skipped", definition.name, hub_name)
                    continue
                route = hub_routes.get(definition.name)
                if route is None:
                    logger.warning("Hub '%s' returned tool '%s' without a route", hub_name, definition.name)
                    continue
                routes[definition.name] = route
                definitions.append(definition)

        logger.debug("Collected %d tool definitions from %d hubs", len(definitions), len(self.hubs))
        return definitions, ToolRoutes(routes)

    async def execute_tool(self, name: str, arguments: dict[str, Any], routes: ToolRoutes) -> ToolExecutionOutput:
        route = routes.get(name)
        if route is None:
            raise UnknownToolError(name)

        hub = self.hubs.get(route.hub_name)
        if hub is None:
            raise ToolHubError(f"Tool hub '{route.hub_name}' for tool '{name}' is not available")
        return await hub.execute_tool(name, arguments, routes)
