"""
Built-in web search tool.

Offers a single ``web_lookup`` tool backed by one of several search APIs
(Exa, Brave, Jina, Firecrawl). The tool is only advertised when it is enabled
in config, the request asks for web search, and an API key for the chosen
provider is present in the environment. Provider choice: the request's
``search_provider`` if its key is set, otherwise the configured default, then
the first other provider with a key. Results are returned as a JSON document
that the search activity correlator understands.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from relaychat.chat.models import GenerationControls, ToolDefinition

from .hub import ToolExecutionOutput, ToolHubError, ToolRoute, ToolRoutes, UnknownToolError

logger = logging.getLogger(__name__)

BUILTIN_SEARCH_HUB_NAME = "builtin_search"
WEB_LOOKUP_TOOL_NAME = "web_lookup"
WEB_LOOKUP_FUNCTION_NAME = f"{BUILTIN_SEARCH_HUB_NAME}__{WEB_LOOKUP_TOOL_NAME}"

SEARCH_PROVIDERS = ("exa", "brave", "jina", "firecrawl")
DEFAULT_API_KEY_ENVS = {
    "exa": "EXA_API_KEY",
    "brave": "BRAVE_SEARCH_API_KEY",
    "jina": "JINA_API_KEY",
    "firecrawl": "FIRECRAWL_API_KEY",
}

EXA_SEARCH_URL = "https://api.exa.ai/search"
BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"
JINA_SEARCH_URL = "https://s.jina.ai/search"
JINA_READER_URL = "https://r.jina.ai/"
FIRECRAWL_SEARCH_URL = "https://api.firecrawl.dev/v1/search"

MAX_RESULTS = 50
BRAVE_MAX_COUNT = 20
SNIPPET_LIMIT = 500
JINA_READER_PAGES = 3

_WEB_LOOKUP_PARAMETERS: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "description": "What to search for."},
        "max_results": {
            "type": "integer",
            "description": f"Maximum number of results to return (1-{MAX_RESULTS}).",
        },
        "recency_days": {"type": "integer", "description": "Prefer results from the last N days."},
        "include_domains": {
            "type": "array",
            "description": "Optional allowlist of domains.",
            "items": {"type": "string"},
        },
        "exclude_domains": {
            "type": "array",
            "description": "Optional blocklist of domains.",
            "items": {"type": "string"},
        },
        "include_raw_content": {
            "type": "boolean",
            "description": "Include extra raw page content/snippets when supported.",
        },
        "fetch_page_content": {
            "type": "boolean",
            "description": "For Jina: fetch each result page via Reader for richer snippets.",
        },
    },
    "required": ["query"],
}


def brave_freshness(recency_days: int) -> str:
    if recency_days <= 1:
        return "pd"
    if recency_days <= 7:
        return "pw"
    if recency_days <= 31:
        return "pm"
    return "py"


def firecrawl_recency(recency_days: int) -> str:
    if recency_days <= 1:
        return "qdr:d"
    if recency_days <= 7:
        return "qdr:w"
    if recency_days <= 31:
        return "qdr:m"
    return "qdr:y"


def _first_string(item: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, list):
            value = next((v for v in value if isinstance(v, str) and v.strip()), None)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _first_int(item: dict[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int | float):
            return round(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                continue
    return None


def _first_bool(item: dict[str, Any], keys: tuple[str, ...]) -> bool | None:
    for key in keys:
        value = item.get(key)
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in ("true", "1", "yes", "on"):
                return True
            if lowered in ("false", "0", "no", "off"):
                return False
    return None


def _string_list(item: dict[str, Any], keys: tuple[str, ...]) -> list[str]:
    for key in keys:
        value = item.get(key)
        if isinstance(value, list):
            return [v.strip() for v in value if isinstance(v, str) and v.strip()]
    return []


def _clamp(value: int, minimum: int, maximum: int) -> int:
    return max(minimum, min(maximum, value))


def _result_list(data: dict[str, Any], *keys: str) -> list[dict[str, Any]]:
    """First non-empty list of objects found under ``keys``."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, list):
            items = [item for item in value if isinstance(item, dict)]
            if items:
                return items
    return []


def _citation_row(
    item: dict[str, Any],
    url_keys: tuple[str, ...],
    snippet_keys: tuple[str, ...],
    published_keys: tuple[str, ...],
) -> dict[str, Any] | None:
    url = _first_string(item, url_keys)
    if not url:
        return None
    host = urlparse(url).hostname
    row: dict[str, Any] = {"title": _first_string(item, ("title",)) or host or url, "url": url}
    snippet = _first_string(item, snippet_keys)
    if snippet:
        row["snippet"] = snippet[:SNIPPET_LIMIT]
    published_at = _first_string(item, published_keys)
    if published_at:
        row["published_at"] = published_at
    if host:
        row["source"] = host
    return row


class BuiltinSearchToolHub:
    """Tool hub serving the built-in ``web_lookup`` tool."""

    def __init__(self, search_config: dict[str, Any], http_client: httpx.AsyncClient | None = None) -> None:
        self.search_config = search_config
        self._http_client = http_client
        if self.default_provider not in SEARCH_PROVIDERS:
            raise ValueError(
                f"Unknown search provider '{self.default_provider}'; expected one of {', '.join(SEARCH_PROVIDERS)}"
            )

    @property
    def default_provider(self) -> str:
        return self.search_config.get("provider", "brave")

    def api_key(self, provider: str) -> str | None:
        env_names = {**DEFAULT_API_KEY_ENVS, **(self.search_config.get("api_key_envs") or {})}
        env_name = env_names.get(provider)
        if not env_name:
            return None
        return (os.getenv(env_name) or "").strip() or None

    def resolve_provider(self, controls: GenerationControls) -> str | None:
        """Pick the provider for a request, or None when no candidate has a key."""
        if controls.search_provider:
            return controls.search_provider if self.api_key(controls.search_provider) else None
        for candidate in (self.default_provider, *SEARCH_PROVIDERS):
            if self.api_key(candidate):
                return candidate
        return None

    async def tool_definitions(self, controls: GenerationControls) -> tuple[list[ToolDefinition], ToolRoutes]:
        if not self.search_config.get("enabled", False) or not controls.web_search_enabled:
            return [], ToolRoutes()
        provider = self.resolve_provider(controls)
        if provider is None:
            logger.warning("Built-in web search enabled but no API key is configured")
            return [], ToolRoutes()

        definition = ToolDefinition(
            name=WEB_LOOKUP_FUNCTION_NAME,
            description=(
                "Search the web and return structured citations with title, url, snippet, "
                "and optional publish time."
            ),
            parameters=_WEB_LOOKUP_PARAMETERS,
            source="builtin",
        )
        route = ToolRoute(
            hub_name=BUILTIN_SEARCH_HUB_NAME,
            target=WEB_LOOKUP_TOOL_NAME,
            search_provider=provider,
        )
        return [definition], ToolRoutes({WEB_LOOKUP_FUNCTION_NAME: route})

    async def execute_tool(self, name: str, arguments: dict[str, Any], routes: ToolRoutes) -> ToolExecutionOutput:
        route = routes.get(name)
        if route is None or route.hub_name != BUILTIN_SEARCH_HUB_NAME:
            raise UnknownToolError(name)

        provider = route.search_provider or self.default_provider
        search = {
            "exa": self._search_exa,
            "brave": self._search_brave,
            "jina": self._search_jina,
            "firecrawl": self._search_firecrawl,
        }.get(provider)
        if search is None:
            raise ToolHubError(f"Unsupported search provider: {provider}")

        api_key = self.api_key(provider)
        if not api_key:
            raise ToolHubError(f"No API key configured for search provider '{provider}'")

        args = self._resolve_arguments(arguments)
        logger.info("→ Search[%s]: %s", provider, args["query"])
        rows = await search(args, api_key)
        logger.info("← Search[%s]: %d results", provider, len(rows))

        output = {
            "provider": provider,
            "query": args["query"],
            "resultCount": len(rows),
            "results": rows,
        }
        return ToolExecutionOutput(text=json.dumps(output, indent=2, ensure_ascii=False))

    def _resolve_arguments(self, arguments: dict[str, Any]) -> dict[str, Any]:
        query = _first_string(arguments, ("query", "q", "input", "text"))
        if not query:
            raise ToolHubError("Builtin web search tool requires a non-empty `query`.")

        max_results = _first_int(arguments, ("max_results", "maxResults", "results", "limit", "count"))
        if max_results is None:
            max_results = int(self.search_config.get("max_results", 8))
        recency_days = _first_int(arguments, ("recency_days", "recencyDays"))
        if recency_days is None:
            recency_days = self.search_config.get("recency_days")

        include_raw = _first_bool(arguments, ("include_raw_content", "includeRawContent"))
        fetch_pages = _first_bool(arguments, ("fetch_page_content", "fetchPageContent"))
        return {
            "query": query,
            "max_results": _clamp(max_results, 1, MAX_RESULTS),
            "recency_days": _clamp(int(recency_days), 1, 365) if recency_days else None,
            "include_domains": _string_list(arguments, ("include_domains", "includeDomains")),
            "exclude_domains": _string_list(arguments, ("exclude_domains", "excludeDomains")),
            "include_raw_content": bool(include_raw),
            "fetch_page_content": (
                fetch_pages if fetch_pages is not None else bool(self.search_config.get("jina_read_pages", False))
            ),
        }

    async def _request(self, provider: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        timeout = float(self.search_config.get("timeout", 20.0))
        client = self._http_client or httpx.AsyncClient(timeout=timeout)
        try:
            resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPError as e:
            raise ToolHubError(f"{provider.capitalize()} search request failed: {e}") from e
        finally:
            if self._http_client is None:
                await client.aclose()

    async def _request_json(self, provider: str, method: str, url: str, **kwargs: Any) -> dict[str, Any]:
        resp = await self._request(provider, method, url, **kwargs)
        try:
            data = resp.json()
        except ValueError as e:
            raise ToolHubError(f"{provider.capitalize()} search returned invalid JSON") from e
        if not isinstance(data, dict):
            raise ToolHubError(f"{provider.capitalize()} search returned an unexpected payload")
        return data

    async def _search_exa(self, args: dict[str, Any], api_key: str) -> list[dict[str, Any]]:
        body: dict[str, Any] = {
            "query": args["query"],
            "numResults": args["max_results"],
            "useAutoprompt": bool(self.search_config.get("exa_use_autoprompt", False)),
        }
        if self.search_config.get("exa_search_type"):
            body["type"] = self.search_config["exa_search_type"]
        if args["include_domains"]:
            body["includeDomains"] = args["include_domains"]
        if args["exclude_domains"]:
            body["excludeDomains"] = args["exclude_domains"]
        if args["recency_days"]:
            start = datetime.now(UTC) - timedelta(days=args["recency_days"])
            body["startPublishedDate"] = start.strftime("%Y-%m-%dT%H:%M:%SZ")
        if args["include_raw_content"]:
            body["text"] = True

        data = await self._request_json(
            "exa", "POST", EXA_SEARCH_URL, json=body, headers={"Authorization": f"Bearer {api_key}"}
        )

        rows: list[dict[str, Any]] = []
        for item in _result_list(data, "results")[: args["max_results"]]:
            row = _citation_row(
                item,
                ("url", "id"),
                ("text", "summary", "snippet", "highlightsSummary"),
                ("publishedDate", "published_at", "date"),
            )
            if row is None:
                continue
            if "snippet" not in row:
                highlights = item.get("highlights")
                if isinstance(highlights, list) and highlights and isinstance(highlights[0], dict):
                    highlight = _first_string(highlights[0], ("text",))
                    if highlight:
                        row["snippet"] = highlight[:SNIPPET_LIMIT]
            rows.append(row)
        return rows

    async def _search_brave(self, args: dict[str, Any], api_key: str) -> list[dict[str, Any]]:
        count = min(args["max_results"], BRAVE_MAX_COUNT)
        params: dict[str, Any] = {"q": args["query"], "count": count}
        if args["recency_days"]:
            params["freshness"] = brave_freshness(args["recency_days"])
        for config_key, param in (("country", "country"), ("language", "search_lang"), ("safesearch", "safesearch")):
            if self.search_config.get(config_key):
                params[param] = self.search_config[config_key]

        data = await self._request_json(
            "brave",
            "GET",
            BRAVE_SEARCH_URL,
            params=params,
            headers={"X-Subscription-Token": api_key, "Accept": "application/json"},
        )

        rows: list[dict[str, Any]] = []
        for item in _result_list(data.get("web") or {}, "results")[:count]:
            row = _citation_row(
                item,
                ("url", "profile", "link"),
                ("description", "snippet", "extra_snippets"),
                ("age", "page_age", "published"),
            )
            if row is not None:
                rows.append(row)
        return rows

    async def _search_jina(self, args: dict[str, Any], api_key: str) -> list[dict[str, Any]]:
        data = await self._request_json(
            "jina",
            "GET",
            JINA_SEARCH_URL,
            params={"q": args["query"], "count": args["max_results"]},
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
        )

        rows: list[dict[str, Any]] = []
        for item in _result_list(data, "data", "results")[: args["max_results"]]:
            row = _citation_row(
                item,
                ("url", "link"),
                ("snippet", "summary", "description", "text"),
                ("publishedDate", "date", "published"),
            )
            if row is not None:
                rows.append(row)

        if args["fetch_page_content"]:
            for row in rows[:JINA_READER_PAGES]:
                page = await self._read_page(row["url"])
                if page:
                    row["snippet"] = page
        return rows

    async def _read_page(self, url: str) -> str | None:
        """Condensed start of a page fetched through the Jina Reader."""
        resp = await self._request("jina", "GET", JINA_READER_URL + quote(url, safe=":/?&=#%"))
        condensed = re.sub(r"\s+", " ", resp.text).strip()
        return condensed[:SNIPPET_LIMIT] or None

    async def _search_firecrawl(self, args: dict[str, Any], api_key: str) -> list[dict[str, Any]]:
        body: dict[str, Any] = {"query": args["query"], "limit": args["max_results"]}
        if args["recency_days"]:
            body["tbs"] = firecrawl_recency(args["recency_days"])
        if self.search_config.get("language"):
            body["lang"] = self.search_config["language"]
        if self.search_config.get("country"):
            body["country"] = self.search_config["country"]
        if self.search_config.get("firecrawl_extract_content", False) or args["include_raw_content"]:
            body["scrapeOptions"] = {"formats": ["markdown"]}

        data = await self._request_json(
            "firecrawl",
            "POST",
            FIRECRAWL_SEARCH_URL,
            json=body,
            headers={"Authorization": f"Bearer {api_key}", "Accept": "application/json"},
        )

        rows: list[dict[str, Any]] = []
        for item in _result_list(data, "data", "results")[: args["max_results"]]:
            row = _citation_row(
                item,
                ("url", "link"),
                ("description", "markdown", "content", "snippet", "summary"),
                ("publishedDate", "published", "date"),
            )
            if row is not None:
                rows.append(row)
        return rows
