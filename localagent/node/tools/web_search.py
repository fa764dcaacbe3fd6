"""Web search tool using DuckDuckGo."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from duckduckgo_search import DDGS

from .registry import ToolAction, ToolPlugin, ToolResult

logger = logging.getLogger("localagent.tools.web_search")


async def web_search(query: str, max_results: int = 5) -> ToolResult:
    """Search the web using DuckDuckGo and return formatted results.

    Args:
        query: Search query string.
        max_results: Maximum number of results to return (default 5, max 10).
    """
    max_results = max(1, min(int(max_results), 10))

    def _search() -> list[dict[str, Any]]:
        with DDGS() as ddgs:
            return list(ddgs.text(query, max_results=max_results))

    try:
        results = await asyncio.to_thread(_search)
    except Exception as e:
        logger.error(f"Web search error for query '{query}': {e}")
        return ToolResult(False, f"Web search failed: {e}", error=str(e))

    if not results:
        return ToolResult(True, f"No results found for: {query}", data=[])

    lines: list[str] = []
    for i, r in enumerate(results, 1):
        title = r.get("title", "No title")
        href = r.get("href", "")
        body = r.get("body", "")
        lines.append(f"{i}. **{title}**\n   URL: {href}\n   {body}")

    return ToolResult(True, "\n\n".join(lines), data=results)


class WebSearchPlugin(ToolPlugin):
    name = "web"
    display_name = "Web Search"
    category = "search"
    actions = [
        ToolAction(
            name="search",
            description="Search the web with DuckDuckGo and return the top results.",
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query"},
                    "max_results": {"type": "integer", "description": "Number of results (1-10, default 5)"},
                },
                "required": ["query"],
            },
            rate_limit=20,
        ),
    ]

    async def execute(self, action: str, params: dict[str, Any]) -> ToolResult:
        if action != "search":
            return ToolResult(False, f"Unknown action: {action}", error="ACTION_NOT_FOUND")
        query = params.get("query")
        if not isinstance(query, str) or not query.strip():
            return ToolResult(False, "Missing required parameter: query", error="INVALID_PARAMS")
        try:
            max_results = int(params.get("max_results", 5))
        except (TypeError, ValueError):
            max_results = 5
        return await web_search(query, max_results)
