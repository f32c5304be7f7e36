"""Tavily web search, the server-side tool offered in agent mode."""

import logging
import os
from typing import Any, Optional

import httpx

from agentwire.tools import Tool, ToolRegistry

logger = logging.getLogger(__name__)

TAVILY_URL = "https://api.tavily.com/search"


class TavilySearch:
    """Thin async client for the Tavily search API.

    Without an API key it answers with a canned result so the agent loop
    can be exercised offline.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        max_results: int = 5,
        timeout: float = 30.0,
    ):
        self.api_key = api_key if api_key is not None else os.environ.get("TAVILY_API_KEY")
        self._client = client
        self.max_results = max_results
        self.timeout = timeout

    async def search(self, query: str) -> dict[str, Any]:
        if not self.api_key:
            return {
                "query": query,
                "results": [
                    {
                        "title": "Mock Search Result",
                        "url": "https://example.com",
                        "content": f'This is a mock search result for: "{query}". '
                        "Tavily API key not configured.",
                        "score": 0.9,
                    }
                ],
                "answer": f"Mock answer for: {query}",
            }

        body = {
            "api_key": self.api_key,
            "query": query,
            "search_depth": "basic",
            "include_answer": True,
            "max_results": self.max_results,
        }
        try:
            if self._client is not None:
                response = await self._client.post(TAVILY_URL, json=body)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(TAVILY_URL, json=body)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning("Tavily search failed: %s", e)
            return {"query": query, "results": [], "answer": f"Search failed: {e}"}


def format_results(response: dict[str, Any]) -> str:
    """Render a search response as plain text for the model."""
    lines = [f'Search results for: "{response.get("query", "")}"', ""]
    answer = response.get("answer")
    if answer:
        lines += [f"Quick Answer: {answer}", ""]
    results = response.get("results") or []
    if not results:
        lines.append("No results found.")
        return "\n".join(lines) + "\n"
    lines.append("Detailed Results:")
    for i, item in enumerate(results, start=1):
        lines.append("")
        lines.append(f"{i}. {item.get('title', '')}")
        lines.append(f"   URL: {item.get('url', '')}")
        lines.append(f"   {str(item.get('content', ''))[:200]}...")
    return "\n".join(lines) + "\n"


def web_search_tools(searcher: Optional[TavilySearch] = None) -> ToolRegistry:
    """Build the executor used by the producing side in agent mode."""
    searcher = searcher or TavilySearch()

    async def tavily_search(query: str = "") -> str:
        query = query.strip()
        if not query:
            return "Search skipped: missing query."
        return format_results(await searcher.search(query))

    return ToolRegistry([
        Tool(
            func=tavily_search,
            name="tavily_search",
            description="Search the web for current information.",
        )
    ])
