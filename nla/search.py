"""
NLA Oracle — Perplexity Search Tool

A web search tool the Anthropic and OpenRouter backends can call while
judging a fulfillment. OpenAI uses its own hosted search instead.

Search failures are reported back to the model as tool output rather
than failing the arbitration; the model may still answer without it.
"""

from __future__ import annotations

import logging
from typing import Any

from langchain_core.tools import StructuredTool, ToolException

logger = logging.getLogger("nla.search")

PERPLEXITY_SEARCH_URL = "https://api.perplexity.ai/search"
DEFAULT_MAX_RESULTS = 5


def _format_results(data: dict[str, Any]) -> str:
    results = data.get("results") or []
    if not results:
        return "No results."
    lines = []
    for i, r in enumerate(results, 1):
        title = r.get("title", "")
        url = r.get("url", "")
        snippet = (r.get("snippet") or "").strip()
        lines.append(f"[{i}] {title} ({url})\n{snippet}")
    return "\n\n".join(lines)


def perplexity_search(query: str, api_key: str, timeout: float = 30.0,
                      max_results: int = DEFAULT_MAX_RESULTS) -> str:
    import httpx  # production dependency

    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    try:
        with httpx.Client(timeout=timeout) as client:
            resp = client.post(
                PERPLEXITY_SEARCH_URL,
                headers=headers,
                json={"query": query, "max_results": max_results},
            )
        resp.raise_for_status()
    except httpx.HTTPError as e:
        logger.warning("Perplexity search failed: %s", str(e)[:200])
        raise ToolException(f"Search failed: {e}") from e

    return _format_results(resp.json())


def make_search_tool(api_key: str, timeout: float = 30.0) -> StructuredTool:
    def search(query: str) -> str:
        """Search the web for current information relevant to the query."""
        return perplexity_search(query, api_key=api_key, timeout=timeout)

    return StructuredTool.from_function(
        func=search,
        name="search",
        description="Search the web for current, factual information. "
                    "Input is a natural-language search query.",
        handle_tool_error=True,
    )
