from typing import Any, Dict, List, Optional

import httpx

from .schemas import SearchResult


TAVILY_SEARCH_URL = "https://api.tavily.com/search"
SYNTHETIC_URL = "https://example.com"


class WebSearchClient:
    """Web lookup for the ``search_web`` tool.

    Uses Tavily when an API key is configured and a single synthetic result
    otherwise.
    """

    def __init__(self, api_key: Optional[str], max_results: int = 5, timeout: float = 30.0):
        self.api_key = api_key
        self.max_results = max_results
        self.client = httpx.AsyncClient(timeout=timeout)

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(self, query: str) -> Dict[str, Any]:
        if not self.enabled:
            return {"results": [self._synthetic(query).model_dump()]}
        payload = {
            "query": query,
            "search_depth": "basic",
            "max_results": self.max_results,
            "api_key": self.api_key,
        }
        headers = {"Content-Type": "application/json", "X-API-Key": self.api_key or ""}
        resp = await self.client.post(TAVILY_SEARCH_URL, json=payload, headers=headers)
        resp.raise_for_status()
        data = resp.json()
        results: List[SearchResult] = []
        for item in data.get("results") or []:
            if not isinstance(item, dict) or not item.get("url"):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title") or item["url"]),
                    url=str(item["url"]),
                    snippet=str(item.get("content") or item.get("snippet") or ""),
                )
            )
        return {"results": [result.model_dump() for result in results]}

    def _synthetic(self, query: str) -> SearchResult:
        return SearchResult(
            title=f"Synthetic result for {query}",
            url=SYNTHETIC_URL,
            snippet="Integrate a real search provider or custom RAG pipeline here.",
        )

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
