import json

import pytest
import respx
from httpx import Response

from jarvis.search import WebSearchClient


@pytest.mark.asyncio
async def test_search_without_key_returns_synthetic_result():
    client = WebSearchClient(None)
    try:
        result = await client.search("jarvis")
    finally:
        await client.close()
    assert result == {
        "results": [
            {
                "title": "Synthetic result for jarvis",
                "url": "https://example.com",
                "snippet": "Integrate a real search provider or custom RAG pipeline here.",
            }
        ]
    }


@pytest.mark.asyncio
async def test_tavily_results_are_normalized():
    client = WebSearchClient("test-key", max_results=3)
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(
                    200,
                    json={
                        "results": [
                            {"title": "Docs", "url": "https://docs.test", "content": "Reference"},
                            {"title": "No url"},
                        ]
                    },
                )

            respx_mock.post("https://api.tavily.com/search").mock(side_effect=handler)
            result = await client.search("jarvis docs")
    finally:
        await client.close()
    assert result == {"results": [{"title": "Docs", "url": "https://docs.test", "snippet": "Reference"}]}
    assert captured["json"]["max_results"] == 3
    assert captured["headers"]["X-API-Key"] == "test-key"
