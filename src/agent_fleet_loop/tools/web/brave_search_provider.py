import httpx

from agent_fleet_loop.tools.web.search_provider import SearchResult

_BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"


class BraveSearchProvider:
    def __init__(self, api_key: str, client: httpx.AsyncClient) -> None:
        self._api_key = api_key
        self._client = client

    @property
    def provider_name(self) -> str:
        return "Brave"

    async def search(self, query: str, count: int) -> list[SearchResult]:
        response = await self._client.get(
            _BRAVE_SEARCH_URL,
            headers={"X-Subscription-Token": self._api_key, "Accept": "application/json"},
            params={"q": query, "count": count},
        )
        response.raise_for_status()

        results = response.json().get("web", {}).get("results", [])
        return [
            SearchResult(
                title=r.get("title") or "(no title)",
                url=r.get("url", ""),
                description=r.get("description", ""),
            )
            for r in results
        ]
