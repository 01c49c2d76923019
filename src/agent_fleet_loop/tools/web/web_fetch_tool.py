import json
from typing import Any
from urllib.parse import urlparse

import httpx
from bs4 import BeautifulSoup

from agent_fleet_loop.tools.html_utilities import page_title, soup_to_text

_DEFAULT_MAX_CHARS = 50_000
_MAX_RESPONSE_BYTES = 2_000_000


class WebFetchTool:
    """GET a URL through the tool set's shared HTTP client and render it as text."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    @property
    def name(self) -> str:
        return "web_fetch"

    @property
    def description(self) -> str:
        return (
            "Fetch a URL and return readable text: HTML is flattened with links kept, "
            "JSON is pretty-printed, anything else is returned as-is."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "url": {
                    "type": "string",
                    "description": "The HTTP or HTTPS URL to fetch",
                },
                "maxChars": {
                    "type": "number",
                    "description": f"Maximum characters of content to return (default {_DEFAULT_MAX_CHARS})",
                },
            },
            "required": ["url"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        url = str(tool_input.get("url", "")).strip()
        if urlparse(url).scheme not in ("http", "https"):
            return "Error: URL must use http or https scheme"
        try:
            max_chars = max(1, int(tool_input.get("maxChars", _DEFAULT_MAX_CHARS)))
        except (TypeError, ValueError):
            max_chars = _DEFAULT_MAX_CHARS

        try:
            response = await self._client.get(url)
        except httpx.TimeoutException:
            return f"Error: request to {url} timed out"
        except httpx.TooManyRedirects:
            return f"Error: too many redirects fetching {url}"
        except httpx.HTTPError as ex:
            return f"Error: {ex}"

        if response.status_code >= 400:
            return f"Error: HTTP {response.status_code} fetching {url}"
        if len(response.content) > _MAX_RESPONSE_BYTES:
            return f"Error: response too large ({len(response.content):,} bytes, max {_MAX_RESPONSE_BYTES:,})"

        content_type = response.headers.get("content-type", "")
        title = ""
        if "html" in content_type:
            soup = BeautifulSoup(response.text, "lxml")
            title = page_title(soup)
            content = soup_to_text(soup)
        elif "application/json" in content_type:
            try:
                content = json.dumps(response.json(), indent=2)
            except ValueError:
                content = response.text
        else:
            content = response.text

        header = [f"URL: {url}"]
        if str(response.url) != url:
            header.append(f"Final URL: {response.url}")
        header.append(f"Status: {response.status_code}")
        if title:
            header.append(f"Title: {title}")

        if len(content) > max_chars:
            header.append(f"Length: {max_chars:,} chars (truncated from {len(content):,})")
            content = content[:max_chars]
        else:
            header.append(f"Length: {len(content):,} chars")

        return "\n".join(header) + "\n\n--- Content ---\n\n" + content
