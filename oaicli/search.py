"""Web search through SerpAPI's Bing engine."""

import json
import urllib.error
import urllib.parse
import urllib.request

SEARCH_ENDPOINT = "https://serpapi.com/search.json"
DEFAULT_RESULT_COUNT = 5
DEFAULT_MARKET = "en-US"
NO_RESULTS = "No search results found."

HEADERS = {
    "Accept": "application/json",
    "User-Agent": "oaicli",
}


def _format_results(results: list[dict]) -> str:
    entries = []
    for item in results:
        entries.append(
            f"Title: {item.get('title', '')}\n"
            f"Snippet: {item.get('snippet', '')}\n"
            f"Link: {item.get('link', '')}"
        )
    return "\n\n".join(entries)


class WebSearch:
    """Thin client for the search provider.

    `search()` never raises: failures come back as ``error: ...`` text.
    """

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = SEARCH_ENDPOINT,
        count: int = DEFAULT_RESULT_COUNT,
        market: str = DEFAULT_MARKET,
        timeout: int = 30,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.count = count
        self.market = market
        self.timeout = timeout

    def build_url(self, query: str) -> str:
        params = {
            "engine": "bing",
            "q": query,
            "count": self.count,
            "mkt": self.market,
            "api_key": self.api_key,
        }
        return f"{self.endpoint}?{urllib.parse.urlencode(params)}"

    def search(self, query: str) -> str:
        if not query or not isinstance(query, str):
            return "error: query must be a non-empty string"

        req = urllib.request.Request(self.build_url(query), headers=HEADERS)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                data = resp.read()
        except urllib.error.HTTPError as e:
            return f"error: search failed: HTTP {e.code} {e.reason}"
        except urllib.error.URLError as e:
            return f"error: search failed: {e.reason}"
        except TimeoutError:
            return f"error: search failed: request timed out after {self.timeout} seconds"
        except OSError as e:
            return f"error: search failed: {e}"

        try:
            payload = json.loads(data.decode("utf-8", errors="replace"))
        except json.JSONDecodeError as e:
            return f"error: search failed: invalid JSON from provider: {e}"

        if not isinstance(payload, dict):
            return "error: search failed: unexpected response shape"
        if payload.get("error"):
            return f"error: search failed: {payload['error']}"

        results = payload.get("organic_results")
        if not results:
            return NO_RESULTS
        return _format_results(results)
