"""Search rank checkers for Naver web search and Google Custom Search.

Both walk up to `max_pages` pages of 10 organic results and report the
first result whose host (without www.) equals the target domain.
"""

import logging
import re
import time
from typing import Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import httpx

from rankscope.collaborators.base import RankCheckResult
from rankscope.executor.errors import RankCheckError
from rankscope.executor.urls import ascii_host

logger = logging.getLogger(__name__)

RESULTS_PER_PAGE = 10
FEATURED_POSITIONS = 3

TRACKING_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "fbclid", "gclid",
})

_TAG_RE = re.compile(r"<[^>]*>")
_ENTITY_RE = re.compile(r"&[^;\s]+;")


def clean_url(url: str) -> str:
    """Drop tracking query parameters."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    query = [(k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True) if k not in TRACKING_PARAMS]
    return urlunparse(parsed._replace(query=urlencode(query)))


def result_domain(url: str) -> str:
    """Host of a result link without www., punycode for internationalized names."""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    try:
        host = ascii_host(host)
    except UnicodeError:
        host = host.lower()
    return re.sub(r"^www\.", "", host)


def clean_html(text: str) -> str:
    text = _TAG_RE.sub("", text or "")
    text = _ENTITY_RE.sub(" ", text)
    return re.sub(r"\s+", " ", text).strip()


class SearchRankChecker:
    """Shared paging and matching; subclasses fetch one page of results."""

    engine = "search"
    base_url = ""

    def __init__(
        self,
        timeout: float = 10.0,
        page_delay: float = 1.0,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.timeout = timeout
        self.page_delay = page_delay
        self.transport = transport
        self.sleep = sleep

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout),
            headers=self._headers(),
            transport=self.transport,
        )

    def _headers(self) -> dict[str, str]:
        return {}

    def _params(self, keyword: str, start: int) -> dict:
        raise NotImplementedError

    def _items(self, payload: dict) -> list[dict]:
        """Normalize one response page to dicts with url/title/snippet."""
        raise NotImplementedError

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 429:
            raise RankCheckError(f"{self.engine}: rate limit exceeded")
        if response.status_code in (401, 403):
            raise RankCheckError(
                f"{self.engine}: API quota exceeded or invalid credentials "
                f"(HTTP {response.status_code})"
            )
        if response.status_code >= 400:
            raise RankCheckError(f"{self.engine} search failed: HTTP {response.status_code}")

    def check(
        self,
        keyword: str,
        domain: str,
        *,
        max_pages: int = 3,
        include_ads: bool = False,
    ) -> RankCheckResult:
        """Position of `domain` for `keyword`, or an empty result when absent.

        `include_ads` is accepted for interface compatibility; both APIs
        return organic results only.
        """
        target = result_domain(f"https://{domain}") or domain.lower()
        position = 0
        with self._client() as client:
            for page in range(1, max_pages + 1):
                start = (page - 1) * RESULTS_PER_PAGE + 1
                try:
                    response = client.get(self.base_url, params=self._params(keyword, start))
                except httpx.TimeoutException as e:
                    raise RankCheckError(f"{self.engine}: timed out checking '{keyword}'") from e
                except httpx.HTTPError as e:
                    raise RankCheckError(f"{self.engine} search failed: {e}") from e
                self._raise_for_status(response)

                try:
                    items = self._items(response.json())
                except ValueError as e:
                    raise RankCheckError(f"{self.engine}: malformed response for '{keyword}'") from e

                for item in items:
                    position += 1
                    url = clean_url(item["url"])
                    if result_domain(url) == target:
                        logger.debug(f"{self.engine}: '{keyword}' → {domain} at #{position}")
                        return RankCheckResult(
                            position=position,
                            source_url=url,
                            snippet=item.get("snippet") or None,
                            is_featured=position <= FEATURED_POSITIONS,
                        )

                if len(items) < RESULTS_PER_PAGE:
                    break  # no more results
                if page < max_pages and self.page_delay > 0:
                    self.sleep(self.page_delay)

        return RankCheckResult(position=None)


class NaverRankChecker(SearchRankChecker):
    engine = "naver"
    base_url = "https://openapi.naver.com/v1/search/webkr.json"

    def __init__(self, client_id: str, client_secret: str, **kwargs):
        if not client_id or not client_secret:
            raise RankCheckError("Naver API credentials not configured")
        super().__init__(**kwargs)
        self.client_id = client_id
        self.client_secret = client_secret

    def _headers(self) -> dict[str, str]:
        return {
            "X-Naver-Client-Id": self.client_id,
            "X-Naver-Client-Secret": self.client_secret,
        }

    def _params(self, keyword: str, start: int) -> dict:
        return {"query": keyword, "display": RESULTS_PER_PAGE, "start": start, "sort": "sim"}

    def _items(self, payload: dict) -> list[dict]:
        return [
            {
                "url": item.get("link", ""),
                "title": clean_html(item.get("title", "")),
                "snippet": clean_html(item.get("description", "")),
            }
            for item in payload.get("items") or []
            if item.get("link")
        ]


class GoogleRankChecker(SearchRankChecker):
    engine = "google"
    base_url = "https://www.googleapis.com/customsearch/v1"

    def __init__(self, api_key: str, search_engine_id: str, **kwargs):
        if not api_key or not search_engine_id:
            raise RankCheckError("Google API credentials not configured")
        super().__init__(**kwargs)
        self.api_key = api_key
        self.search_engine_id = search_engine_id

    def _params(self, keyword: str, start: int) -> dict:
        return {
            "key": self.api_key,
            "cx": self.search_engine_id,
            "q": keyword,
            "start": start,
            "num": RESULTS_PER_PAGE,
        }

    def _items(self, payload: dict) -> list[dict]:
        return [
            {
                "url": item.get("link", ""),
                "title": item.get("title", ""),
                "snippet": item.get("snippet", ""),
            }
            for item in payload.get("items") or []
            if item.get("link")
        ]
