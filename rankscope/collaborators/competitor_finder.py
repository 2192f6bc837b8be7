"""Competitor discovery through the Google Places Text Search API.

Without an API key the finder reports itself unavailable (returns None)
instead of raising, so a job without Places credentials still completes.
"""

import logging
from collections import Counter
from typing import Optional
from urllib.parse import urlparse

import httpx

from rankscope.executor.errors import CompetitorLookupError
from rankscope.executor.schemas import Competitor, CompetitorAnalysis

logger = logging.getLogger(__name__)

TEXT_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/textsearch/json"
MAX_COMPETITORS = 15

# Domain fragment → Places query, first match wins
BUSINESS_TYPES = [
    ("dental", "dental clinic"),
    ("clinic", "medical clinic"),
    ("hospital", "hospital"),
    ("beauty", "beauty salon"),
    ("salon", "beauty salon"),
    ("restaurant", "restaurant"),
    ("cafe", "cafe"),
    ("hotel", "hotel"),
    ("law", "law firm"),
    ("gym", "gym"),
    ("fitness", "fitness center"),
    ("shop", "store"),
    ("store", "store"),
    ("market", "market"),
]

# Places statuses that mean "no data" rather than failure
_EMPTY_STATUSES = {"OK", "ZERO_RESULTS"}


def infer_business_type(url: str) -> str:
    host = (urlparse(url).hostname or url).lower()
    for fragment, query in BUSINESS_TYPES:
        if fragment in host:
            return query
    return "business"


def summarize_competitors(query: str, competitors: list[Competitor]) -> CompetitorAnalysis:
    """Aggregate ratings and types over operational competitors."""
    operational = [c for c in competitors if c.business_status in (None, "OPERATIONAL")]
    rated = [c.rating for c in operational if c.rating is not None]
    type_counts = Counter(t for c in operational for t in c.types)
    return CompetitorAnalysis(
        available=True,
        query=query,
        competitors=competitors,
        average_rating=round(sum(rated) / len(rated), 2) if rated else None,
        average_review_count=(
            round(sum(c.review_count for c in operational) / len(operational), 1)
            if operational else None
        ),
        common_types=[t for t, _ in type_counts.most_common(5)],
    )


class PlacesCompetitorFinder:
    """Finds nearby businesses of the same type via Places Text Search."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 10.0,
        language: str = "ko",
        region: str = "kr",
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.timeout = timeout
        self.language = language
        self.region = region
        self.transport = transport

    def find(self, url: str, category: Optional[str] = None) -> Optional[CompetitorAnalysis]:
        if not self.api_key:
            logger.warning("Google Places API key not configured; skipping competitor discovery")
            return None

        query = category or infer_business_type(url)
        params = {
            "query": query,
            "key": self.api_key,
            "language": self.language,
            "region": self.region,
        }
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self.transport) as client:
                response = client.get(TEXT_SEARCH_URL, params=params)
        except httpx.HTTPError as e:
            raise CompetitorLookupError(f"Places request failed: {e}") from e

        if response.status_code >= 400:
            raise CompetitorLookupError(f"Places request failed: HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError as e:
            raise CompetitorLookupError("Places returned a malformed response") from e

        status = payload.get("status", "UNKNOWN")
        if status not in _EMPTY_STATUSES:
            detail = payload.get("error_message", "")
            raise CompetitorLookupError(f"Places search failed: {status} {detail}".strip())

        target_host = (urlparse(url).hostname or "").lower()
        competitors = []
        for place in payload.get("results", []):
            website = place.get("website")
            if website and target_host and target_host in website.lower():
                continue  # the target business itself
            competitors.append(Competitor(
                name=place.get("name", ""),
                place_id=place.get("place_id"),
                address=place.get("formatted_address"),
                rating=place.get("rating"),
                review_count=place.get("user_ratings_total", 0) or 0,
                website=website,
                business_status=place.get("business_status"),
                types=place.get("types", []),
            ))
            if len(competitors) >= MAX_COMPETITORS:
                break

        logger.info(f"Places search '{query}': {len(competitors)} competitors")
        return summarize_competitors(query, competitors)
