"""Page scraper: one HTTP GET with httpx, extraction with BeautifulSoup.

The page is fetched as served (no JavaScript rendering). Extraction keeps
what keyword discovery needs: title, description, headings, meta tags,
visible text, a keyword seed list, contact details and the business type
declared in JSON-LD.
"""

import json
import logging
import re
from typing import Optional

import httpx
from bs4 import BeautifulSoup

from rankscope.collaborators.base import ScrapedContent
from rankscope.executor.errors import ScrapeError
from rankscope.executor.keyword_metrics import extract_keywords_from_text

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

# Elements that never carry page copy
STRIP_TAGS = ["script", "style", "noscript", "iframe", "svg", "template"]

MAX_CONTENT_CHARS = 50_000
MAX_SEED_KEYWORDS = 100

_PHONE_RE = re.compile(r"(?:\+82|0)(?:\d{1,2}[-.\s]?)?\d{3,4}[-.\s]?\d{4}")
_EMAIL_RE = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
_ADDRESS_RE = re.compile(r"[가-힣]+(?:시|구|군|동|로|길)\s*\d+(?:번지|번|호)?")
_BUSINESS_TYPES = {"LocalBusiness", "Organization", "Store", "Restaurant", "MedicalBusiness"}


def _unique(values, limit: int) -> list[str]:
    return list(dict.fromkeys(v.strip() for v in values if v and v.strip()))[:limit]


def _structured_data(soup: BeautifulSoup) -> list[dict]:
    blocks = []
    for tag in soup.find_all("script", attrs={"type": "application/ld+json"}):
        try:
            data = json.loads(tag.string or "")
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(data, dict):
            data = data.get("@graph", [data])
        if isinstance(data, list):
            blocks.extend(item for item in data if isinstance(item, dict))
    return blocks


def _business_category(blocks: list[dict]) -> Optional[str]:
    for block in blocks:
        kind = block.get("@type")
        if isinstance(kind, list):
            kind = next((k for k in kind if k in _BUSINESS_TYPES), None)
        if kind in _BUSINESS_TYPES:
            return kind
    return None


def parse_html(html: str, url: str) -> ScrapedContent:
    """Extract a ScrapedContent from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")

    title = soup.title.get_text(strip=True) if soup.title else ""

    meta_tags: dict[str, str] = {}
    for meta in soup.find_all("meta"):
        name = meta.get("name") or meta.get("property") or meta.get("http-equiv")
        content = meta.get("content")
        if name and content:
            meta_tags[name.lower()] = content.strip()
    description = meta_tags.get("description") or meta_tags.get("og:description", "")

    headings = {
        level: [h.get_text(" ", strip=True) for h in soup.find_all(level) if h.get_text(strip=True)]
        for level in ("h1", "h2", "h3")
    }

    structured = _structured_data(soup)
    alt_texts = [img.get("alt", "") for img in soup.find_all("img", alt=True)]

    for tag in soup(STRIP_TAGS):
        tag.decompose()
    body = soup.body or soup
    text = re.sub(r"\s+", " ", body.get_text(" ", strip=True))[:MAX_CONTENT_CHARS]

    seed: list[str] = [k for k in meta_tags.get("keywords", "").split(",")]
    seed += extract_keywords_from_text(title)
    seed += extract_keywords_from_text(description)
    for level in ("h1", "h2", "h3"):
        for heading in headings[level]:
            seed += extract_keywords_from_text(heading)
    seed += extract_keywords_from_text(text)
    for alt in alt_texts:
        seed += extract_keywords_from_text(alt)

    return ScrapedContent(
        url=url,
        title=title,
        description=description,
        headings=headings,
        keyword_seed=_unique(seed, MAX_SEED_KEYWORDS),
        meta_tags=meta_tags,
        content=text,
        business_category=_business_category(structured),
        contact_info={
            "phones": _unique(_PHONE_RE.findall(text), 10),
            "emails": _unique(_EMAIL_RE.findall(text), 10),
            "addresses": _unique(_ADDRESS_RE.findall(text), 5),
        },
    )


class HttpScraper:
    """Scraper backed by a plain HTTP fetch."""

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            timeout=httpx.Timeout(self.timeout, connect=min(10.0, self.timeout)),
            headers={
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "ko-KR,ko;q=0.9,en-US;q=0.8,en;q=0.7",
            },
            follow_redirects=True,
            transport=self.transport,
        )

    def scrape(self, url: str) -> ScrapedContent:
        logger.info(f"Scraping {url}")
        try:
            with self._client() as client:
                response = client.get(url)
        except httpx.TimeoutException as e:
            raise ScrapeError(f"Failed to scrape {url}: timed out after {self.timeout:g}s") from e
        except httpx.HTTPError as e:
            raise ScrapeError(f"Failed to scrape {url}: {e}") from e

        if response.status_code >= 400:
            raise ScrapeError(
                f"Failed to scrape {url}: HTTP {response.status_code} {response.reason_phrase}"
            )
        content_type = response.headers.get("content-type", "")
        if content_type and "html" not in content_type:
            raise ScrapeError(f"Failed to scrape {url}: unsupported content type '{content_type}'")

        try:
            content = parse_html(response.text, str(response.url))
        except Exception as e:
            raise ScrapeError(f"Failed to parse {url}: {e}") from e

        logger.info(
            f"Scraped {url}: title={content.title[:60]!r}, "
            f"{len(content.keyword_seed)} seed keywords, {content.word_count:,} words"
        )
        return content
