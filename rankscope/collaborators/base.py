"""Contracts for the external collaborators the orchestrator drives.

Each collaborator is a typing Protocol so tests and alternative backends
can be plain classes. Every call is synchronous and may block; the
orchestrator wraps each call in a timeout.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, runtime_checkable

from rankscope.executor.schemas import CompetitorAnalysis


@dataclass
class ScrapedContent:
    """What the scraper extracted from the target page."""

    url: str
    title: str = ""
    description: str = ""
    headings: dict[str, list[str]] = field(
        default_factory=lambda: {"h1": [], "h2": [], "h3": []}
    )
    keyword_seed: list[str] = field(default_factory=list)
    meta_tags: dict[str, str] = field(default_factory=dict)
    content: str = ""
    business_category: Optional[str] = None
    contact_info: dict[str, list[str]] = field(default_factory=dict)

    @property
    def word_count(self) -> int:
        return len(self.content.split())


@dataclass
class KeywordAnalysis:
    """Raw generator output. `keywords` is untrusted and gets validated."""

    keywords: list[dict[str, Any]] = field(default_factory=list)
    content_summary: str = ""
    market_summary: str = ""
    market_trends: list[str] = field(default_factory=list)
    opportunities: list[str] = field(default_factory=list)
    model_id: Optional[str] = None


@dataclass
class RankCheckResult:
    """One rank lookup. `position` None means not found in the examined pages."""

    position: Optional[int] = None
    source_url: Optional[str] = None
    snippet: Optional[str] = None
    is_featured: bool = False


@runtime_checkable
class Scraper(Protocol):
    def scrape(self, url: str) -> ScrapedContent:
        """Fetch and extract the page; raises ScrapeError."""
        ...


@runtime_checkable
class KeywordGenerator(Protocol):
    def analyze(self, content: ScrapedContent) -> KeywordAnalysis:
        """Generate keyword candidates; raises GenerationError."""
        ...


@runtime_checkable
class RankChecker(Protocol):
    def check(
        self,
        keyword: str,
        domain: str,
        *,
        max_pages: int = 3,
        include_ads: bool = False,
    ) -> RankCheckResult:
        """Find `domain` in the results for `keyword`; raises RankCheckError."""
        ...


@runtime_checkable
class CompetitorFinder(Protocol):
    def find(self, url: str, category: Optional[str] = None) -> Optional[CompetitorAnalysis]:
        """Competitors for the site, or None when discovery is unavailable."""
        ...


@dataclass
class Collaborators:
    """The collaborator set wired into one Orchestrator.

    `rank_checkers` is keyed by search engine name ("google", "naver");
    the job's options pick one.
    """

    scraper: Scraper
    keyword_generator: KeywordGenerator
    rank_checkers: dict[str, RankChecker]
    competitor_finder: CompetitorFinder
