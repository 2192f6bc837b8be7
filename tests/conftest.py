"""Pytest configuration and fixtures for tests."""

import threading
import time
from typing import Optional

import pytest

from rankscope.collaborators.base import (
    Collaborators,
    KeywordAnalysis,
    RankCheckResult,
    ScrapedContent,
)
from rankscope.config import PipelineConfig
from rankscope.executor.errors import RankCheckError
from rankscope.executor.job_store import MemoryJobStore
from rankscope.executor.orchestrator import Orchestrator
from rankscope.executor.schemas import TERMINAL_STATUSES, Competitor, CompetitorAnalysis

TARGET_URL = "https://www.seoul-dental.example.com"
TARGET_DOMAIN = "seoul-dental.example.com"


def make_content(url: str = TARGET_URL) -> ScrapedContent:
    """Scraped content of a small dental clinic homepage."""
    return ScrapedContent(
        url=url,
        title="Seoul Dental Clinic - Implants and Whitening",
        description="Gentle implant dentistry and teeth whitening in Gangnam",
        headings={
            "h1": ["Seoul Dental Clinic"],
            "h2": ["Dental Implants", "Teeth Whitening", "Orthodontics Consultation"],
            "h3": ["Opening Hours"],
        },
        keyword_seed=["dental clinic", "implant", "whitening", "강남 치과"],
        meta_tags={"description": "Gentle implant dentistry", "keywords": "dental clinic, implant"},
        content="Seoul Dental Clinic offers implants, whitening and orthodontics. Call 02-555-1234.",
        business_category="MedicalBusiness",
    )


def make_raw_keywords(count: int = 32) -> list[dict]:
    """Generator-shaped keyword payload."""
    keywords = []
    for i in range(count):
        if i < 3:
            category = "primary"
        elif i < 15:
            category = "secondary"
        else:
            category = "long-tail"
        keywords.append({
            "keyword": f"dental implant option {i}",
            "relevance": 95 - i,
            "category": category,
            "searchIntent": "commercial",
            "estimatedSearchVolume": 1200,
            "competitionLevel": "low",
            "estimatedCPC": 900,
            "seasonality": "stable",
            "relatedKeywords": [f"implant cost {i}", f"implant clinic {i}"],
        })
    return keywords


class FakeScraper:
    def __init__(self, content: Optional[ScrapedContent] = None, error: Optional[Exception] = None, delay: float = 0):
        self.content = content
        self.error = error
        self.delay = delay
        self.calls: list[str] = []

    def scrape(self, url: str) -> ScrapedContent:
        self.calls.append(url)
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return self.content or make_content(url)


class FakeKeywordGenerator:
    def __init__(self, keywords: Optional[list[dict]] = None, error: Optional[Exception] = None):
        self.keywords = make_raw_keywords() if keywords is None else keywords
        self.error = error
        self.calls = 0

    def analyze(self, content: ScrapedContent) -> KeywordAnalysis:
        self.calls += 1
        if self.error:
            raise self.error
        return KeywordAnalysis(
            keywords=self.keywords,
            content_summary="A dental clinic in Gangnam",
            market_summary="Competitive local market",
            market_trends=["Same-day implants"],
            opportunities=["Whitening promotions"],
        )


class FakeRankChecker:
    """Ranks keywords from a lookup table; listed keywords raise."""

    def __init__(self, positions: Optional[dict[str, int]] = None, failing: Optional[set[str]] = None, on_check=None):
        self.positions = positions or {}
        self.failing = failing or set()
        self.on_check = on_check
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def check(self, keyword: str, domain: str, *, max_pages: int = 3, include_ads: bool = False) -> RankCheckResult:
        with self._lock:
            self.calls.append(keyword)
        if self.on_check:
            self.on_check(keyword)
        if keyword in self.failing:
            raise RankCheckError(f"lookup failed for {keyword}")
        position = self.positions.get(keyword)
        if position is None:
            return RankCheckResult(position=None)
        return RankCheckResult(
            position=position,
            source_url=f"https://{domain}/implants",
            snippet="Implants at Seoul Dental",
            is_featured=position <= 3,
        )


class FakeCompetitorFinder:
    def __init__(self, result: Optional[CompetitorAnalysis] = None, error: Optional[Exception] = None, unavailable: bool = False):
        self.result = result
        self.error = error
        self.unavailable = unavailable

    def find(self, url: str, category: Optional[str] = None) -> Optional[CompetitorAnalysis]:
        if self.error:
            raise self.error
        if self.unavailable:
            return None
        return self.result or CompetitorAnalysis(
            available=True,
            query="dental clinic",
            competitors=[
                Competitor(name="Gangnam Smile Dental", rating=4.6, review_count=210),
                Competitor(name="Bright Teeth Clinic", rating=4.2, review_count=95),
            ],
            average_rating=4.4,
        )


def wait_for_terminal(store, job_id: str, timeout: float = 10.0):
    """Poll the store until the job finishes; returns the job."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        job = store.get(job_id)
        if job.status in TERMINAL_STATUSES:
            return job
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} did not finish within {timeout}s")


@pytest.fixture
def store():
    """Fresh in-memory job store."""
    return MemoryJobStore()


@pytest.fixture
def pipeline():
    """Pipeline config with no delays and short timeouts."""
    return PipelineConfig(
        rank_batch_delay=0,
        volume_batch_delay=0,
        collaborator_timeout=5,
        stream_interval=0,
    )


@pytest.fixture
def rank_checker():
    return FakeRankChecker(positions={"dental implant option 0": 4, "dental implant option 1": 2})


@pytest.fixture
def collaborators(rank_checker):
    """Fake collaborator set where everything succeeds."""
    return Collaborators(
        scraper=FakeScraper(),
        keyword_generator=FakeKeywordGenerator(),
        rank_checkers={"google": rank_checker, "naver": rank_checker},
        competitor_finder=FakeCompetitorFinder(),
    )


@pytest.fixture
def orchestrator(store, collaborators, pipeline):
    return Orchestrator(store, collaborators, pipeline, max_concurrent_jobs=4, sleep=lambda s: None)


@pytest.fixture
def run_job(store, orchestrator, pipeline):
    """Create a job and run it synchronously; returns the finished job."""
    def _run(url: str = TARGET_URL, options=None):
        job_id = store.create(url, options, weights=pipeline.phase_weights)
        orchestrator.run(job_id)
        return store.get(job_id)
    return _run
