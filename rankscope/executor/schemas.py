"""Executor-side schemas for job lifecycle, phases, logs and keyword results.

Every model here is either persisted by a JobStore or returned to callers,
so all of them are pydantic models with JSON-safe field types. Timestamps
are ISO-8601 strings (UTC).
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class JobStatus(str, Enum):
    """Job lifecycle states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})

# Rank of each status in the lifecycle; a transition must strictly increase it.
STATUS_RANK = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.COMPLETED: 2,
    JobStatus.FAILED: 2,
    JobStatus.CANCELLED: 2,
}


class PhaseKey(str, Enum):
    """The five pipeline phases, in execution order."""
    SCRAPING = "scraping"
    AI_ANALYSIS = "ai_analysis"
    SEARCH_VOLUME = "search_volume"
    RANKING_CHECK = "ranking_check"
    DATA_SAVE = "data_save"


PHASE_ORDER: list[PhaseKey] = list(PhaseKey)


class LogLevel(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    SUCCESS = "success"


class KeywordCategory(str, Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    LONG_TAIL = "long-tail"


class SearchIntent(str, Enum):
    INFORMATIONAL = "informational"
    NAVIGATIONAL = "navigational"
    TRANSACTIONAL = "transactional"
    COMMERCIAL = "commercial"


class CompetitionLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Seasonality(str, Enum):
    STABLE = "stable"
    SEASONAL = "seasonal"
    TRENDING = "trending"


class RankingStatus(str, Enum):
    UNCHECKED = "unchecked"
    RANKED = "ranked"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"
    SKIPPED = "skipped"


class SearchEngine(str, Enum):
    GOOGLE = "google"
    NAVER = "naver"


class AnalysisOptions(BaseModel):
    """Caller-supplied options for one analysis run."""

    max_pages: int = Field(default=3, ge=1, le=10, description="Result pages examined per rank lookup")
    include_ads: bool = True
    deep_analysis: bool = Field(
        default=True,
        description="Rank-check every keyword; when false only the top ones are checked",
    )
    search_engine: SearchEngine = SearchEngine.NAVER


# --- Phases ---


class SubTask(BaseModel):
    name: str
    completed: bool = False


class PhaseState(BaseModel):
    """Progress sub-state of a single phase."""

    key: PhaseKey
    name: str
    description: str = ""
    weight: float = Field(default=20.0, description="Share of overall progress (percent)")
    progress: int = Field(default=0, ge=0, le=100)
    completed: bool = False
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    detail: str = ""
    sub_tasks: list[SubTask] = Field(default_factory=list)


PHASE_DEFINITIONS: dict[PhaseKey, dict[str, Any]] = {
    PhaseKey.SCRAPING: {
        "name": "Website Analysis",
        "description": "Analyzing website content and structure",
        "sub_tasks": [
            "Load website content",
            "Extract headings and text",
            "Analyze SEO elements",
            "Extract contact information",
        ],
    },
    PhaseKey.AI_ANALYSIS: {
        "name": "Keyword Extraction",
        "description": "AI-powered keyword analysis",
        "sub_tasks": [
            "Prepare content for AI",
            "Generate keyword recommendations",
            "Categorize keywords",
            "Analyze search intent",
        ],
    },
    PhaseKey.SEARCH_VOLUME: {
        "name": "Search Volume Research",
        "description": "Analyzing search volumes and market data",
        "sub_tasks": [
            "Research search volumes",
            "Analyze competition levels",
            "Estimate CPC values",
            "Identify opportunities",
        ],
    },
    PhaseKey.RANKING_CHECK: {
        "name": "Ranking Verification",
        "description": "Checking current rankings and competitors",
        "sub_tasks": [
            "Check current rankings",
            "Analyze competitor presence",
            "Identify ranking opportunities",
            "Generate competitive insights",
        ],
    },
    PhaseKey.DATA_SAVE: {
        "name": "Data Storage",
        "description": "Saving results and computing statistics",
        "sub_tasks": [
            "Save keyword data",
            "Calculate statistics",
            "Update analysis status",
        ],
    },
}


def initial_phases(weights: dict[str, float]) -> dict[str, PhaseState]:
    """Build the zeroed phase sub-state for a new job, in pipeline order."""
    phases = {}
    for key in PHASE_ORDER:
        definition = PHASE_DEFINITIONS[key]
        phases[key.value] = PhaseState(
            key=key,
            name=definition["name"],
            description=definition["description"],
            weight=float(weights.get(key.value, 100.0 / len(PHASE_ORDER))),
            sub_tasks=[SubTask(name=n) for n in definition["sub_tasks"]],
        )
    return phases


def compute_overall_progress(phases: dict[str, PhaseState]) -> int:
    """Weighted sum of phase progress, clamped to [0, 100]."""
    total = sum(p.progress * p.weight / 100.0 for p in phases.values())
    return max(0, min(100, int(round(total))))


# --- Logs ---


class LogEntry(BaseModel):
    """One immutable entry of a job's user-visible log."""

    model_config = ConfigDict(frozen=True)

    sequence: int = 0
    timestamp: str = Field(default_factory=utcnow_iso)
    level: LogLevel
    message: str
    phase: Optional[str] = None
    detail: Optional[dict[str, Any]] = None


# --- Keywords & results ---


class KeywordWorkItem(BaseModel):
    """One keyword plus every metric accumulated about it across phases."""

    keyword: str
    relevance: int = Field(default=50, ge=0, le=100)
    category: KeywordCategory = KeywordCategory.SECONDARY
    search_intent: SearchIntent = SearchIntent.INFORMATIONAL
    estimated_search_volume: int = Field(default=0, ge=0)
    competition_level: CompetitionLevel = CompetitionLevel.MEDIUM
    estimated_cpc: int = Field(default=0, ge=0)
    seasonality: Seasonality = Seasonality.STABLE
    related_keywords: list[str] = Field(default_factory=list)

    # Filled in by the ranking check
    current_ranking: Optional[int] = None
    ranking_status: RankingStatus = RankingStatus.UNCHECKED
    ranking_url: Optional[str] = None
    ranking_snippet: Optional[str] = None
    is_featured: bool = False


class FinalStatistics(BaseModel):
    """Aggregates computed once from the full keyword set."""

    total_keywords: int = 0
    primary_keywords: int = 0
    secondary_keywords: int = 0
    long_tail_keywords: int = 0
    opportunity_keywords: int = 0
    ranked_keywords: int = 0
    avg_search_volume: int = 0
    avg_competition: float = Field(default=0.0, description="Fraction of keywords with high competition")
    avg_cpc: int = 0


class Competitor(BaseModel):
    name: str
    place_id: Optional[str] = None
    address: Optional[str] = None
    rating: Optional[float] = None
    review_count: int = 0
    website: Optional[str] = None
    business_status: Optional[str] = None
    types: list[str] = Field(default_factory=list)


class CompetitorAnalysis(BaseModel):
    """Competitor discovery outcome; `available=False` is an explicit absence."""

    available: bool = False
    reason: Optional[str] = None
    query: Optional[str] = None
    competitors: list[Competitor] = Field(default_factory=list)
    average_rating: Optional[float] = None
    average_review_count: Optional[float] = None
    common_types: list[str] = Field(default_factory=list)

    @classmethod
    def unavailable(cls, reason: str) -> "CompetitorAnalysis":
        return cls(available=False, reason=reason)


class AnalysisSummary(BaseModel):
    """Job-level findings stored alongside the keyword rows."""

    content_summary: str = ""
    market_summary: str = ""
    market_trends: list[str] = Field(default_factory=list)
    opportunities: list[str] = Field(default_factory=list)
    used_fallback: bool = False
    competitor_analysis: CompetitorAnalysis = Field(
        default_factory=lambda: CompetitorAnalysis.unavailable("Not analyzed")
    )


# --- Jobs ---


def new_job_id() -> str:
    return f"job-{uuid.uuid4().hex[:12]}"


class AnalysisJob(BaseModel):
    """Full job state as held by a JobStore."""

    job_id: str = Field(default_factory=new_job_id)
    target_url: str
    domain: str
    status: JobStatus = JobStatus.PENDING
    overall_progress: int = Field(default=0, ge=0, le=100)
    current_phase: Optional[str] = None
    phases: dict[str, PhaseState] = Field(default_factory=dict)
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)
    error: Optional[str] = None
    created_at: str = Field(default_factory=utcnow_iso)
    updated_at: str = Field(default_factory=utcnow_iso)
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    final_statistics: Optional[FinalStatistics] = None
    summary: Optional[AnalysisSummary] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def phase_list(self) -> list[PhaseState]:
        return [self.phases[k.value] for k in PHASE_ORDER if k.value in self.phases]


class JobView(BaseModel):
    """Denormalized, read-optimized projection of a job for polling/streaming."""

    job_id: str
    target_url: str
    domain: str
    status: JobStatus
    overall_progress: int
    current_phase: Optional[str] = None
    phases: list[PhaseState] = Field(default_factory=list)
    options: AnalysisOptions
    error: Optional[str] = None
    created_at: str
    updated_at: str
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    final_statistics: Optional[FinalStatistics] = None
    competitor_analysis: Optional[CompetitorAnalysis] = None
    recent_logs: list[LogEntry] = Field(default_factory=list)


class AnalysisResults(BaseModel):
    """Everything a caller gets once a job is finished."""

    job: JobView
    keywords: list[KeywordWorkItem] = Field(default_factory=list)
    logs: list[LogEntry] = Field(default_factory=list)


class SubmitRequest(BaseModel):
    """Request to start analysing a URL."""

    target_url: str
    options: AnalysisOptions = Field(default_factory=AnalysisOptions)


# --- Dashboard ---


class CategoryBreakdown(BaseModel):
    primary: int = 0
    secondary: int = 0
    long_tail: int = 0


class VolumeDistribution(BaseModel):
    """Keyword counts by estimated monthly volume (>5000, 1000-5000, <1000)."""

    high: int = 0
    medium: int = 0
    low: int = 0


class CompetitionDistribution(BaseModel):
    low: int = 0
    medium: int = 0
    high: int = 0


class TopKeyword(BaseModel):
    keyword: str
    domain: str
    search_volume: int
    ranking: Optional[int] = None
    category: KeywordCategory


class RecentAnalysis(BaseModel):
    job_id: str
    target_url: str
    domain: str
    status: JobStatus
    created_at: str
    keywords_found: int = 0


class PerformanceMetrics(BaseModel):
    avg_analysis_minutes: float = 0.0
    total_processing_hours: float = 0.0
    success_rate: float = Field(default=100.0, description="Completed jobs as a percentage of all jobs")


class DashboardStats(BaseModel):
    """Aggregates across every stored job; keyword figures use completed jobs only."""

    total_analyses: int = 0
    unique_domains: int = 0
    jobs_by_status: dict[str, int] = Field(default_factory=dict)
    total_keywords: int = 0
    average_ranking: float = 0.0
    top_ranking_keywords: int = Field(default=0, description="Keywords ranked in the top 10")
    keywords_by_category: CategoryBreakdown = Field(default_factory=CategoryBreakdown)
    search_volume_distribution: VolumeDistribution = Field(default_factory=VolumeDistribution)
    competition_distribution: CompetitionDistribution = Field(default_factory=CompetitionDistribution)
    top_keywords: list[TopKeyword] = Field(default_factory=list)
    recent_analyses: list[RecentAnalysis] = Field(default_factory=list)
    performance: PerformanceMetrics = Field(default_factory=PerformanceMetrics)
