"""Cross-job aggregates for the dashboard view."""

from collections import Counter
from datetime import datetime, timezone
from typing import Optional

from rankscope.executor.schemas import (
    AnalysisJob,
    CategoryBreakdown,
    CompetitionDistribution,
    CompetitionLevel,
    DashboardStats,
    JobStatus,
    KeywordCategory,
    KeywordWorkItem,
    PerformanceMetrics,
    RecentAnalysis,
    TopKeyword,
    VolumeDistribution,
)

HIGH_VOLUME = 5000
MEDIUM_VOLUME = 1000
TOP_RANKING = 10


def _parse(timestamp: Optional[str]) -> Optional[datetime]:
    if not timestamp:
        return None
    try:
        parsed = datetime.fromisoformat(timestamp)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _duration_seconds(job: AnalysisJob) -> Optional[float]:
    start, end = _parse(job.created_at), _parse(job.completed_at)
    if start is None or end is None:
        return None
    return max(0.0, (end - start).total_seconds())


def compute_dashboard_stats(
    jobs: list[AnalysisJob],
    results: dict[str, list[KeywordWorkItem]],
    *,
    recent_limit: int = 10,
    top_limit: int = 10,
) -> DashboardStats:
    """Aggregate jobs (newest first) and the keyword rows of completed jobs.

    `results` maps job id to keyword rows; rows of jobs that are not
    completed are ignored.
    """
    domains = {job.job_id: job.domain for job in jobs}
    completed = [job for job in jobs if job.status == JobStatus.COMPLETED]
    keywords = [
        (job.job_id, item)
        for job in completed
        for item in results.get(job.job_id, [])
    ]
    items = [item for _, item in keywords]

    ranked = [k.current_ranking for k in items if k.current_ranking is not None]
    categories = Counter(k.category for k in items)
    competition = Counter(k.competition_level for k in items)

    top = sorted(
        (pair for pair in keywords if pair[1].estimated_search_volume > 0),
        key=lambda pair: pair[1].estimated_search_volume,
        reverse=True,
    )[:top_limit]

    durations = [d for d in (_duration_seconds(job) for job in completed) if d is not None]
    success_rate = len(completed) / len(jobs) * 100 if jobs else 100.0

    return DashboardStats(
        total_analyses=len(jobs),
        unique_domains=len(set(domains.values())),
        jobs_by_status=dict(Counter(job.status.value for job in jobs)),
        total_keywords=len(items),
        average_ranking=round(sum(ranked) / len(ranked), 1) if ranked else 0.0,
        top_ranking_keywords=sum(1 for r in ranked if r <= TOP_RANKING),
        keywords_by_category=CategoryBreakdown(
            primary=categories[KeywordCategory.PRIMARY],
            secondary=categories[KeywordCategory.SECONDARY],
            long_tail=categories[KeywordCategory.LONG_TAIL],
        ),
        search_volume_distribution=VolumeDistribution(
            high=sum(1 for k in items if k.estimated_search_volume > HIGH_VOLUME),
            medium=sum(1 for k in items if MEDIUM_VOLUME <= k.estimated_search_volume <= HIGH_VOLUME),
            low=sum(1 for k in items if k.estimated_search_volume < MEDIUM_VOLUME),
        ),
        competition_distribution=CompetitionDistribution(
            low=competition[CompetitionLevel.LOW],
            medium=competition[CompetitionLevel.MEDIUM],
            high=competition[CompetitionLevel.HIGH],
        ),
        top_keywords=[
            TopKeyword(
                keyword=item.keyword,
                domain=domains[job_id],
                search_volume=item.estimated_search_volume,
                ranking=item.current_ranking,
                category=item.category,
            )
            for job_id, item in top
        ],
        recent_analyses=[
            RecentAnalysis(
                job_id=job.job_id,
                target_url=job.target_url,
                domain=job.domain,
                status=job.status,
                created_at=job.created_at,
                keywords_found=job.final_statistics.total_keywords if job.final_statistics else 0,
            )
            for job in jobs[:recent_limit]
        ],
        performance=PerformanceMetrics(
            avg_analysis_minutes=round(sum(durations) / len(durations) / 60, 1) if durations else 0.0,
            total_processing_hours=round(sum(durations) / 3600, 1),
            success_rate=round(success_rate, 1),
        ),
    )
