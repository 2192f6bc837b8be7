"""Five-phase analysis pipeline for one job.

Phases run strictly in order:

1. scraping       (fatal)  fetch and extract the target page
2. ai_analysis    (fatal only if no keywords at all) AI keywords, content fallback
3. search_volume  (per-item best effort) enrich volume / competition / CPC
4. ranking_check  (per-item best effort) rank lookups in rate-limited batches,
                  concurrently with the optional competitor lookup
5. data_save      (fatal)  persist keywords, statistics and summary

Every job runs on its own daemon thread. A process-wide semaphore bounds
how many pipelines run at once; a job waiting for a slot stays pending.
Any exception escaping a phase is caught once, at run(), and turned into
a failed (or cancelled) status so a job is never left running.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional

from rankscope import config
from rankscope.collaborators.base import Collaborators, ScrapedContent
from rankscope.config import PipelineConfig
from rankscope.executor.batch_processor import BatchProcessor
from rankscope.executor.errors import GenerationError, PhaseFailedError, RankscopeError
from rankscope.executor.job_store import JobStore, clear_cancellation, is_cancelled
from rankscope.executor.keyword_metrics import (
    KeywordSet,
    compute_final_statistics,
    enrich_keyword,
    fallback_analysis,
    is_opportunity,
    validate_analysis,
)
from rankscope.executor.phase_runner import PhaseContext, PhaseOutcome, PhaseRunner, call_with_timeout
from rankscope.executor.schemas import (
    AnalysisJob,
    AnalysisSummary,
    CompetitorAnalysis,
    FinalStatistics,
    JobStatus,
    KeywordWorkItem,
    LogLevel,
    PhaseKey,
    RankingStatus,
)

logger = logging.getLogger(__name__)

# Thread-safe guard against running the same job twice in one process
_active_jobs: set[str] = set()
_active_jobs_lock = threading.Lock()


def _require(outcome: PhaseOutcome):
    """Value of a phase that must succeed; raises PhaseFailedError otherwise."""
    if not outcome.ok:
        raise PhaseFailedError(outcome.phase.value, str(outcome.error), outcome.error)
    return outcome.value


class Orchestrator:
    """Drives jobs through the pipeline using injected collaborators.

    Args:
        store: Job store all state goes through
        collaborators: Scraper, generator, rank checkers, competitor finder
        pipeline: Tunables (weights, batch sizes, delays, timeouts)
        max_concurrent_jobs: Cap on simultaneously running pipelines
        sleep: Used for inter-batch delays (injected for tests)
    """

    def __init__(
        self,
        store: JobStore,
        collaborators: Collaborators,
        pipeline: Optional[PipelineConfig] = None,
        *,
        max_concurrent_jobs: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.collaborators = collaborators
        self.pipeline = pipeline or PipelineConfig()
        self._slots = threading.BoundedSemaphore(max_concurrent_jobs or config.MAX_CONCURRENT_JOBS)
        self._sleep = sleep

    # --- lifecycle ---

    def start(self, job_id: str) -> threading.Thread:
        """Spawn a background thread running the job.

        Returns the thread (for tests). Callers don't need to join; the
        thread reports everything through the store.
        """
        thread = threading.Thread(
            target=self.run,
            args=(job_id,),
            name=f"analysis-{job_id}",
            daemon=True,
        )
        thread.start()
        logger.info(f"Started analysis thread for job {job_id}")
        return thread

    def run(self, job_id: str) -> None:
        """Run a job to a terminal state. Never raises."""
        with _active_jobs_lock:
            if job_id in _active_jobs:
                logger.warning(f"DUPLICATE EXECUTION BLOCKED: job {job_id} is already running")
                return
            _active_jobs.add(job_id)

        try:
            if not self._slots.acquire(blocking=False):
                logger.info(f"Job {job_id} waiting for a free pipeline slot")
                self._slots.acquire()
            try:
                self._execute(job_id)
            finally:
                self._slots.release()
        finally:
            clear_cancellation(job_id)
            with _active_jobs_lock:
                _active_jobs.discard(job_id)

    def _execute(self, job_id: str) -> None:
        runner = PhaseRunner(self.store, job_id, cancellation_check=lambda: is_cancelled(job_id))
        start_time = time.time()
        try:
            runner.check_cancelled()
            job = self.store.get(job_id)
            self.store.update_status(job_id, JobStatus.RUNNING)
            self.store.append_log(job_id, LogLevel.INFO, f"Analysis started for {job.target_url}")

            content: ScrapedContent = _require(
                runner.run(PhaseKey.SCRAPING, lambda ctx: self._scrape(ctx, job))
            )
            keyword_set: KeywordSet = _require(
                runner.run(PhaseKey.AI_ANALYSIS, lambda ctx: self._analyze(ctx, content))
            )
            enriched: list[KeywordWorkItem] = _require(
                runner.run(PhaseKey.SEARCH_VOLUME, lambda ctx: self._enrich(ctx, keyword_set.keywords))
            )
            ranked, competitors = _require(
                runner.run(
                    PhaseKey.RANKING_CHECK,
                    lambda ctx: self._check_rankings(ctx, job, content, enriched),
                )
            )
            stats: FinalStatistics = _require(
                runner.run(
                    PhaseKey.DATA_SAVE,
                    lambda ctx: self._save(ctx, keyword_set, ranked, competitors),
                )
            )

            self.store.update_status(job_id, JobStatus.COMPLETED)
            duration = time.time() - start_time
            self.store.append_log(
                job_id,
                LogLevel.SUCCESS,
                f"Analysis completed successfully. Found {stats.total_keywords} keywords.",
                detail={"duration_seconds": round(duration, 1)},
            )
            logger.info(f"Job {job_id} completed in {duration:.1f}s ({stats.total_keywords} keywords)")

        except InterruptedError:
            self.store.append_log(job_id, LogLevel.WARNING, "Analysis cancelled by request")
            self._finish(job_id, JobStatus.CANCELLED)
            logger.info(f"Job {job_id} cancelled")

        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}", exc_info=not isinstance(e, PhaseFailedError))
            self.store.append_log(
                job_id,
                LogLevel.ERROR,
                f"Analysis failed: {e}",
                getattr(e, "phase", None),
                {"error_type": type(getattr(e, "cause", None) or e).__name__},
            )
            self._finish(job_id, JobStatus.FAILED, error=str(e) or type(e).__name__)

    def _finish(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> None:
        try:
            self.store.update_status(job_id, status, error=error)
        except RankscopeError as e:
            # Already terminal (stale check, recovery) or the store is down
            logger.error(f"Could not mark job {job_id} {status.value}: {e}")

    def _call(self, fn, *args, label: str, **kwargs):
        return call_with_timeout(fn, self.pipeline.collaborator_timeout, *args, label=label, **kwargs)

    # --- Phase 1 ---

    def _scrape(self, ctx: PhaseContext, job: AnalysisJob) -> ScrapedContent:
        ctx.report(10, "Loading website content...")
        content = self._call(self.collaborators.scraper.scrape, job.target_url, label="scraper")
        ctx.report(50, "Extracting headings and text...", sub_task="Load website content")

        headings = sum(len(v) for v in content.headings.values())
        ctx.report(70, "Analyzing SEO elements...", sub_task="Extract headings and text")
        ctx.report(85, "Extracting contact information...", sub_task="Analyze SEO elements")
        ctx.report(95, sub_task="Extract contact information")

        ctx.log(
            LogLevel.INFO,
            f"Extracted '{content.title or job.domain}': {headings} headings, "
            f"{len(content.keyword_seed)} seed keywords",
            {
                "title": content.title,
                "word_count": content.word_count,
                "meta_tags": len(content.meta_tags),
                "business_category": content.business_category,
            },
        )
        ctx.summary = f"Website content extracted ({content.word_count:,} words)"
        return content

    # --- Phase 2 ---

    def _analyze(self, ctx: PhaseContext, content: ScrapedContent) -> KeywordSet:
        ctx.report(10, "Preparing content for AI...", sub_task="Prepare content for AI")
        ctx.report(20, "Generating keyword recommendations...")
        try:
            analysis = self._call(
                self.collaborators.keyword_generator.analyze,
                content,
                label="keyword generator",
            )
            keyword_set = validate_analysis(analysis, content)
        except Exception as e:
            ctx.log(
                LogLevel.WARNING,
                f"AI analysis failed, using content-based keyword extraction: {e}",
                {"error_type": type(e).__name__},
            )
            keyword_set = fallback_analysis(content)

        ctx.report(70, "Categorizing keywords...", sub_task="Generate keyword recommendations")
        if not keyword_set.keywords:
            raise GenerationError("No keywords could be derived from the website content")

        by_category: dict[str, int] = {}
        for item in keyword_set.keywords:
            by_category[item.category.value] = by_category.get(item.category.value, 0) + 1
        ctx.report(85, "Analyzing search intent...", sub_task="Categorize keywords")
        ctx.report(95, sub_task="Analyze search intent")

        ctx.log(
            LogLevel.INFO,
            f"{len(keyword_set.keywords)} keywords "
            f"({', '.join(f'{n} {c}' for c, n in sorted(by_category.items()))})",
            {"used_fallback": keyword_set.used_fallback, "categories": by_category},
        )
        source = "content fallback" if keyword_set.used_fallback else "AI"
        ctx.summary = f"Identified {len(keyword_set.keywords)} keywords ({source})"
        return keyword_set

    # --- Phase 3 ---

    def _enrich(self, ctx: PhaseContext, keywords: list[KeywordWorkItem]) -> list[KeywordWorkItem]:
        processor = BatchProcessor(
            self.pipeline.volume_batch_size,
            self.pipeline.volume_batch_delay,
            cancellation_check=ctx.is_cancelled,
            sleep=self._sleep,
            label=f"volume-{ctx.job_id}",
        )

        def on_progress(done: int, total: int, item: KeywordWorkItem) -> None:
            ctx.report(done / total * 90, f"Analyzing: {item.keyword}")

        result = processor.run(keywords, enrich_keyword, on_progress)
        for failure in result.failures:
            ctx.log(
                LogLevel.WARNING,
                f"Search volume estimate failed for '{failure.item.keyword}': {failure.error}",
            )
        enriched = [
            value if index not in result.failed_indexes else keywords[index]
            for index, value in enumerate(result.results)
        ]

        ctx.report(92, sub_task="Research search volumes")
        ctx.report(94, sub_task="Analyze competition levels")
        ctx.report(96, sub_task="Estimate CPC values")
        opportunities = sum(1 for k in enriched if is_opportunity(k, self.pipeline.opportunity_volume))
        ctx.report(98, sub_task="Identify opportunities")

        ctx.summary = (
            f"Search volume analysis completed for {len(enriched)} keywords "
            f"({opportunities} opportunities)"
        )
        return enriched

    # --- Phase 4 ---

    def _check_rankings(
        self,
        ctx: PhaseContext,
        job: AnalysisJob,
        content: ScrapedContent,
        keywords: list[KeywordWorkItem],
    ) -> tuple[list[KeywordWorkItem], CompetitorAnalysis]:
        with ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"competitors-{job.job_id}") as executor:
            competitor_future = executor.submit(self._find_competitors, ctx, job, content)
            ranked = self._rank_keywords(ctx, job, keywords)
            ctx.report(92, "Waiting for competitor analysis...", sub_task="Check current rankings")
            competitors = competitor_future.result()

        ctx.report(95, sub_task="Analyze competitor presence")
        found = sum(1 for k in ranked if k.ranking_status == RankingStatus.RANKED)
        ctx.report(97, sub_task="Identify ranking opportunities")
        ctx.report(99, sub_task="Generate competitive insights")
        ctx.summary = (
            f"Ranking check completed: {found}/{len(ranked)} keywords ranked, "
            f"competitors {'available' if competitors.available else 'unavailable'}"
        )
        return ranked, competitors

    def _rank_keywords(
        self,
        ctx: PhaseContext,
        job: AnalysisJob,
        keywords: list[KeywordWorkItem],
    ) -> list[KeywordWorkItem]:
        engine = job.options.search_engine.value
        checker = self.collaborators.rank_checkers.get(engine)
        if checker is None:
            ctx.log(LogLevel.WARNING, f"No {engine} rank checker configured; rankings are unknown")
            return [k.model_copy(update={"ranking_status": RankingStatus.UNKNOWN}) for k in keywords]

        limit = len(keywords)
        if not job.options.deep_analysis:
            limit = min(limit, self.pipeline.shallow_rank_limit)
            if limit < len(keywords):
                ctx.log(
                    LogLevel.INFO,
                    f"Checking rankings for the top {limit} of {len(keywords)} keywords "
                    f"(enable deep analysis to check all)",
                )

        def check(item: KeywordWorkItem):
            return self._call(
                checker.check,
                item.keyword,
                job.domain,
                max_pages=job.options.max_pages,
                include_ads=job.options.include_ads,
                label=f"{engine} rank check '{item.keyword}'",
            )

        def on_progress(done: int, total: int, item: KeywordWorkItem) -> None:
            ctx.report(done / total * 90, f"Checking ranking: {item.keyword}")

        processor = BatchProcessor(
            self.pipeline.rank_batch_size,
            self.pipeline.rank_batch_delay,
            cancellation_check=ctx.is_cancelled,
            sleep=self._sleep,
            label=f"ranking-{ctx.job_id}",
        )
        result = processor.run(keywords[:limit], check, on_progress)
        for failure in result.failures:
            ctx.log(
                LogLevel.WARNING,
                f"Ranking check failed for '{failure.item.keyword}': {failure.error}",
                {"error_type": type(failure.error).__name__},
            )

        ranked = []
        for index, item in enumerate(keywords):
            if index >= limit:
                update = {"ranking_status": RankingStatus.SKIPPED}
            elif index in result.failed_indexes or result.results[index] is None:
                update = {"ranking_status": RankingStatus.UNKNOWN}
            elif result.results[index].position is None:
                update = {"ranking_status": RankingStatus.NOT_FOUND}
            else:
                found = result.results[index]
                update = {
                    "ranking_status": RankingStatus.RANKED,
                    "current_ranking": found.position,
                    "ranking_url": found.source_url,
                    "ranking_snippet": found.snippet,
                    "is_featured": found.is_featured,
                }
            ranked.append(item.model_copy(update=update))
        return ranked

    def _find_competitors(self, ctx: PhaseContext, job: AnalysisJob, content: ScrapedContent) -> CompetitorAnalysis:
        """Optional lookup: every failure degrades to an explicit unavailable value."""
        try:
            found = self._call(
                self.collaborators.competitor_finder.find,
                job.target_url,
                content.business_category,
                label="competitor finder",
            )
        except Exception as e:
            ctx.log(
                LogLevel.WARNING,
                f"Competitor analysis failed: {e}",
                {"error_type": type(e).__name__},
            )
            return CompetitorAnalysis.unavailable(f"Competitor lookup failed: {e}")

        if found is None:
            ctx.log(LogLevel.WARNING, "Competitor analysis unavailable (competitor discovery not configured)")
            return CompetitorAnalysis.unavailable("Competitor discovery not configured")

        ctx.log(LogLevel.SUCCESS, f"Found {len(found.competitors)} competitors")
        return found

    # --- Phase 5 ---

    def _save(
        self,
        ctx: PhaseContext,
        keyword_set: KeywordSet,
        ranked: list[KeywordWorkItem],
        competitors: CompetitorAnalysis,
    ) -> FinalStatistics:
        ctx.report(20, "Calculating final statistics...")
        stats = compute_final_statistics(ranked, self.pipeline.opportunity_volume)
        ctx.report(40, "Saving keyword results...", sub_task="Calculate statistics")

        summary = AnalysisSummary(
            content_summary=keyword_set.content_summary,
            market_summary=keyword_set.market_summary,
            market_trends=keyword_set.market_trends,
            opportunities=keyword_set.opportunities,
            used_fallback=keyword_set.used_fallback,
            competitor_analysis=competitors,
        )
        self.store.write_results(ctx.job_id, ranked, stats, summary)
        ctx.report(80, "Updating analysis status...", sub_task="Save keyword data")

        ctx.summary = f"All results saved successfully ({len(ranked)} keywords)"
        return stats
