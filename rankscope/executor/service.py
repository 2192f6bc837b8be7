"""Caller-facing operations: submit, poll, stream, fetch results, cancel.

This is the surface the HTTP layer (or any other front end) talks to. It
owns no state of its own beyond the store, publisher and orchestrator it
is built from.
"""

import logging
from typing import Iterator, Optional

from rankscope.config import PipelineConfig
from rankscope.executor.errors import NotReadyError
from rankscope.executor.job_store import JobStore, request_cancellation
from rankscope.executor.orchestrator import Orchestrator
from rankscope.executor.progress import ProgressPublisher, build_view
from rankscope.executor.schemas import (
    AnalysisOptions,
    AnalysisResults,
    DashboardStats,
    JobStatus,
    JobView,
    LogEntry,
    LogLevel,
)

logger = logging.getLogger(__name__)


class AnalysisService:
    """Facade over JobStore, Orchestrator and ProgressPublisher."""

    def __init__(
        self,
        store: JobStore,
        orchestrator: Orchestrator,
        pipeline: Optional[PipelineConfig] = None,
        publisher: Optional[ProgressPublisher] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.pipeline = pipeline or orchestrator.pipeline
        self.publisher = publisher or ProgressPublisher(
            store,
            log_tail=self.pipeline.log_tail,
            interval=self.pipeline.stream_interval,
            refresh=self._fail_if_stale,
        )

    def submit(self, target_url: str, options: Optional[AnalysisOptions] = None) -> str:
        """Create a job and start it in the background.

        Raises InvalidInputError for a malformed URL (no job is created).
        Returns the job id immediately.
        """
        job_id = self.store.create(target_url, options, weights=self.pipeline.phase_weights)
        self.orchestrator.start(job_id)
        return job_id

    def poll(self, job_id: str) -> JobView:
        """Current view of a job; fails jobs that exceeded the max runtime."""
        self._fail_if_stale(job_id)
        return self.publisher.snapshot(job_id)

    def stream(self, job_id: str, *, max_wait: Optional[float] = None) -> Iterator[JobView]:
        """Finite sequence of changed views, closing on a terminal state.

        Every re-poll runs the same stale check as poll(), so a stream of a
        job whose thread died still ends.
        """
        return self.publisher.subscribe(job_id, max_wait=max_wait)

    def fetch_results(self, job_id: str) -> AnalysisResults:
        """Job, keywords and full log of a finished job.

        Raises NotFoundError for unknown ids and NotReadyError while the
        job is pending or running.
        """
        job = self.store.get(job_id)
        if not job.is_terminal:
            raise NotReadyError(job_id, job.status.value)
        logs = self.store.get_logs(job_id)
        keywords = self.store.get_results(job_id) if job.status == JobStatus.COMPLETED else []
        tail = logs[-self.pipeline.log_tail:] if self.pipeline.log_tail else []
        return AnalysisResults(job=build_view(job, tail), keywords=keywords, logs=logs)

    def get_logs(self, job_id: str, limit: Optional[int] = None) -> list[LogEntry]:
        return self.store.get_logs(job_id, limit)

    def cancel(self, job_id: str) -> JobView:
        """Request cooperative cancellation; the pipeline stops at its next checkpoint."""
        job = self.store.get(job_id)
        if job.is_terminal:
            logger.info(f"Ignoring cancel for finished job {job_id} ({job.status.value})")
        else:
            request_cancellation(job_id)
            self.store.append_log(job_id, LogLevel.INFO, "Cancellation requested")
        return self.publisher.snapshot(job_id)

    def list_jobs(self, status: Optional[str] = None, limit: int = 20) -> list[JobView]:
        return [build_view(job, []) for job in self.store.list_jobs(status, limit)]

    def dashboard_stats(self, recent_limit: int = 10) -> DashboardStats:
        return self.store.dashboard_stats(recent_limit=recent_limit)

    def delete(self, job_id: str) -> bool:
        """Delete a finished job; False if it is still pending or running."""
        return self.store.delete(job_id)

    def _fail_if_stale(self, job_id: str) -> None:
        job = self.store.get(job_id)
        if not job.is_terminal:
            self.store.check_stale_job(job, self.pipeline.max_job_runtime)
