"""Read-only projection of job state for polling and streaming callers."""

import logging
import time
from typing import Callable, Iterator, Optional

from rankscope.executor.job_store import JobStore
from rankscope.executor.schemas import TERMINAL_STATUSES, AnalysisJob, JobView

logger = logging.getLogger(__name__)


def build_view(job: AnalysisJob, logs) -> JobView:
    """Denormalize a job plus its recent logs into a JobView."""
    return JobView(
        job_id=job.job_id,
        target_url=job.target_url,
        domain=job.domain,
        status=job.status,
        overall_progress=job.overall_progress,
        current_phase=job.current_phase,
        phases=job.phase_list(),
        options=job.options,
        error=job.error,
        created_at=job.created_at,
        updated_at=job.updated_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        final_statistics=job.final_statistics,
        competitor_analysis=job.summary.competitor_analysis if job.summary else None,
        recent_logs=logs,
    )


class ProgressPublisher:
    """Snapshot (poll) and subscribe (stream) views over a JobStore.

    Streaming re-polls the store every `interval` seconds and emits a view
    only when it differs from the previously emitted one. Delivery is best
    effort: intermediate states between two polls are not replayed.
    `refresh`, when given, is called with the job id before every poll of
    a stream (the service uses it to fail stale jobs).
    """

    def __init__(
        self,
        store: JobStore,
        *,
        log_tail: int = 20,
        interval: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
        refresh: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.log_tail = log_tail
        self.interval = interval
        self.sleep = sleep
        self.refresh = refresh

    def snapshot(self, job_id: str) -> JobView:
        """Current view of a job; raises NotFoundError."""
        job = self.store.get(job_id)
        logs = self.store.get_logs(job_id, limit=self.log_tail) if self.log_tail else []
        return build_view(job, logs)

    def subscribe(self, job_id: str, *, max_wait: Optional[float] = None) -> Iterator[JobView]:
        """Yield changed views until the job reaches a terminal state.

        The first view is emitted immediately (NotFoundError is raised
        before anything is yielded). With `max_wait`, the stream also ends
        after that many seconds. Closing the generator stops polling.
        """
        view = self._poll(job_id)
        yield view
        last = view.model_dump(mode="json")
        started = time.monotonic()

        while view.status not in TERMINAL_STATUSES:
            if max_wait is not None and time.monotonic() - started >= max_wait:
                logger.info(f"Stream for job {job_id} ended after {max_wait:g}s without a terminal state")
                return
            self.sleep(self.interval)
            view = self._poll(job_id)
            current = view.model_dump(mode="json")
            if current != last:
                last = current
                yield view

        logger.debug(f"Stream for job {job_id} closed ({view.status.value})")

    def _poll(self, job_id: str) -> JobView:
        if self.refresh is not None:
            self.refresh(job_id)
        return self.snapshot(job_id)
