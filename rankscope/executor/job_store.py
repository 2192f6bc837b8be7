"""Job persistence: state, phase sub-state, logs and keyword results.

Handles:
- Job creation with zeroed phase sub-state
- Status transitions (monotonic; backward moves are rejected)
- Phase progress updates and the weighted overall progress
- Append-only job logs (a failed log write never fails the caller)
- Idempotent keyword result writes
- Cancellation flags (in-memory, per process)
- Startup recovery and stale-job detection
- Dashboard aggregates across jobs

Two backends share the invariants implemented in JobStore:
SqlJobStore (SQLite or Postgres through db.Database) and MemoryJobStore.
"""

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from rankscope.executor.dashboard import compute_dashboard_stats
from rankscope.executor.db import Database, json_dumps, json_loads
from rankscope.executor.errors import (
    InvalidTransitionError,
    NotFoundError,
    PersistenceError,
)
from rankscope.executor.schemas import (
    STATUS_RANK,
    TERMINAL_STATUSES,
    AnalysisJob,
    AnalysisOptions,
    AnalysisSummary,
    DashboardStats,
    FinalStatistics,
    JobStatus,
    KeywordWorkItem,
    LogEntry,
    LogLevel,
    PhaseKey,
    PhaseState,
    compute_overall_progress,
    initial_phases,
    utcnow_iso,
)
from rankscope.executor.urls import extract_domain, normalize_url

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.SUCCESS: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}

# In-memory cancellation flags (per job_id), checked between batches
_cancellation_flags: dict[str, bool] = {}
_flags_lock = threading.Lock()


class JobStore(ABC):
    """Durable record of job state, keyed by job id.

    Subclasses provide raw storage primitives; the lifecycle rules
    (monotonic status, non-decreasing progress, weighted overall progress,
    completed_at/final statistics visibility) live here so every backend
    enforces them the same way.
    """

    backend_name = "abstract"

    def __init__(self):
        self._lock = threading.RLock()

    def init(self) -> None:
        """Prepare the backing storage (create tables, etc.)."""

    # --- storage primitives ---

    @abstractmethod
    def _insert(self, job: AnalysisJob) -> None: ...

    @abstractmethod
    def _load(self, job_id: str) -> Optional[AnalysisJob]: ...

    @abstractmethod
    def _save(self, job: AnalysisJob) -> None: ...

    @abstractmethod
    def _insert_log(self, job_id: str, entry: LogEntry) -> None: ...

    @abstractmethod
    def _read_logs(self, job_id: str, limit: Optional[int]) -> list[LogEntry]: ...

    @abstractmethod
    def _replace_results(self, job_id: str, items: list[KeywordWorkItem]) -> None: ...

    @abstractmethod
    def _read_results(self, job_id: str) -> list[KeywordWorkItem]: ...

    @abstractmethod
    def _list(self, status: Optional[str], limit: int) -> list[AnalysisJob]: ...

    @abstractmethod
    def _remove(self, job_id: str) -> None: ...

    # --- operations ---

    def create(
        self,
        target_url: str,
        options: Optional[AnalysisOptions] = None,
        *,
        weights: Optional[dict[str, float]] = None,
    ) -> str:
        """Create a pending job with zeroed phases. Returns the job id."""
        url = normalize_url(target_url)
        job = AnalysisJob(
            target_url=url,
            domain=extract_domain(url),
            options=options or AnalysisOptions(),
            phases=initial_phases(weights or {}),
        )
        with self._lock:
            self._insert(job)
        logger.info(f"Created job {job.job_id} for {job.target_url} ({self.backend_name})")
        return job.job_id

    def get(self, job_id: str) -> AnalysisJob:
        """Get a job by id; raises NotFoundError."""
        job = self._load(job_id)
        if job is None:
            raise NotFoundError(job_id)
        if job.status != JobStatus.COMPLETED:
            job.final_statistics = None
        return job

    def update_status(
        self,
        job_id: str,
        status: JobStatus | str,
        error: Optional[str] = None,
    ) -> AnalysisJob:
        """Transition job status and set lifecycle timestamps."""
        status = JobStatus(status)
        with self._lock:
            job = self._require(job_id)
            current = job.status
            if current == status:
                return job
            if current in TERMINAL_STATUSES or STATUS_RANK[status] <= STATUS_RANK[current]:
                raise InvalidTransitionError(job_id, current.value, status.value)

            now = utcnow_iso()
            job.status = status
            job.updated_at = now
            if status == JobStatus.RUNNING:
                job.started_at = now
            if status in TERMINAL_STATUSES:
                job.completed_at = now
                job.error = error
            if status == JobStatus.COMPLETED:
                job.overall_progress = 100
            self._save(job)

        logger.info(f"Job {job_id} status → {status.value}" + (f" (error: {error})" if error else ""))
        return job

    def update_phase(
        self,
        job_id: str,
        phase_key: PhaseKey | str,
        progress: float,
        detail: Optional[str] = None,
        *,
        completed_sub_tasks: Optional[list[str]] = None,
    ) -> None:
        """Set a phase's progress/detail and recompute overall progress.

        Phase progress never decreases: the stored value is the maximum of
        what was there and what is written. Writes to finished jobs are
        ignored.
        """
        key = PhaseKey(phase_key).value
        with self._lock:
            job = self._require(job_id)
            if job.is_terminal:
                logger.debug(f"Ignoring phase update for finished job {job_id}: {key}={progress}")
                return

            phase: PhaseState = job.phases[key]
            now = utcnow_iso()
            value = max(phase.progress, max(0, min(100, int(progress))))

            if value > 0 and phase.started_at is None:
                phase.started_at = now
            phase.progress = value
            if detail is not None:
                phase.detail = detail
            if completed_sub_tasks:
                for task in phase.sub_tasks:
                    if task.name in completed_sub_tasks:
                        task.completed = True
            if value >= 100 and not phase.completed:
                phase.completed = True
                phase.ended_at = now
                for task in phase.sub_tasks:
                    task.completed = True

            job.current_phase = key
            job.overall_progress = max(job.overall_progress, compute_overall_progress(job.phases))
            job.updated_at = now
            self._save(job)

    def append_log(
        self,
        job_id: str,
        level: LogLevel | str,
        message: str,
        phase: Optional[str] = None,
        detail: Optional[dict[str, Any]] = None,
    ) -> None:
        """Append one entry to the job log.

        Never raises: a failed write goes to the process log instead, so
        logging can never abort an analysis.
        """
        try:
            level = LogLevel(level)
            logger.log(_LOG_LEVELS[level], f"[{job_id}] [{phase or '-'}] {message}")
            entry = LogEntry(level=level, message=message, phase=phase, detail=detail)
            with self._lock:
                self._insert_log(job_id, entry)
        except Exception as e:
            logger.error(f"Failed to write log entry for job {job_id} ({message!r}): {e}")

    def get_logs(self, job_id: str, limit: Optional[int] = None) -> list[LogEntry]:
        """Job log in write order; with `limit`, only the most recent entries."""
        self._require(job_id)
        return self._read_logs(job_id, limit)

    def write_results(
        self,
        job_id: str,
        items: list[KeywordWorkItem],
        final_statistics: FinalStatistics,
        summary: Optional[AnalysisSummary] = None,
    ) -> None:
        """Persist the keyword set and final statistics.

        Replaces any rows previously written for the job, so repeating the
        call with the same input leaves the same state.
        """
        with self._lock:
            job = self._require(job_id)
            self._replace_results(job_id, items)
            job.final_statistics = final_statistics
            if summary is not None:
                job.summary = summary
            job.updated_at = utcnow_iso()
            self._save(job)
        logger.info(f"Saved {len(items)} keyword results for job {job_id}")

    def get_results(self, job_id: str) -> list[KeywordWorkItem]:
        self._require(job_id)
        return self._read_results(job_id)

    def list_jobs(self, status: Optional[str] = None, limit: int = 20) -> list[AnalysisJob]:
        """Newest first, optionally filtered by status."""
        jobs = self._list(JobStatus(status).value if status else None, limit)
        for job in jobs:
            if job.status != JobStatus.COMPLETED:
                job.final_statistics = None
        return jobs

    def dashboard_stats(self, *, recent_limit: int = 10, max_jobs: int = 10_000) -> DashboardStats:
        """Aggregates across stored jobs; keyword figures come from completed jobs."""
        jobs = self.list_jobs(limit=max_jobs)
        results = {
            job.job_id: self._read_results(job.job_id)
            for job in jobs
            if job.status == JobStatus.COMPLETED
        }
        stats = compute_dashboard_stats(jobs, results, recent_limit=recent_limit)
        logger.debug(
            f"Dashboard stats over {stats.total_analyses} job(s), {stats.total_keywords} keyword(s)"
        )
        return stats

    def delete(self, job_id: str) -> bool:
        """Delete a finished job with its logs and results.

        Returns False for jobs that are still pending or running.
        """
        with self._lock:
            job = self._require(job_id)
            if not job.is_terminal:
                logger.warning(f"Cannot delete job {job_id} in status {job.status.value}")
                return False
            self._remove(job_id)
        clear_cancellation(job_id)
        logger.info(f"Deleted job {job_id}")
        return True

    def recover_orphaned_jobs(self) -> int:
        """Fail jobs left pending/running by a previous process.

        Execution threads do not survive a restart, so nothing will ever
        finish those jobs. Returns the number of jobs marked failed.
        """
        orphans = [
            job for status in (JobStatus.PENDING, JobStatus.RUNNING)
            for job in self._list(status.value, limit=10_000)
        ]
        failed = 0
        for job in orphans:
            message = (
                "Process terminated before the analysis finished. "
                "Please submit the URL again."
            )
            self.append_log(job.job_id, LogLevel.ERROR, message, phase=job.current_phase)
            try:
                self.update_status(job.job_id, JobStatus.FAILED, error=message)
                failed += 1
            except InvalidTransitionError:
                continue
            logger.warning(f"Recovered orphaned job {job.job_id} (was {job.status.value}) → failed")
        if failed:
            logger.info(f"Startup recovery: {failed} job(s) failed")
        return failed

    def check_stale_job(self, job: AnalysisJob, max_runtime: float) -> Optional[AnalysisJob]:
        """Fail a job that has been unfinished for longer than max_runtime seconds.

        Called from the polling path. Returns the updated job when it was
        stale, otherwise None.
        """
        if job.is_terminal:
            return None
        started = job.started_at or job.created_at
        try:
            started_dt = datetime.fromisoformat(started)
        except (TypeError, ValueError):
            return None
        if started_dt.tzinfo is None:
            started_dt = started_dt.replace(tzinfo=timezone.utc)

        elapsed = (datetime.now(timezone.utc) - started_dt).total_seconds()
        if elapsed < max_runtime:
            return None

        message = (
            f"Job exceeded maximum runtime ({elapsed:.0f}s > {max_runtime:.0f}s). "
            f"The execution thread likely crashed. Please retry the analysis."
        )
        self.append_log(job.job_id, LogLevel.ERROR, message, phase=job.current_phase)
        try:
            self.update_status(job.job_id, JobStatus.FAILED, error=message)
        except InvalidTransitionError:
            pass  # finished concurrently
        clear_cancellation(job.job_id)
        logger.warning(f"Marked stale job {job.job_id} as failed ({elapsed:.0f}s elapsed)")
        return self.get(job.job_id)

    def _require(self, job_id: str) -> AnalysisJob:
        job = self._load(job_id)
        if job is None:
            raise NotFoundError(job_id)
        return job


class MemoryJobStore(JobStore):
    """Process-local store. Jobs are kept as serialized dicts so callers
    never share mutable objects with the store."""

    backend_name = "memory"

    def __init__(self):
        super().__init__()
        self._jobs: dict[str, dict] = {}
        self._logs: dict[str, list[dict]] = {}
        self._results: dict[str, list[dict]] = {}
        self._sequence = 0

    def _insert(self, job: AnalysisJob) -> None:
        self._jobs[job.job_id] = job.model_dump(mode="json")
        self._logs[job.job_id] = []
        self._results[job.job_id] = []

    def _load(self, job_id: str) -> Optional[AnalysisJob]:
        with self._lock:
            data = self._jobs.get(job_id)
            return AnalysisJob.model_validate(data) if data is not None else None

    def _save(self, job: AnalysisJob) -> None:
        self._jobs[job.job_id] = job.model_dump(mode="json")

    def _insert_log(self, job_id: str, entry: LogEntry) -> None:
        if job_id not in self._logs:
            raise NotFoundError(job_id)
        self._sequence += 1
        self._logs[job_id].append(
            entry.model_copy(update={"sequence": self._sequence}).model_dump(mode="json")
        )

    def _read_logs(self, job_id: str, limit: Optional[int]) -> list[LogEntry]:
        with self._lock:
            rows = list(self._logs.get(job_id, []))
        if limit is not None:
            rows = rows[-limit:] if limit > 0 else []
        return [LogEntry.model_validate(r) for r in rows]

    def _replace_results(self, job_id: str, items: list[KeywordWorkItem]) -> None:
        self._results[job_id] = [item.model_dump(mode="json") for item in items]

    def _read_results(self, job_id: str) -> list[KeywordWorkItem]:
        with self._lock:
            rows = list(self._results.get(job_id, []))
        return [KeywordWorkItem.model_validate(r) for r in rows]

    def _list(self, status: Optional[str], limit: int) -> list[AnalysisJob]:
        with self._lock:
            rows = [
                d for d in self._jobs.values()
                if status is None or d["status"] == status
            ]
        rows.sort(key=lambda d: d["created_at"], reverse=True)
        return [AnalysisJob.model_validate(d) for d in rows[:limit]]

    def _remove(self, job_id: str) -> None:
        self._jobs.pop(job_id, None)
        self._logs.pop(job_id, None)
        self._results.pop(job_id, None)


class SqlJobStore(JobStore):
    """Store backed by SQLite or PostgreSQL through db.Database."""

    def __init__(self, database: Database):
        super().__init__()
        self.db = database
        self.backend_name = database.backend_name

    @contextmanager
    def _guard(self, action: str) -> Iterator[None]:
        try:
            yield
        except (NotFoundError, PersistenceError):
            raise
        except Exception as e:
            logger.error(f"Job store failure while {action}: {e}", exc_info=True)
            raise PersistenceError(f"Job store failure while {action}: {e}") from e

    def init(self) -> None:
        with self._guard("initializing the database"):
            self.db.init()

    def _insert(self, job: AnalysisJob) -> None:
        with self._guard(f"creating job {job.job_id}"):
            self.db.execute(
                """INSERT INTO analysis_jobs
                   (job_id, target_url, domain, status, overall_progress, current_phase,
                    phases, options, error, final_statistics, summary,
                    created_at, updated_at, started_at, completed_at)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                self._row_params(job, leading=True),
            )

    def _save(self, job: AnalysisJob) -> None:
        with self._guard(f"updating job {job.job_id}"):
            self.db.execute(
                """UPDATE analysis_jobs
                   SET status = %s, overall_progress = %s, current_phase = %s,
                       phases = %s, options = %s, error = %s,
                       final_statistics = %s, summary = %s,
                       created_at = %s, updated_at = %s, started_at = %s, completed_at = %s
                   WHERE job_id = %s""",
                self._row_params(job, leading=False) + (job.job_id,),
            )

    @staticmethod
    def _row_params(job: AnalysisJob, leading: bool) -> tuple:
        params = (
            job.status.value,
            job.overall_progress,
            job.current_phase,
            json_dumps({k: p.model_dump(mode="json") for k, p in job.phases.items()}),
            json_dumps(job.options.model_dump(mode="json")),
            job.error,
            json_dumps(job.final_statistics.model_dump(mode="json")) if job.final_statistics else None,
            json_dumps(job.summary.model_dump(mode="json")) if job.summary else None,
            job.created_at,
            job.updated_at,
            job.started_at,
            job.completed_at,
        )
        if leading:
            return (job.job_id, job.target_url, job.domain) + params
        return params

    def _load(self, job_id: str) -> Optional[AnalysisJob]:
        with self._guard(f"loading job {job_id}"):
            row = self.db.execute(
                "SELECT * FROM analysis_jobs WHERE job_id = %s",
                (job_id,),
                fetch="one",
            )
        return self._row_to_job(row) if row else None

    @staticmethod
    def _normalize_timestamps(row: dict) -> dict:
        """Convert datetime objects to ISO strings (Postgres returns datetimes)."""
        for key in ("created_at", "updated_at", "started_at", "completed_at", "timestamp"):
            val = row.get(key)
            if isinstance(val, datetime):
                row[key] = val.isoformat()
        return row

    def _row_to_job(self, row: dict) -> AnalysisJob:
        row = self._normalize_timestamps(dict(row))
        for key in ("phases", "options"):
            row[key] = json_loads(row.get(key))
        for key in ("final_statistics", "summary"):
            row[key] = json_loads(row[key]) if row.get(key) else None
        return AnalysisJob.model_validate(row)

    def _insert_log(self, job_id: str, entry: LogEntry) -> None:
        with self._guard(f"appending a log entry to job {job_id}"):
            self.db.execute(
                """INSERT INTO job_logs (job_id, timestamp, level, message, phase, detail)
                   VALUES (%s, %s, %s, %s, %s, %s)""",
                (
                    job_id,
                    entry.timestamp,
                    entry.level.value,
                    entry.message,
                    entry.phase,
                    json_dumps(entry.detail) if entry.detail is not None else None,
                ),
            )

    def _read_logs(self, job_id: str, limit: Optional[int]) -> list[LogEntry]:
        with self._guard(f"reading logs of job {job_id}"):
            if limit is None:
                rows = self.db.execute(
                    "SELECT * FROM job_logs WHERE job_id = %s ORDER BY id",
                    (job_id,),
                    fetch="all",
                )
            else:
                rows = self.db.execute(
                    "SELECT * FROM job_logs WHERE job_id = %s ORDER BY id DESC LIMIT %s",
                    (job_id, max(0, limit)),
                    fetch="all",
                )
                rows.reverse()

        entries = []
        for row in rows:
            row = self._normalize_timestamps(dict(row))
            entries.append(LogEntry(
                sequence=row["id"],
                timestamp=row["timestamp"],
                level=row["level"],
                message=row["message"],
                phase=row.get("phase"),
                detail=json_loads(row["detail"]) if row.get("detail") else None,
            ))
        return entries

    def _replace_results(self, job_id: str, items: list[KeywordWorkItem]) -> None:
        statements = [("DELETE FROM keyword_results WHERE job_id = %s", (job_id,))]
        for position, item in enumerate(items):
            statements.append((
                """INSERT INTO keyword_results (job_id, position, keyword, data)
                   VALUES (%s, %s, %s, %s)""",
                (job_id, position, item.keyword, json_dumps(item.model_dump(mode="json"))),
            ))
        with self._guard(f"writing results of job {job_id}"):
            self.db.execute_batch(statements)

    def _read_results(self, job_id: str) -> list[KeywordWorkItem]:
        with self._guard(f"reading results of job {job_id}"):
            rows = self.db.execute(
                "SELECT data FROM keyword_results WHERE job_id = %s ORDER BY position",
                (job_id,),
                fetch="all",
            )
        return [KeywordWorkItem.model_validate(json_loads(r["data"])) for r in rows]

    def _list(self, status: Optional[str], limit: int) -> list[AnalysisJob]:
        with self._guard("listing jobs"):
            if status:
                rows = self.db.execute(
                    """SELECT * FROM analysis_jobs WHERE status = %s
                       ORDER BY created_at DESC LIMIT %s""",
                    (status, limit),
                    fetch="all",
                )
            else:
                rows = self.db.execute(
                    "SELECT * FROM analysis_jobs ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                    fetch="all",
                )
        return [self._row_to_job(r) for r in rows]

    def _remove(self, job_id: str) -> None:
        with self._guard(f"deleting job {job_id}"):
            self.db.execute_batch([
                ("DELETE FROM job_logs WHERE job_id = %s", (job_id,)),
                ("DELETE FROM keyword_results WHERE job_id = %s", (job_id,)),
                ("DELETE FROM analysis_jobs WHERE job_id = %s", (job_id,)),
            ])


def create_job_store(url: str = "", sqlite_path=None) -> JobStore:
    """Pick a backend from a database URL (memory://, postgres://..., else SQLite)."""
    if url.startswith("memory"):
        store: JobStore = MemoryJobStore()
    else:
        store = SqlJobStore(Database(url, sqlite_path))
    store.init()
    return store


# --- Cancellation ---

def request_cancellation(job_id: str) -> None:
    """Flag a job for cancellation; the pipeline stops at its next checkpoint."""
    with _flags_lock:
        _cancellation_flags[job_id] = True
    logger.info(f"Cancellation requested for job {job_id}")


def is_cancelled(job_id: str) -> bool:
    with _flags_lock:
        return _cancellation_flags.get(job_id, False)


def clear_cancellation(job_id: str) -> None:
    with _flags_lock:
        _cancellation_flags.pop(job_id, None)
