"""Error taxonomy for the analysis executor.

Collaborator errors (scrape, generation, rank check, competitor lookup)
are raised by the external collaborators and classified by the
orchestrator as fatal or best-effort depending on the phase they occur in.
"""

from typing import Optional


class RankscopeError(Exception):
    """Base class for every error raised by rankscope."""


class InvalidInputError(RankscopeError):
    """Bad target URL or options, rejected before a job is created."""


class PersistenceError(RankscopeError):
    """The backing job store failed or is unreachable."""


class InvalidTransitionError(PersistenceError):
    """A status update would move a job backwards or out of a terminal state."""

    def __init__(self, job_id: str, current: str, requested: str):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Job {job_id}: cannot transition from '{current}' to '{requested}'"
        )


class NotFoundError(RankscopeError):
    """Unknown job id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class NotReadyError(RankscopeError):
    """Results were requested before the job reached a terminal state."""

    def __init__(self, job_id: str, status: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is not finished yet (status: {status})")


class CollaboratorError(RankscopeError):
    """An external collaborator call failed."""


class ScrapeError(CollaboratorError):
    """Network, timeout, non-2xx status or parse failure while scraping."""


class GenerationError(CollaboratorError):
    """The AI keyword generator failed or returned unusable output."""


class RankCheckError(CollaboratorError):
    """A single rank lookup failed."""


class CompetitorLookupError(CollaboratorError):
    """Competitor discovery failed."""


class CollaboratorTimeoutError(CollaboratorError):
    """A collaborator call exceeded its timeout."""

    def __init__(self, label: str, timeout: float):
        self.label = label
        self.timeout = timeout
        super().__init__(f"{label} timed out after {timeout:g}s")


class PhaseFailedError(RankscopeError):
    """A fatal phase failed; the message is the underlying error, verbatim."""

    def __init__(self, phase: str, message: str, cause: Optional[BaseException] = None):
        self.phase = phase
        self.cause = cause
        super().__init__(message)


class JobCancelledError(InterruptedError):
    """Raised at cancellation checkpoints once a cancel was requested."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} was cancelled")
