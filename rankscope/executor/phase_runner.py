"""Phase runner: wraps one phase's work with progress and log emission.

The runner does not decide whether a failure is fatal. It returns a
PhaseOutcome carrying either the value or the error, and the orchestrator
applies the phase's policy (abort the job, or log and continue).

Work functions receive a PhaseContext through which they report
sub-progress (0-100, rescaled so that 100 is only ever written once the
work has returned successfully), complete named sub-tasks, and add log
entries tagged with the phase.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass
from typing import Any, Callable, Optional

from rankscope.executor.errors import CollaboratorTimeoutError, JobCancelledError
from rankscope.executor.job_store import JobStore
from rankscope.executor.schemas import PHASE_DEFINITIONS, PHASE_ORDER, LogLevel, PhaseKey

logger = logging.getLogger(__name__)

# Sub-progress is mapped into [_BAND_START, _BAND_END]; 100 means "done"
_BAND_START = 1
_BAND_END = 99


def call_with_timeout(
    fn: Callable[..., Any],
    timeout: float,
    *args: Any,
    label: Optional[str] = None,
    **kwargs: Any,
) -> Any:
    """Call `fn` and give up after `timeout` seconds.

    Raises CollaboratorTimeoutError on expiry. The abandoned call keeps its
    worker thread until it returns on its own; concrete collaborators also
    set transport-level timeouts so that happens promptly.
    """
    name = label or getattr(fn, "__qualname__", "collaborator call")
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="collaborator")
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError:
        if future.done():
            raise  # the call itself raised a TimeoutError
        future.cancel()
        logger.warning(f"{name} timed out after {timeout:g}s")
        raise CollaboratorTimeoutError(name, timeout)
    finally:
        executor.shutdown(wait=False)


@dataclass
class PhaseOutcome:
    """Result of one phase: a value, or the error that ended it."""

    phase: PhaseKey
    value: Any = None
    error: Optional[BaseException] = None
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None


class PhaseContext:
    """Handle given to a phase's work function."""

    def __init__(self, runner: "PhaseRunner", phase: PhaseKey):
        self._runner = runner
        self.phase = phase
        self.job_id = runner.job_id
        self.summary: Optional[str] = None

    def report(
        self,
        progress: float,
        detail: Optional[str] = None,
        *,
        sub_task: Optional[str] = None,
    ) -> None:
        """Report sub-progress in [0, 100] for the running phase."""
        fraction = max(0.0, min(100.0, float(progress))) / 100.0
        scaled = _BAND_START + (_BAND_END - _BAND_START) * fraction
        self._runner.store.update_phase(
            self.job_id,
            self.phase,
            int(scaled),
            detail,
            completed_sub_tasks=[sub_task] if sub_task else None,
        )

    def log(self, level: LogLevel, message: str, detail: Optional[dict] = None) -> None:
        self._runner.store.append_log(self.job_id, level, message, self.phase.value, detail)

    def check_cancelled(self) -> None:
        self._runner.check_cancelled()

    def is_cancelled(self) -> bool:
        return self._runner.is_cancelled()


class PhaseRunner:
    """Runs phases of one job against a JobStore."""

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        *,
        cancellation_check: Optional[Callable[[], bool]] = None,
    ):
        self.store = store
        self.job_id = job_id
        self._cancellation_check = cancellation_check

    def is_cancelled(self) -> bool:
        return bool(self._cancellation_check and self._cancellation_check())

    def check_cancelled(self) -> None:
        if self.is_cancelled():
            raise JobCancelledError(self.job_id)

    def run(self, phase: PhaseKey, work: Callable[[PhaseContext], Any]) -> PhaseOutcome:
        """Execute `work` as `phase`.

        Cancellation (InterruptedError) propagates; every other exception
        is logged against the phase and returned in the outcome.
        """
        definition = PHASE_DEFINITIONS[phase]
        number = PHASE_ORDER.index(phase) + 1
        start_time = time.time()

        self.check_cancelled()
        self.store.update_phase(self.job_id, phase, 0, f"Starting {definition['name'].lower()}...")
        self.store.append_log(
            self.job_id,
            LogLevel.INFO,
            f"Phase {number}: {definition['description']}",
            phase.value,
        )
        logger.info(f"=== Job {self.job_id} phase {number}: {phase.value} ===")

        context = PhaseContext(self, phase)
        try:
            value = work(context)
        except InterruptedError:
            raise
        except Exception as e:
            duration_ms = int((time.time() - start_time) * 1000)
            logger.error(f"Job {self.job_id} phase {phase.value} failed: {e}", exc_info=True)
            self.store.append_log(
                self.job_id,
                LogLevel.ERROR,
                f"{definition['name']} failed: {e}",
                phase.value,
                {"error_type": type(e).__name__, "duration_ms": duration_ms},
            )
            return PhaseOutcome(phase=phase, error=e, duration_ms=duration_ms)

        duration_ms = int((time.time() - start_time) * 1000)
        self.store.update_phase(self.job_id, phase, 100, f"{definition['name']} completed")
        self.store.append_log(
            self.job_id,
            LogLevel.SUCCESS,
            context.summary or f"{definition['name']} completed",
            phase.value,
            {"duration_ms": duration_ms},
        )
        logger.info(f"Job {self.job_id} phase {phase.value} completed in {duration_ms:,}ms")
        return PhaseOutcome(phase=phase, value=value, duration_ms=duration_ms)
