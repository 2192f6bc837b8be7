"""Rate-limited, bounded-concurrency fan-out for per-item work.

Items are split into consecutive batches. Each batch runs on a thread pool
sized to the batch, and the processor sleeps a fixed delay between batches
so downstream APIs never see more than `batch_size` requests in a burst.

A failing item is recorded and never stops the rest of the batch or the
batches after it. Results are collected by the driver from futures, so
workers share no mutable state.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

ProgressCallback = Callable[[int, int, Any], None]


@dataclass
class ItemFailure(Generic[T]):
    """One item whose worker raised."""
    index: int
    item: T
    error: BaseException


@dataclass
class BatchResult(Generic[T, R]):
    """Outcome of a batch run.

    `results` is aligned with the input order; failed items hold None.
    """
    results: list[Optional[R]] = field(default_factory=list)
    failures: list[ItemFailure[T]] = field(default_factory=list)
    completed: int = 0

    @property
    def succeeded(self) -> int:
        return self.completed - len(self.failures)

    @property
    def failed_indexes(self) -> set[int]:
        return {f.index for f in self.failures}


class BatchProcessor:
    """Run a worker over items in fixed-size, delayed batches.

    Args:
        batch_size: Items per batch, also the max concurrent workers
        delay: Seconds slept between batches (not after the last one)
        cancellation_check: Returns True to stop before the next batch;
            the run then raises InterruptedError
        sleep: Injected for tests
        label: Name used in log lines
    """

    def __init__(
        self,
        batch_size: int,
        delay: float = 0.0,
        *,
        cancellation_check: Optional[Callable[[], bool]] = None,
        sleep: Callable[[float], None] = time.sleep,
        label: str = "batch",
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        if delay < 0:
            raise ValueError(f"delay must be >= 0, got {delay}")
        self.batch_size = batch_size
        self.delay = delay
        self.cancellation_check = cancellation_check
        self.sleep = sleep
        self.label = label

    def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], R],
        progress_callback: Optional[ProgressCallback] = None,
    ) -> BatchResult[T, R]:
        """Process every item; returns results aligned with `items`."""
        total = len(items)
        result: BatchResult[T, R] = BatchResult(results=[None] * total)
        if total == 0:
            return result

        batch_count = (total + self.batch_size - 1) // self.batch_size
        for batch_idx, start in enumerate(range(0, total, self.batch_size)):
            if self.cancellation_check and self.cancellation_check():
                raise InterruptedError(
                    f"{self.label}: cancelled before batch {batch_idx + 1}/{batch_count}"
                )

            batch = list(enumerate(items[start:start + self.batch_size], start=start))
            logger.debug(
                f"{self.label}: batch {batch_idx + 1}/{batch_count} "
                f"({len(batch)} items)"
            )

            with ThreadPoolExecutor(
                max_workers=len(batch),
                thread_name_prefix=f"{self.label}-worker",
            ) as executor:
                futures = {executor.submit(worker, item): (index, item) for index, item in batch}

                for future in as_completed(futures):
                    index, item = futures[future]
                    try:
                        result.results[index] = future.result()
                    except Exception as e:
                        logger.warning(f"{self.label}: item {index} ({item!r}) failed: {e}")
                        result.failures.append(ItemFailure(index=index, item=item, error=e))

                    result.completed += 1
                    if progress_callback:
                        progress_callback(result.completed, total, item)

            if start + self.batch_size < total and self.delay > 0:
                self.sleep(self.delay)

        logger.info(
            f"{self.label}: {result.succeeded}/{total} items succeeded "
            f"in {batch_count} batch(es)"
        )
        return result
