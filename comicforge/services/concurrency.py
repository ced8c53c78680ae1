"""
Concurrency strategies for batch generation.

- PacedSequentialStrategy: one job in flight, fixed delay after each
  successful job (Replicate's requests-per-minute ceiling)
- PooledParallelStrategy: waves of up to N jobs, each wave fully resolved
  before the next starts (RunPod queues internally)

Both hand every finished JobResult to a BatchProgress, which is the only
place results are collected. A job failure never stops sibling or later jobs.
"""

import asyncio
import logging
import math
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .models import Job, JobResult
from .retry_policy import SleepFunc

logger = logging.getLogger(__name__)

JobRunner = Callable[[Job], Awaitable[JobResult]]
ProgressCallback = Callable[[int, int, str], None]


class BatchProgress:
    """
    Collects results for one batch and forwards progress to the caller.

    The callback receives (completed, total, status) and is best-effort:
    an exception from it is logged and the batch carries on.
    """

    def __init__(self, total: int, callback: Optional[ProgressCallback] = None):
        self.total = total
        self._callback = callback
        self._results: Dict[str, JobResult] = {}

    @property
    def completed(self) -> int:
        return len(self._results)

    def report(self, status: str) -> None:
        if self._callback is None:
            return
        try:
            self._callback(self.completed, self.total, status)
        except Exception as e:
            logger.warning(f"Progress callback failed (ignored): {e}")

    def record(self, result: JobResult) -> None:
        """Store a job's result; a second result for the same id is dropped."""
        if result.id in self._results:
            logger.warning(f"Duplicate result for job {result.id} ignored")
            return

        self._results[result.id] = result
        if result.succeeded:
            self.report(f"Generated image {self.completed}/{self.total} ({result.id})")
        else:
            self.report(f"Failed image {self.completed}/{self.total} ({result.id}): {result.error_detail}")

    def has_result(self, job_id: str) -> bool:
        return job_id in self._results

    def ordered(self, jobs: Sequence[Job]) -> List[JobResult]:
        """Results re-associated with the input order by job id."""
        return [self._results[job.id] for job in jobs]


async def run_job_safely(runner: JobRunner, job: Job) -> JobResult:
    """Run one job, turning any unexpected exception into a failed JobResult."""
    try:
        return await runner(job)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error(f"Unexpected error generating {job.id}: {e}")
        return JobResult.failure(job.id, f"Unexpected error: {e}")


class ConcurrencyStrategy(ABC):
    """Execution discipline for a batch on one backend."""

    @abstractmethod
    async def run(self, jobs: Sequence[Job], runner: JobRunner, progress: BatchProgress) -> None:
        """Run every job once, recording each result in ``progress``."""


class PacedSequentialStrategy(ConcurrencyStrategy):
    """
    One job at a time with a fixed gap after each success.

    ``last_success_at`` is written only by this strategy's run loop. The gap
    is measured from that timestamp, so it is skipped after a failed job
    (backoff already spent the time) and after the final job.
    """

    def __init__(
        self,
        pacing_delay: float,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.pacing_delay = pacing_delay
        self.last_success_at: Optional[float] = None
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    async def run(self, jobs: Sequence[Job], runner: JobRunner, progress: BatchProgress) -> None:
        total = len(jobs)
        previous_succeeded = False

        for index, job in enumerate(jobs, start=1):
            if previous_succeeded:
                await self._wait_for_rate_window()

            progress.report(f"Generating image {index}/{total}...")
            result = await run_job_safely(runner, job)

            if result.succeeded:
                self.last_success_at = self._clock()
            previous_succeeded = result.succeeded
            progress.record(result)

    async def _wait_for_rate_window(self) -> None:
        if self.last_success_at is None:
            return
        remaining = self.pacing_delay - (self._clock() - self.last_success_at)
        if remaining > 0:
            logger.info(f"Rate limit pacing: waiting {remaining:.1f}s before next request")
            await self._sleep(remaining)


class PooledParallelStrategy(ConcurrencyStrategy):
    """
    Up to ``concurrency`` jobs in flight, run in fixed-size waves.

    A wave starts only after every job of the previous wave resolved.
    Results inside a wave are recorded in completion order.
    """

    def __init__(self, concurrency: int = 3):
        if concurrency < 1:
            raise ValueError(f"concurrency must be >= 1, got {concurrency}")
        self.concurrency = concurrency

    async def run(self, jobs: Sequence[Job], runner: JobRunner, progress: BatchProgress) -> None:
        total_waves = math.ceil(len(jobs) / self.concurrency)

        for wave_index, start in enumerate(range(0, len(jobs), self.concurrency), start=1):
            wave = jobs[start:start + self.concurrency]
            progress.report(f"Batch {wave_index}/{total_waves}: generating {len(wave)} images...")
            logger.info(f"Starting wave {wave_index}/{total_waves} with {len(wave)} job(s)")

            await asyncio.gather(*(self._run_and_record(runner, job, progress) for job in wave))

    @staticmethod
    async def _run_and_record(runner: JobRunner, job: Job, progress: BatchProgress) -> None:
        progress.record(await run_job_safely(runner, job))
