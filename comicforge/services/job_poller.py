"""
Async Job Poller - drives queued backends from submission to a terminal state.

Strategy per job:
1. Synchronous fast path (``run_sync``) bounded by ``sync_timeout``
2. On timeout only, submit with ``/run`` and poll every ``poll_interval``
   seconds until a terminal state or ``deadline``

An explicit FAILED/CANCELLED is surfaced immediately as
UnrecoverableBackendError; exceeding the deadline raises JobTimeout.
"""

import asyncio
import logging
import time
from typing import Callable, Optional

from ..core.errors import (
    JobTimeout,
    RateLimited,
    TransientBackendError,
    UnrecoverableBackendError,
)
from .backends.base import AsyncBackendAdapter, SubmitResult
from .models import AsyncJobHandle, Job, PollState
from .retry_policy import SleepFunc

logger = logging.getLogger(__name__)

# Non-terminal states in the order a job moves through them
_PROGRESS_RANK = {PollState.QUEUED: 0, PollState.RUNNING: 1}


class AsyncJobPoller:
    """
    Poll-until-complete state machine for one async backend.

    The poller owns every AsyncJobHandle it creates or receives until a
    terminal state is reached; nothing else polls that handle.
    """

    def __init__(
        self,
        poll_interval: float = 2.0,
        deadline: float = 180.0,
        sync_timeout: Optional[float] = 120.0,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the poller.

        Args:
            poll_interval: Seconds between status calls
            deadline: Overall seconds allowed for the poll loop
            sync_timeout: Seconds for the synchronous fast path (None to skip it)
            sleep: Awaitable sleep function (defaults to asyncio.sleep)
            clock: Monotonic clock (defaults to time.monotonic)
        """
        self.poll_interval = poll_interval
        self.deadline = deadline
        self.sync_timeout = sync_timeout
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic

    async def run(self, adapter: AsyncBackendAdapter, job: Job) -> str:
        """
        Generate one job on an async backend.

        Args:
            adapter: Async backend adapter
            job: Job to render

        Returns:
            Artifact source (URL, data URL or base64) from the backend

        Raises:
            JobTimeout: If polling exceeded the deadline
            UnrecoverableBackendError: If the backend reported FAILED/CANCELLED
        """
        result: Optional[SubmitResult] = None

        if self.sync_timeout is not None:
            try:
                result = await adapter.run_sync(job, self.sync_timeout)
            except JobTimeout:
                logger.warning(
                    f"Sync request for {job.id} timed out after {self.sync_timeout:.0f}s, "
                    f"falling back to async polling"
                )

        if result is None:
            result = await adapter.submit(job)

        if result.artifact_source:
            return result.artifact_source
        if result.handle is None:
            raise TransientBackendError(f"{adapter.backend.value} returned neither artifact nor job handle")

        return await self.wait_for_completion(adapter, result.handle)

    async def wait_for_completion(self, adapter: AsyncBackendAdapter, handle: AsyncJobHandle) -> str:
        """
        Poll a handle until it completes, fails, or the deadline passes.

        Transient and rate-limited errors on an individual status call do not
        end the loop; only a terminal state or the deadline does.

        Returns:
            Artifact source from the COMPLETED observation

        Raises:
            JobTimeout: Deadline elapsed before a terminal state
            UnrecoverableBackendError: Backend reported FAILED or CANCELLED
        """
        started = self._clock()
        state = PollState.QUEUED
        polls = 0

        logger.info(f"Polling {handle.backend.value} job {handle.remote_id} (deadline {self.deadline:.0f}s)")

        while True:
            observation = None
            try:
                observation = await adapter.poll(handle)
                polls += 1
            except (TransientBackendError, RateLimited, JobTimeout) as e:
                logger.warning(f"Status check for {handle.remote_id} failed: {e}, will retry")

            if observation is not None:
                state = self._advance(state, observation.state, handle)

                if state == PollState.COMPLETED:
                    logger.info(f"Job {handle.remote_id} completed after {polls} poll(s)")
                    return observation.artifact_source
                if state in (PollState.FAILED, PollState.CANCELLED):
                    raise UnrecoverableBackendError(
                        f"Job {handle.remote_id} {state.value}: {observation.error or 'no error detail'}"
                    )
                if state == PollState.TIMED_OUT:
                    raise JobTimeout(f"Job {handle.remote_id} timed out on {handle.backend.value}")

            elapsed = self._clock() - started
            if elapsed >= self.deadline:
                logger.error(f"Job {handle.remote_id} still {state.value} after {elapsed:.0f}s")
                raise JobTimeout(
                    f"Job {handle.remote_id} {PollState.TIMED_OUT.value} after {self.deadline:.0f}s "
                    f"(last state: {state.value})"
                )

            await self._sleep(min(self.poll_interval, self.deadline - elapsed))

    @staticmethod
    def _advance(current: PollState, observed: PollState, handle: AsyncJobHandle) -> PollState:
        """Apply an observation without moving backwards (RUNNING never reverts to QUEUED)."""
        if observed.is_terminal:
            return observed
        if _PROGRESS_RANK[observed] < _PROGRESS_RANK[current]:
            logger.debug(f"Ignoring {observed.value} after {current.value} for {handle.remote_id}")
            return current
        return observed
