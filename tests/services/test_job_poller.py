"""
Tests for AsyncJobPoller.

Tests cover:
- Sync fast path success
- Fallback to submit-then-poll only when the sync call times out
- Explicit FAILED surfaces without falling back or polling further
- No polls after a terminal state
- Deadline raises JobTimeout
- Transient status-call errors do not end the loop
"""

from typing import List, Optional

import pytest

from comicforge.core.errors import (
    JobTimeout,
    TransientBackendError,
    UnrecoverableBackendError,
)
from comicforge.services.backends.base import AsyncBackendAdapter, PollResult, SubmitResult
from comicforge.services.job_poller import AsyncJobPoller
from comicforge.services.models import AsyncJobHandle, BackendId, Job, PollState


class ScriptedAdapter(AsyncBackendAdapter):
    """Async adapter that replays a scripted sequence of poll observations."""

    backend = BackendId.RUNPOD_FLUX

    def __init__(self, sync_outcome=None, observations: Optional[List] = None):
        super().__init__(client=None)
        self.sync_outcome = sync_outcome
        self.observations = list(observations or [])
        self.sync_calls = 0
        self.submit_calls = 0
        self.poll_calls = 0

    async def run_sync(self, job: Job, timeout: float) -> SubmitResult:
        self.sync_calls += 1
        if isinstance(self.sync_outcome, Exception):
            raise self.sync_outcome
        return self.sync_outcome

    async def submit(self, job: Job) -> SubmitResult:
        self.submit_calls += 1
        return SubmitResult(handle=AsyncJobHandle(remote_id="remote-1", backend=self.backend))

    async def poll(self, handle: AsyncJobHandle) -> PollResult:
        self.poll_calls += 1
        outcome = self.observations.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@pytest.fixture
def job():
    return Job(id="panel-1", prompt="a lighthouse at dusk")


def _poller(fake_clock, **kwargs):
    kwargs.setdefault("poll_interval", 2.0)
    kwargs.setdefault("deadline", 180.0)
    kwargs.setdefault("sync_timeout", 120.0)
    return AsyncJobPoller(sleep=fake_clock.sleep, clock=fake_clock, **kwargs)


class TestSyncFastPath:
    """Tests for the runsync fast path and its fallback."""

    @pytest.mark.asyncio
    async def test_sync_success_skips_polling(self, fake_clock, job):
        adapter = ScriptedAdapter(sync_outcome=SubmitResult(artifact_source="https://img/1.png"))

        source = await _poller(fake_clock).run(adapter, job)

        assert source == "https://img/1.png"
        assert adapter.submit_calls == 0
        assert adapter.poll_calls == 0

    @pytest.mark.asyncio
    async def test_sync_timeout_falls_back_to_polling(self, fake_clock, job):
        adapter = ScriptedAdapter(
            sync_outcome=JobTimeout("runsync timed out"),
            observations=[
                PollResult(state=PollState.QUEUED),
                PollResult(state=PollState.RUNNING),
                PollResult(state=PollState.COMPLETED, artifact_source="b64data"),
            ],
        )

        source = await _poller(fake_clock).run(adapter, job)

        assert source == "b64data"
        assert adapter.submit_calls == 1
        assert adapter.poll_calls == 3
        assert fake_clock.sleeps == [2.0, 2.0]

    @pytest.mark.asyncio
    async def test_explicit_failure_does_not_fall_back(self, fake_clock, job):
        adapter = ScriptedAdapter(sync_outcome=UnrecoverableBackendError("job FAILED"))

        with pytest.raises(UnrecoverableBackendError):
            await _poller(fake_clock).run(adapter, job)

        assert adapter.submit_calls == 0

    @pytest.mark.asyncio
    async def test_sync_handle_is_polled_without_resubmitting(self, fake_clock, job):
        handle = AsyncJobHandle(remote_id="sync-1", backend=BackendId.RUNPOD_FLUX)
        adapter = ScriptedAdapter(
            sync_outcome=SubmitResult(handle=handle),
            observations=[PollResult(state=PollState.COMPLETED, artifact_source="done")],
        )

        assert await _poller(fake_clock).run(adapter, job) == "done"
        assert adapter.submit_calls == 0

    @pytest.mark.asyncio
    async def test_no_sync_timeout_goes_straight_to_submit(self, fake_clock, job):
        adapter = ScriptedAdapter(
            observations=[PollResult(state=PollState.COMPLETED, artifact_source="done")],
        )

        assert await _poller(fake_clock, sync_timeout=None).run(adapter, job) == "done"
        assert adapter.sync_calls == 0
        assert adapter.submit_calls == 1


class TestWaitForCompletion:
    """Tests for the poll loop."""

    @pytest.fixture
    def handle(self):
        return AsyncJobHandle(remote_id="remote-1", backend=BackendId.RUNPOD_FLUX)

    @pytest.mark.asyncio
    async def test_failed_state_raises_and_stops_polling(self, fake_clock, handle):
        adapter = ScriptedAdapter(observations=[
            PollResult(state=PollState.RUNNING),
            PollResult(state=PollState.FAILED, error="CUDA out of memory"),
            PollResult(state=PollState.COMPLETED, artifact_source="never"),
        ])

        with pytest.raises(UnrecoverableBackendError, match="CUDA out of memory"):
            await _poller(fake_clock).wait_for_completion(adapter, handle)

        assert adapter.poll_calls == 2

    @pytest.mark.asyncio
    async def test_cancelled_state_is_unrecoverable(self, fake_clock, handle):
        adapter = ScriptedAdapter(observations=[PollResult(state=PollState.CANCELLED)])

        with pytest.raises(UnrecoverableBackendError):
            await _poller(fake_clock).wait_for_completion(adapter, handle)

    @pytest.mark.asyncio
    async def test_deadline_raises_job_timeout(self, fake_clock, handle):
        adapter = ScriptedAdapter(observations=[PollResult(state=PollState.RUNNING)] * 100)

        with pytest.raises(JobTimeout):
            await _poller(fake_clock, deadline=10.0).wait_for_completion(adapter, handle)

        assert sum(fake_clock.sleeps) == pytest.approx(10.0)
        assert adapter.poll_calls == 6

    @pytest.mark.asyncio
    async def test_transient_status_errors_keep_polling(self, fake_clock, handle):
        adapter = ScriptedAdapter(observations=[
            TransientBackendError("502 from status endpoint"),
            PollResult(state=PollState.COMPLETED, artifact_source="ok"),
        ])

        assert await _poller(fake_clock).wait_for_completion(adapter, handle) == "ok"
        assert adapter.poll_calls == 2

    def test_running_never_reverts_to_queued(self, handle):
        assert AsyncJobPoller._advance(PollState.RUNNING, PollState.QUEUED, handle) == PollState.RUNNING
        assert AsyncJobPoller._advance(PollState.QUEUED, PollState.RUNNING, handle) == PollState.RUNNING
        assert AsyncJobPoller._advance(PollState.RUNNING, PollState.FAILED, handle) == PollState.FAILED
