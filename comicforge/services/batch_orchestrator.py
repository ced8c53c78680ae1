"""
Batch Orchestrator - runs a batch of image jobs against one backend family.

For each batch it:
- resolves the backend's adapter, concurrency strategy and retry policy
- runs every job through RetryPolicy (and AsyncJobPoller for queued backends)
- stores artifacts and returns exactly one JobResult per job, in input order

Character-consistency runs first generate one reference per subject, then
route jobs with a reference to FLUX Kontext and jobs without one to the
fallback backend.
"""

import asyncio
import hashlib
import logging
import time
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import logfire

from ..core.errors import (
    ConfigurationError,
    TransientBackendError,
    UnrecoverableBackendError,
    ValidationError,
)
from .artifact_store import ArtifactStore
from .backends.base import AsyncBackendAdapter, BackendAdapter
from .backends.registry import build_adapter
from .concurrency import (
    BatchProgress,
    ConcurrencyStrategy,
    PacedSequentialStrategy,
    PooledParallelStrategy,
    ProgressCallback,
)
from .job_poller import AsyncJobPoller
from .models import (
    AspectRatio,
    BackendId,
    BatchResult,
    CharacterBatchResult,
    Job,
    JobResult,
    Placement,
    TextBlock,
)
from .placement.placement_analyzer import PlacementAnalyzer
from .retry_policy import RetryPolicy, SleepFunc, run_with_retry
from .settings import (
    PROVIDER_INFO,
    BackendSettings,
    ConcurrencyMode,
    GenerationSettings,
)

logger = logging.getLogger(__name__)

AdapterFactory = Callable[..., BackendAdapter]


def build_reference_prompt(subject_description: str, style: str = "") -> str:
    """Prompt for a single-character reference image."""
    parts = [
        f"Character reference sheet of {subject_description.strip()}",
        "single character, full body, front view, neutral pose",
        "plain light background, even lighting, clear face, consistent design",
    ]
    if style.strip():
        parts.append(style.strip())
    return ", ".join(parts)


class BatchOrchestrator:
    """
    Orchestrates batch image generation across backend families.

    All public operations are async and end in a definite outcome: run_batch
    always returns a BatchResult with a per-job success flag; only batch-level
    misconfiguration raises.
    """

    def __init__(
        self,
        settings: Optional[GenerationSettings] = None,
        artifact_store: Optional[ArtifactStore] = None,
        adapter_factory: Optional[AdapterFactory] = None,
        placement_analyzer: Optional[PlacementAnalyzer] = None,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Per-backend limits (defaults to GenerationSettings.from_config())
            artifact_store: Where generated images are written
            adapter_factory: Builds a BackendAdapter for a BackendId
            placement_analyzer: Analyzer used by analyze_placement
            sleep: Awaitable sleep for pacing and backoff (defaults to asyncio.sleep)
            clock: Monotonic clock (defaults to time.monotonic)
        """
        self.settings = settings or GenerationSettings.from_config()
        self.artifact_store = artifact_store or ArtifactStore()
        self._adapter_factory = adapter_factory or build_adapter
        self._placement_analyzer = placement_analyzer
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._adapters: Dict[BackendId, BackendAdapter] = {}

    # =========================================================================
    # BATCH GENERATION
    # =========================================================================

    async def run_batch(
        self,
        jobs: Sequence[Job],
        backend: Union[BackendId, str, None] = None,
        on_progress: Optional[ProgressCallback] = None,
        batch_timeout: Optional[float] = None,
    ) -> BatchResult:
        """
        Generate every job on one backend.

        Args:
            jobs: Jobs to run; ids must be unique
            backend: Backend family (defaults to settings.default_backend)
            on_progress: Optional callback(completed, total, status)
            batch_timeout: Optional deadline for the whole batch in seconds;
                unfinished jobs are recorded as failed when it passes

        Returns:
            BatchResult with one JobResult per job, in input order

        Raises:
            ConfigurationError: Unknown backend, empty job list, missing credentials
            ValidationError: Duplicate job ids
        """
        backend_id = BackendId.parse(backend or self.settings.default_backend)
        return await self._execute(jobs, backend_id, on_progress, batch_timeout)

    async def generate_reference(
        self,
        subject_description: str,
        style: str = "",
        backend: Union[BackendId, str, None] = None,
    ) -> str:
        """
        Generate a character reference image.

        Args:
            subject_description: Visual description of the character
            style: Art style appended to the prompt
            backend: Backend family (defaults to settings.reference_backend)

        Returns:
            Artifact ref of the reference image

        Raises:
            UnrecoverableBackendError: If generation failed after retries
        """
        if not subject_description.strip():
            raise ValidationError("Subject description is empty")

        backend_id = BackendId.parse(backend or self.settings.reference_backend)
        digest = hashlib.md5(subject_description.encode()).hexdigest()[:8]
        job = Job(
            id=f"reference-{digest}",
            prompt=build_reference_prompt(subject_description, style),
            aspect_ratio=AspectRatio.SQUARE,
        )

        batch = await self._execute([job], backend_id)
        result = batch.results[0]
        if not result.succeeded:
            raise UnrecoverableBackendError(f"Reference generation failed: {result.error_detail}")
        return result.artifact_ref

    async def run_character_batch(
        self,
        jobs: Sequence[Job],
        subjects: Mapping[str, str],
        style: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> CharacterBatchResult:
        """
        Reference-then-dependents generation for character consistency.

        1. One reference per distinct ``subject_id`` (sequential, paced)
        2. Each dependent job gets its subject's reference resolved into
           ``reference_artifact``; a failed reference leaves it None
        3. Jobs with a reference run on FLUX Kontext, the rest on the
           fallback backend

        Args:
            jobs: Jobs, optionally tagged with ``subject_id``
            subjects: Subject id -> visual description
            style: Art style for the reference prompts
            on_progress: Optional callback(completed, total, status)

        Returns:
            CharacterBatchResult with results in input order and the
            reference resolved per subject (None where it failed)

        Raises:
            ConfigurationError: Empty job list or unusable backends, raised
                before any reference is generated
            ValidationError: Duplicate job ids
        """
        self._validate_jobs(jobs)
        self._preflight(self._character_backends(jobs))
        started = self._clock()

        references = await self._generate_references(jobs, subjects, style, on_progress)

        resolved = [
            job.model_copy(update={"reference_artifact": references.get(job.subject_id)})
            if job.subject_id and not job.reference_artifact
            else job
            for job in jobs
        ]
        with_reference = [job for job in resolved if job.reference_artifact]
        without_reference = [job for job in resolved if not job.reference_artifact]

        merged: Dict[str, JobResult] = {}
        for partition, backend_id in (
            (with_reference, BackendId.FLUX_KONTEXT),
            (without_reference, self.settings.fallback_backend),
        ):
            if not partition:
                continue
            logger.info(f"Running {len(partition)} job(s) on {backend_id.value}")
            batch = await self._execute(partition, backend_id, self._labelled(on_progress, backend_id.value))
            merged.update(batch.by_id())

        results = [merged[job.id] for job in jobs]
        return CharacterBatchResult(
            batch=BatchResult.from_results(results, elapsed_seconds=self._clock() - started),
            references=references,
        )

    async def _generate_references(
        self,
        jobs: Sequence[Job],
        subjects: Mapping[str, str],
        style: str,
        on_progress: Optional[ProgressCallback],
    ) -> Dict[str, Optional[str]]:
        subject_ids: List[str] = []
        for job in jobs:
            if job.subject_id and not job.reference_artifact and job.subject_id not in subject_ids:
                subject_ids.append(job.subject_id)

        if not subject_ids:
            return {}

        reference_jobs = []
        for subject_id in subject_ids:
            description = subjects.get(subject_id)
            if not description:
                logger.warning(f"No description for subject {subject_id}, using its id")
                description = subject_id
            reference_jobs.append(Job(
                id=subject_id,
                prompt=build_reference_prompt(description, style),
                aspect_ratio=AspectRatio.SQUARE,
            ))

        logger.info(f"Generating {len(reference_jobs)} character reference(s)")
        with logfire.span("generate references", subjects=len(reference_jobs)):
            batch = await self._execute(
                reference_jobs,
                self.settings.reference_backend,
                self._labelled(on_progress, "references"),
                strategy=PacedSequentialStrategy(
                    self.settings.reference_pacing_delay, sleep=self._sleep, clock=self._clock
                ),
            )

        references: Dict[str, Optional[str]] = {}
        for result in batch.results:
            if result.succeeded:
                references[result.id] = result.artifact_ref
            else:
                logger.warning(
                    f"Reference for {result.id} failed, its panels fall back to "
                    f"{self.settings.fallback_backend.value}: {result.error_detail}"
                )
                references[result.id] = None
        return references

    async def _execute(
        self,
        jobs: Sequence[Job],
        backend_id: BackendId,
        on_progress: Optional[ProgressCallback] = None,
        batch_timeout: Optional[float] = None,
        strategy: Optional[ConcurrencyStrategy] = None,
    ) -> BatchResult:
        self._validate_jobs(jobs)
        backend_settings = self.settings.for_backend(backend_id)
        adapter = self._adapter(backend_id)
        strategy = strategy or self._strategy_for(backend_settings)
        policy = self._policy_for(backend_settings)

        progress = BatchProgress(len(jobs), on_progress)
        started = self._clock()

        async def runner(job: Job) -> JobResult:
            return await self._run_job(job, adapter, backend_settings, policy)

        logger.info(
            f"Starting batch of {len(jobs)} job(s) on {backend_id.value} "
            f"({backend_settings.mode.value})"
        )
        with logfire.span("run_batch {backend}", backend=backend_id.value, jobs=len(jobs)):
            try:
                if batch_timeout is not None:
                    await asyncio.wait_for(strategy.run(jobs, runner, progress), batch_timeout)
                else:
                    await strategy.run(jobs, runner, progress)
            except asyncio.TimeoutError:
                logger.error(f"Batch deadline of {batch_timeout:.0f}s exceeded on {backend_id.value}")
                for job in jobs:
                    if not progress.has_result(job.id):
                        progress.record(JobResult.failure(job.id, f"Batch deadline of {batch_timeout:.0f}s exceeded"))

        result = BatchResult.from_results(
            progress.ordered(jobs),
            backend=backend_id,
            elapsed_seconds=self._clock() - started,
        )
        logger.info(
            f"Batch on {backend_id.value} finished: {result.succeeded_count} succeeded, "
            f"{result.failed_count} failed in {result.elapsed_seconds:.1f}s"
        )
        return result

    async def _run_job(
        self,
        job: Job,
        adapter: BackendAdapter,
        backend_settings: BackendSettings,
        policy: RetryPolicy,
    ) -> JobResult:
        """Run one job to a single JobResult, never raising for backend failures."""
        work = run_with_retry(
            lambda: self._generate_once(job, adapter, backend_settings),
            policy,
            label=f"Job {job.id}",
            sleep=self._sleep,
        )

        try:
            artifact_ref, attempts = await asyncio.wait_for(work, self.settings.job_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Job {job.id} exceeded its {self.settings.job_timeout:.0f}s deadline")
            return JobResult.failure(job.id, f"Timed out after {self.settings.job_timeout:.0f}s")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            attempts = getattr(e, "attempts", 0) or policy.max_attempts
            return JobResult.failure(job.id, str(e) or type(e).__name__, attempts=attempts)

        logger.info(f"Generated {job.id} in {attempts} attempt(s)")
        return JobResult.success(job.id, artifact_ref, attempts)

    async def _generate_once(
        self,
        job: Job,
        adapter: BackendAdapter,
        backend_settings: BackendSettings,
    ) -> str:
        """One attempt: submit (and poll if needed), then store the artifact."""
        if isinstance(adapter, AsyncBackendAdapter):
            poller = AsyncJobPoller(
                poll_interval=backend_settings.poll_interval,
                deadline=backend_settings.poll_timeout,
                sync_timeout=backend_settings.sync_timeout,
                sleep=self._sleep,
                clock=self._clock,
            )
            source = await poller.run(adapter, job)
        else:
            source = (await adapter.submit(job)).artifact_source

        if not source:
            raise TransientBackendError(f"{adapter.backend.value} returned no image for {job.id}")
        return await self.artifact_store.save(source, job.prompt)

    # =========================================================================
    # PLACEMENT
    # =========================================================================

    @property
    def placement_analyzer(self) -> PlacementAnalyzer:
        if self._placement_analyzer is None:
            self._placement_analyzer = PlacementAnalyzer.from_config()
        return self._placement_analyzer

    async def analyze_placement(
        self,
        artifact_ref: str,
        text_blocks: Sequence[TextBlock],
        aspect_ratio: Union[AspectRatio, str] = AspectRatio.SQUARE,
    ) -> List[Placement]:
        """
        Place text blocks on a generated artifact.

        Never raises for storage or vision failures; blocks get default
        placements instead.
        """
        if not text_blocks:
            return []
        analyzer = self.placement_analyzer

        try:
            image = await self.artifact_store.load(artifact_ref)
        except Exception as e:
            logger.warning(f"Could not load {artifact_ref} for placement, using defaults: {e}")
            return analyzer.default_placements(text_blocks, aspect_ratio)

        return await analyzer.analyze(image, text_blocks, aspect_ratio)

    # =========================================================================
    # HELPERS
    # =========================================================================

    def get_provider_info(self, backend: Union[BackendId, str]) -> Dict[str, object]:
        """Name, cost and concurrency mode of a backend, for listings."""
        backend_id = BackendId.parse(backend)
        info = PROVIDER_INFO[backend_id]
        backend_settings = self.settings.for_backend(backend_id)
        return {
            "id": backend_id.value,
            "name": info.name,
            "description": info.description,
            "cost_per_image": info.cost_per_image,
            "mode": backend_settings.mode.value,
            "concurrency": backend_settings.concurrency,
            "pacing_delay": backend_settings.pacing_delay,
        }

    async def aclose(self) -> None:
        """Close adapter and storage HTTP clients."""
        for adapter in self._adapters.values():
            await adapter.aclose()
        self._adapters.clear()
        await self.artifact_store.aclose()

    def _adapter(self, backend_id: BackendId) -> BackendAdapter:
        if backend_id not in self._adapters:
            self._adapters[backend_id] = self._adapter_factory(
                backend_id, reference_loader=self.artifact_store.load
            )
        return self._adapters[backend_id]

    def _character_backends(self, jobs: Sequence[Job]) -> List[BackendId]:
        """Backends a character batch may touch, given which jobs need a reference."""
        needs_reference = any(job.subject_id and not job.reference_artifact for job in jobs)
        backends = []
        if needs_reference:
            backends.append(self.settings.reference_backend)
        if needs_reference or any(job.reference_artifact for job in jobs):
            backends.append(BackendId.FLUX_KONTEXT)
        if any(not job.reference_artifact for job in jobs):
            backends.append(self.settings.fallback_backend)
        return backends

    def _preflight(self, backend_ids: Sequence[BackendId]) -> None:
        """Resolve settings and adapters up front so misconfiguration raises before any submit."""
        for backend_id in backend_ids:
            self.settings.for_backend(backend_id)
            self._adapter(backend_id)

    def _strategy_for(self, backend_settings: BackendSettings) -> ConcurrencyStrategy:
        if backend_settings.mode == ConcurrencyMode.PACED_SEQUENTIAL:
            return PacedSequentialStrategy(backend_settings.pacing_delay, sleep=self._sleep, clock=self._clock)
        if backend_settings.mode == ConcurrencyMode.POOLED_PARALLEL:
            return PooledParallelStrategy(backend_settings.concurrency)
        raise ConfigurationError(f"Unknown concurrency mode: {backend_settings.mode!r}")

    def _policy_for(self, backend_settings: BackendSettings) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=backend_settings.max_attempts,
            backoff_base=self.settings.backoff_base,
            rate_limit_buffer=self.settings.rate_limit_buffer,
        )

    @staticmethod
    def _validate_jobs(jobs: Sequence[Job]) -> None:
        if not jobs:
            raise ConfigurationError("Cannot run an empty batch")

        seen = set()
        duplicates = set()
        for job in jobs:
            if job.id in seen:
                duplicates.add(job.id)
            seen.add(job.id)
        if duplicates:
            raise ValidationError(f"Duplicate job ids in batch: {', '.join(sorted(duplicates))}")

    @staticmethod
    def _labelled(callback: Optional[ProgressCallback], label: str) -> Optional[ProgressCallback]:
        if callback is None:
            return None

        def labelled(completed: int, total: int, status: str) -> None:
            callback(completed, total, f"[{label}] {status}")

        return labelled
