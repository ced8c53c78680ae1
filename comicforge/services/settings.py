"""
Injected generation settings.

The orchestrator never reads environment variables itself. Per-backend
concurrency, pacing, polling deadlines and retry ceilings arrive through
GenerationSettings, which defaults to values from Config.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from ..core.config import Config
from ..core.errors import ConfigurationError
from .models import BackendId


class ConcurrencyMode(str, Enum):
    """Execution discipline for a backend family."""
    PACED_SEQUENTIAL = "paced-sequential"
    POOLED_PARALLEL = "pooled-parallel"


@dataclass(frozen=True)
class BackendSettings:
    """Concurrency, polling and retry limits for one backend family."""
    mode: ConcurrencyMode
    pacing_delay: float = 0.0
    concurrency: int = 1
    max_attempts: int = 5
    # None skips the synchronous fast path (always submit-then-poll)
    sync_timeout: Optional[float] = None
    poll_timeout: float = 180.0
    poll_interval: float = 2.0

    def __post_init__(self):
        if self.concurrency < 1:
            raise ConfigurationError(f"concurrency must be >= 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.pacing_delay < 0:
            raise ConfigurationError(f"pacing_delay must be >= 0, got {self.pacing_delay}")


@dataclass(frozen=True)
class ProviderInfo:
    """Human-readable description of a backend for listings."""
    name: str
    description: str
    cost_per_image: str


PROVIDER_INFO: Dict[BackendId, ProviderInfo] = {
    BackendId.FLUX_SCHNELL: ProviderInfo(
        name="FLUX Schnell", description="Fast generation on Replicate", cost_per_image="~$0.003"
    ),
    BackendId.FLUX_DEV: ProviderInfo(
        name="FLUX Dev", description="Higher quality on Replicate", cost_per_image="~$0.025"
    ),
    BackendId.FLUX_PRO: ProviderInfo(
        name="FLUX Pro", description="Best quality on Replicate", cost_per_image="~$0.04"
    ),
    BackendId.RUNPOD_FLUX: ProviderInfo(
        name="RunPod FLUX", description="Self-hosted serverless, parallel", cost_per_image="~$0.003"
    ),
    BackendId.FLUX_KONTEXT: ProviderInfo(
        name="FLUX Kontext", description="Reference-guided character consistency on RunPod",
        cost_per_image="~$0.005"
    ),
}


def _default_backends() -> Dict[BackendId, BackendSettings]:
    paced = BackendSettings(
        mode=ConcurrencyMode.PACED_SEQUENTIAL,
        pacing_delay=Config.REPLICATE_PACING_DELAY,
        concurrency=1,
        max_attempts=Config.IMAGE_MAX_RETRIES,
        poll_timeout=Config.REPLICATE_POLL_TIMEOUT,
        poll_interval=Config.POLL_INTERVAL,
    )
    return {
        BackendId.FLUX_SCHNELL: paced,
        BackendId.FLUX_DEV: paced,
        BackendId.FLUX_PRO: paced,
        BackendId.RUNPOD_FLUX: BackendSettings(
            mode=ConcurrencyMode.POOLED_PARALLEL,
            concurrency=Config.RUNPOD_CONCURRENCY,
            max_attempts=Config.IMAGE_MAX_RETRIES,
            sync_timeout=Config.RUNPOD_SYNC_TIMEOUT,
            poll_timeout=Config.RUNPOD_POLL_TIMEOUT,
            poll_interval=Config.POLL_INTERVAL,
        ),
        BackendId.FLUX_KONTEXT: BackendSettings(
            mode=ConcurrencyMode.POOLED_PARALLEL,
            concurrency=Config.RUNPOD_CONCURRENCY,
            max_attempts=Config.IMAGE_MAX_RETRIES,
            sync_timeout=None,
            poll_timeout=Config.KONTEXT_POLL_TIMEOUT,
            poll_interval=Config.POLL_INTERVAL,
        ),
    }


@dataclass
class GenerationSettings:
    """All knobs the BatchOrchestrator consumes."""
    backends: Dict[BackendId, BackendSettings] = field(default_factory=_default_backends)
    default_backend: BackendId = BackendId.FLUX_DEV
    reference_backend: BackendId = BackendId.RUNPOD_FLUX
    # Backend for dependents whose subject reference failed
    fallback_backend: BackendId = BackendId.RUNPOD_FLUX
    reference_pacing_delay: float = 2.0
    rate_limit_buffer: float = 2.0
    backoff_base: float = 2.0
    # Deadline for one job across all of its retries
    job_timeout: float = 900.0

    def __post_init__(self):
        if self.job_timeout <= 0:
            raise ConfigurationError(f"job_timeout must be > 0, got {self.job_timeout}")

    @classmethod
    def from_config(cls) -> "GenerationSettings":
        """Build settings from environment-backed Config."""
        return cls(
            backends=_default_backends(),
            default_backend=BackendId.parse(Config.IMAGE_PROVIDER),
            reference_pacing_delay=Config.REFERENCE_PACING_DELAY,
            rate_limit_buffer=Config.RATE_LIMIT_BUFFER_SECONDS,
            backoff_base=Config.RETRY_BACKOFF_BASE,
            job_timeout=Config.JOB_TIMEOUT,
        )

    def for_backend(self, backend: BackendId) -> BackendSettings:
        """
        Look up a backend's settings.

        Raises:
            ConfigurationError: If no settings are registered for the backend
        """
        try:
            return self.backends[backend]
        except KeyError:
            raise ConfigurationError(f"No settings configured for backend: {backend.value}")
