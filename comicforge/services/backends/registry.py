"""
Backend family dispatch.

One branch per BackendId member; anything else is a ConfigurationError.
"""

from typing import Optional

import httpx

from ...core.config import Config
from ...core.errors import ConfigurationError
from .base import BackendAdapter
from .replicate import ReplicateFluxAdapter
from .runpod import (
    ReferenceLoader,
    RunPodFluxAdapter,
    RunPodKontextAdapter,
)
from ..models import BackendId


def build_adapter(
    backend: BackendId,
    client: Optional[httpx.AsyncClient] = None,
    reference_loader: Optional[ReferenceLoader] = None,
) -> BackendAdapter:
    """
    Create the adapter for a backend family.

    Args:
        backend: Backend family
        client: Optional shared httpx client
        reference_loader: Resolves reference artifacts (required for FLUX_KONTEXT)

    Returns:
        A configured BackendAdapter

    Raises:
        ConfigurationError: For unknown backends or missing credentials
    """
    fallback = Config.RATE_LIMIT_FALLBACK_SECONDS

    if backend in (BackendId.FLUX_SCHNELL, BackendId.FLUX_DEV, BackendId.FLUX_PRO):
        return ReplicateFluxAdapter(backend, client=client, rate_limit_fallback=fallback)
    if backend == BackendId.RUNPOD_FLUX:
        return RunPodFluxAdapter(client=client, rate_limit_fallback=fallback)
    if backend == BackendId.FLUX_KONTEXT:
        if reference_loader is None:
            raise ConfigurationError("flux-kontext needs a reference loader")
        return RunPodKontextAdapter(reference_loader, client=client, rate_limit_fallback=fallback)

    raise ConfigurationError(f"No adapter for backend: {backend!r}")
