"""
Image backend adapters: Replicate (sync) and RunPod serverless (async).
"""

from .base import AsyncBackendAdapter, BackendAdapter, PollResult, SubmitResult
from .registry import build_adapter
from .replicate import ReplicateFluxAdapter
from .runpod import RunPodFluxAdapter, RunPodKontextAdapter, extract_image_source

__all__ = [
    'AsyncBackendAdapter',
    'BackendAdapter',
    'PollResult',
    'SubmitResult',
    'build_adapter',
    'ReplicateFluxAdapter',
    'RunPodFluxAdapter',
    'RunPodKontextAdapter',
    'extract_image_source',
]
