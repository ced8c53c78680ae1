"""
Services layer for ComicForge.

Provides batch image generation across rate-limited backends
(BatchOrchestrator), text placement on rendered panels (PlacementAnalyzer)
and whole-plan rendering (ComicRenderService).
"""

from .models import (
    BackendId,
    AspectRatio,
    PollState,
    TextBlockKind,
    TailDirection,
    PlacementSource,
    Job,
    JobResult,
    BatchResult,
    CharacterBatchResult,
    AsyncJobHandle,
    TextBlock,
    Placement,
    Character,
    DialogueLine,
    Panel,
    Page,
    Chapter,
    ComicPlan,
)
from .settings import BackendSettings, ConcurrencyMode, GenerationSettings
from .retry_policy import RetryDecision, RetryPolicy, run_with_retry
from .batch_orchestrator import BatchOrchestrator
from .comic_render_service import ComicRenderService, RenderReport, text_blocks_for_panel

__all__ = [
    'BackendId',
    'AspectRatio',
    'PollState',
    'TextBlockKind',
    'TailDirection',
    'PlacementSource',
    'Job',
    'JobResult',
    'BatchResult',
    'CharacterBatchResult',
    'AsyncJobHandle',
    'TextBlock',
    'Placement',
    'Character',
    'DialogueLine',
    'Panel',
    'Page',
    'Chapter',
    'ComicPlan',
    'BackendSettings',
    'ConcurrencyMode',
    'GenerationSettings',
    'RetryDecision',
    'RetryPolicy',
    'run_with_retry',
    'BatchOrchestrator',
    'ComicRenderService',
    'RenderReport',
    'text_blocks_for_panel',
]
