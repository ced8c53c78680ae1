"""
Comic Render Service - turns a ComicPlan into rendered, lettered panels.

Runs the plan's panels as one batch (or a character-consistency batch),
writes each panel's image_url back onto a copy of the plan, then places the
panel's narrative, dialogue and SFX blocks on every rendered artifact.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from .batch_orchestrator import BatchOrchestrator
from .concurrency import ProgressCallback
from .models import (
    BackendId,
    BatchResult,
    ComicPlan,
    Job,
    Panel,
    TextBlock,
    TextBlockKind,
)

logger = logging.getLogger(__name__)


def text_blocks_for_panel(panel: Panel) -> List[TextBlock]:
    """
    Text blocks of a panel in lettering order.

    Ids are ``narrative``, ``dialogue-{i}`` and ``sfx``.
    """
    blocks = []
    if panel.narrative:
        blocks.append(TextBlock(id="narrative", kind=TextBlockKind.NARRATIVE, text=panel.narrative))
    for index, line in enumerate(panel.dialogue):
        blocks.append(TextBlock(
            id=f"dialogue-{index}",
            kind=TextBlockKind.DIALOGUE,
            text=line.text,
            speaker=line.character_id,
        ))
    if panel.sfx:
        blocks.append(TextBlock(id="sfx", kind=TextBlockKind.EFFECT, text=panel.sfx))
    return blocks


@dataclass
class RenderReport:
    """Enriched plan plus what happened while rendering it."""
    plan: ComicPlan
    batch: BatchResult
    references: Dict[str, Optional[str]] = field(default_factory=dict)
    placed_panels: int = 0

    @property
    def failed_panels(self) -> List[str]:
        return [r.id for r in self.batch.results if not r.succeeded]


class ComicRenderService:
    """Renders every panel of a plan and letters the results."""

    def __init__(self, orchestrator: Optional[BatchOrchestrator] = None):
        """
        Args:
            orchestrator: BatchOrchestrator to render with (default: configured from env)
        """
        self.orchestrator = orchestrator or BatchOrchestrator()

    def build_jobs(self, plan: ComicPlan, character_consistency: bool = False) -> List[Job]:
        """One Job per panel, in reading order."""
        jobs = []
        for panel in plan.iter_panels():
            subject_id = None
            if character_consistency:
                subject_id = next((c for c in panel.characters_in_scene if plan.character(c)), None)
            jobs.append(Job(
                id=panel.id,
                prompt=panel.image_prompt,
                negative_prompt=panel.negative_prompt,
                aspect_ratio=panel.aspect_ratio,
                seed=panel.seed,
                subject_id=subject_id,
            ))
        return jobs

    async def render_plan(
        self,
        plan: ComicPlan,
        backend: Union[BackendId, str, None] = None,
        character_consistency: bool = False,
        style: str = "",
        on_progress: Optional[ProgressCallback] = None,
    ) -> RenderReport:
        """
        Render and letter every panel of a plan.

        Args:
            plan: Plan to render (left unchanged; a copy is enriched)
            backend: Backend for a plain batch (ignored in character mode)
            character_consistency: Generate per-character references first
            style: Art style for reference prompts
            on_progress: Optional callback(completed, total, status)

        Returns:
            RenderReport with the enriched plan copy and batch results

        Raises:
            ConfigurationError: If the plan has no panels or the backend is unusable
        """
        enriched = plan.model_copy(deep=True)
        jobs = self.build_jobs(enriched, character_consistency)
        references: Dict[str, Optional[str]] = {}

        if character_consistency:
            subjects = {c.id: c.description or c.name for c in enriched.characters}
            outcome = await self.orchestrator.run_character_batch(jobs, subjects, style, on_progress)
            batch = outcome.batch
            references = outcome.references
        else:
            batch = await self.orchestrator.run_batch(jobs, backend, on_progress)

        results = batch.by_id()
        for panel in enriched.iter_panels():
            result = results[panel.id]
            panel.image_url = result.artifact_ref if result.succeeded else None
            panel.generation_error = result.error_detail

        placeable = [p for p in enriched.iter_panels() if p.image_url and text_blocks_for_panel(p)]
        await asyncio.gather(*(self._place_text(panel) for panel in placeable))

        logger.info(
            f"Rendered plan {plan.id}: {batch.succeeded_count}/{len(jobs)} panels, "
            f"{len(placeable)} lettered"
        )
        return RenderReport(
            plan=enriched,
            batch=batch,
            references=references,
            placed_panels=len(placeable),
        )

    async def _place_text(self, panel: Panel) -> None:
        placements = await self.orchestrator.analyze_placement(
            panel.image_url,
            text_blocks_for_panel(panel),
            panel.aspect_ratio,
        )
        panel.placements = {p.block_id: p for p in placements}
