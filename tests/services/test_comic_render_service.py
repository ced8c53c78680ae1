"""
Tests for ComicRenderService.

The BatchOrchestrator is mocked; these tests cover how a plan becomes jobs
and how results and placements are written back onto a copy of the plan.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from comicforge.services.comic_render_service import ComicRenderService, text_blocks_for_panel
from comicforge.services.models import (
    BatchResult,
    Chapter,
    Character,
    CharacterBatchResult,
    ComicPlan,
    DialogueLine,
    JobResult,
    Page,
    Panel,
    Placement,
    PlacementSource,
    TextBlockKind,
)


@pytest.fixture
def plan():
    return ComicPlan(
        id="plan-1",
        title="The Lighthouse",
        characters=[
            Character(id="keeper", name="Keeper", description="old lighthouse keeper, grey beard"),
            Character(id="gull", name="Gull"),
        ],
        chapters=[Chapter(title="One", pages=[
            Page(number=1, panels=[
                Panel(
                    id="c1-p1-1",
                    image_prompt="a lighthouse in a storm",
                    narrative="It was a dark night.",
                    dialogue=[DialogueLine(character_id="keeper", text="Who's there?")],
                    sfx="CRASH",
                    characters_in_scene=["stranger", "keeper"],
                ),
                Panel(id="c1-p1-2", image_prompt="a gull on the railing", characters_in_scene=["gull"]),
            ]),
            Page(number=2, panels=[
                Panel(id="c1-p2-1", image_prompt="empty sea", narrative="Dawn."),
            ]),
        ])],
    )


@pytest.fixture
def orchestrator():
    mock = MagicMock()
    mock.run_batch = AsyncMock()
    mock.run_character_batch = AsyncMock()
    mock.analyze_placement = AsyncMock(side_effect=lambda ref, blocks, ratio: [
        Placement(block_id=b.id, x=5, y=5, width=20, height=10, source=PlacementSource.FALLBACK)
        for b in blocks
    ])
    return mock


def _batch(*results) -> BatchResult:
    return BatchResult.from_results(list(results))


class TestTextBlocks:
    """Tests for text_blocks_for_panel()."""

    def test_block_ids_and_kinds(self, plan):
        blocks = text_blocks_for_panel(plan.iter_panels()[0])

        assert [b.id for b in blocks] == ["narrative", "dialogue-0", "sfx"]
        assert [b.kind for b in blocks] == [
            TextBlockKind.NARRATIVE, TextBlockKind.DIALOGUE, TextBlockKind.EFFECT
        ]
        assert blocks[1].speaker == "keeper"

    def test_panel_without_text(self, plan):
        assert text_blocks_for_panel(plan.iter_panels()[1]) == []


class TestBuildJobs:
    """Tests for ComicRenderService.build_jobs()."""

    def test_one_job_per_panel_in_reading_order(self, plan, orchestrator):
        jobs = ComicRenderService(orchestrator).build_jobs(plan)

        assert [j.id for j in jobs] == ["c1-p1-1", "c1-p1-2", "c1-p2-1"]
        assert all(j.subject_id is None for j in jobs)

    def test_character_consistency_picks_first_known_character(self, plan, orchestrator):
        jobs = ComicRenderService(orchestrator).build_jobs(plan, character_consistency=True)

        assert [j.subject_id for j in jobs] == ["keeper", "gull", None]


class TestRenderPlan:
    """Tests for ComicRenderService.render_plan()."""

    @pytest.mark.asyncio
    async def test_writes_results_onto_a_copy(self, plan, orchestrator):
        orchestrator.run_batch.return_value = _batch(
            JobResult.success("c1-p1-1", "images/a.png", 1),
            JobResult.failure("c1-p1-2", "gave up after 5 attempts", attempts=5),
            JobResult.success("c1-p2-1", "images/c.png", 2),
        )

        report = await ComicRenderService(orchestrator).render_plan(plan, backend="flux-dev")

        panels = report.plan.iter_panels()
        assert panels[0].image_url == "images/a.png"
        assert panels[1].image_url is None
        assert panels[1].generation_error == "gave up after 5 attempts"
        assert set(panels[0].placements) == {"narrative", "dialogue-0", "sfx"}
        assert set(panels[2].placements) == {"narrative"}
        assert report.placed_panels == 2
        assert report.failed_panels == ["c1-p1-2"]
        # Input plan is untouched
        assert plan.iter_panels()[0].image_url is None

        orchestrator.run_batch.assert_awaited_once()
        assert orchestrator.run_batch.call_args.args[1] == "flux-dev"

    @pytest.mark.asyncio
    async def test_failed_panels_are_not_lettered(self, plan, orchestrator):
        orchestrator.run_batch.return_value = _batch(
            JobResult.failure("c1-p1-1", "boom"),
            JobResult.failure("c1-p1-2", "boom"),
            JobResult.failure("c1-p2-1", "boom"),
        )

        report = await ComicRenderService(orchestrator).render_plan(plan)

        orchestrator.analyze_placement.assert_not_awaited()
        assert report.placed_panels == 0

    @pytest.mark.asyncio
    async def test_character_consistency_mode(self, plan, orchestrator):
        orchestrator.run_character_batch.return_value = CharacterBatchResult(
            batch=_batch(
                JobResult.success("c1-p1-1", "images/a.png", 1),
                JobResult.success("c1-p1-2", "images/b.png", 1),
                JobResult.success("c1-p2-1", "images/c.png", 1),
            ),
            references={"keeper": "images/keeper.png", "gull": None},
        )

        report = await ComicRenderService(orchestrator).render_plan(
            plan, character_consistency=True, style="ink wash"
        )

        jobs, subjects, style, _ = orchestrator.run_character_batch.call_args.args
        assert subjects == {"keeper": "old lighthouse keeper, grey beard", "gull": "Gull"}
        assert style == "ink wash"
        assert [j.subject_id for j in jobs] == ["keeper", "gull", None]
        assert report.references["gull"] is None
        orchestrator.run_batch.assert_not_awaited()
