"""
Tests for PlacementAnalyzer.

Tests cover:
- Default corner placements (no vision client, or every retry failed)
- Reconciling vision output with estimated sizes (tolerance, clamping, tails)
- Blocks the model skipped
- Response parsing (code fences, malformed JSON)
- Vision call pacing across concurrent analyses
"""

import asyncio
import json

import pytest

from comicforge.core.errors import TransientBackendError, ValidationError
from comicforge.services.models import (
    AspectRatio,
    PlacementSource,
    TailDirection,
    TextBlock,
    TextBlockKind,
)
from comicforge.services.placement.placement_analyzer import (
    PlacementAnalyzer,
    normalize_tail_direction,
)
from comicforge.services.retry_policy import RetryPolicy


class FakeVisionClient:
    """Vision client replaying scripted replies (strings or exceptions)."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    async def describe(self, image: bytes, prompt: str) -> str:
        self.calls += 1
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


@pytest.fixture
def blocks():
    return [
        TextBlock(id="narrative", kind=TextBlockKind.NARRATIVE, text="Meanwhile..."),
        TextBlock(id="dialogue-0", kind=TextBlockKind.DIALOGUE, text="Hello!", speaker="hero"),
        TextBlock(id="dialogue-1", kind=TextBlockKind.DIALOGUE, text="Who goes there?", speaker="guard"),
        TextBlock(id="sfx", kind=TextBlockKind.EFFECT, text="BOOM"),
        TextBlock(id="dialogue-2", kind=TextBlockKind.DIALOGUE, text="Run!", speaker="hero"),
    ]


def _analyzer(client, fake_clock, **kwargs):
    return PlacementAnalyzer(
        vision_client=client,
        retry_policy=kwargs.pop("retry_policy", RetryPolicy(max_attempts=3)),
        sleep=fake_clock.sleep,
        clock=fake_clock,
        **kwargs,
    )


def _reply(*placements) -> str:
    return json.dumps({"placements": list(placements)})


class TestDefaultPlacements:
    """Fallback placement when vision is unavailable or fails."""

    @pytest.mark.asyncio
    async def test_no_vision_client_uses_round_robin_corners(self, fake_clock, blocks):
        placements = await _analyzer(None, fake_clock).analyze(b"img", blocks)

        assert [p.block_id for p in placements] == [b.id for b in blocks]
        assert [(p.x, p.y) for p in placements[:3]] == [(5, 5), (55, 5), (5, 65)]
        # Fifth block wraps back to the first corner
        assert (placements[4].x, placements[4].y) == (5, 5)
        assert all(p.source == PlacementSource.FALLBACK for p in placements)
        assert placements[0].reason == "Default fallback placement with calculated size"

    @pytest.mark.asyncio
    async def test_narrative_never_has_a_tail(self, fake_clock, blocks):
        placements = await _analyzer(None, fake_clock).analyze(b"img", blocks)

        assert placements[0].tail_direction == TailDirection.NONE
        assert placements[1].tail_direction == TailDirection.BOTTOM_LEFT
        assert placements[2].tail_direction == TailDirection.TOP_RIGHT

    @pytest.mark.asyncio
    async def test_every_retry_failing_falls_back(self, fake_clock, blocks):
        client = FakeVisionClient([TransientBackendError("overloaded")])

        placements = await _analyzer(client, fake_clock).analyze(b"img", blocks)

        assert client.calls == 3
        assert len(placements) == len(blocks)
        assert all(p.source == PlacementSource.FALLBACK for p in placements)
        assert placements[0].tail_direction == TailDirection.NONE

    @pytest.mark.asyncio
    async def test_validation_error_falls_back_without_retry(self, fake_clock, blocks):
        client = FakeVisionClient([ValidationError("image rejected")])

        placements = await _analyzer(client, fake_clock).analyze(b"img", blocks)

        assert client.calls == 1
        assert all(p.source == PlacementSource.FALLBACK for p in placements)

    @pytest.mark.asyncio
    async def test_empty_blocks(self, fake_clock):
        client = FakeVisionClient(["{}"])
        assert await _analyzer(client, fake_clock).analyze(b"img", []) == []
        assert client.calls == 0

    @pytest.mark.asyncio
    async def test_placements_fit_every_aspect_ratio(self, fake_clock, blocks):
        analyzer = _analyzer(None, fake_clock)
        for ratio in AspectRatio:
            for p in await analyzer.analyze(b"img", blocks, ratio):
                assert p.x + p.width <= 98
                assert p.y + p.height <= 98


class TestReconcile:
    """Merging vision suggestions with estimated sizes."""

    @pytest.mark.asyncio
    async def test_size_within_tolerance_is_kept(self, fake_clock):
        block = TextBlock(id="dialogue-0", kind=TextBlockKind.DIALOGUE, text="Hello!")
        client = FakeVisionClient([_reply(
            {"id": "dialogue-0", "x": 40, "y": 10, "width": 24, "height": 30,
             "tailDirection": "left", "reason": "empty sky"},
        )])

        [placement] = await _analyzer(client, fake_clock).analyze(b"img", [block])

        assert placement.source == PlacementSource.VISION
        # estimate is 21x16: width 24 is within 5 points, height 30 is not
        assert placement.width == 24
        assert placement.height == 16
        assert placement.tail_direction == TailDirection.LEFT_CENTER
        assert placement.reason == "empty sky"

    @pytest.mark.asyncio
    async def test_out_of_frame_suggestion_is_clamped(self, fake_clock):
        block = TextBlock(id="dialogue-0", kind=TextBlockKind.DIALOGUE, text="Hello!")
        client = FakeVisionClient([_reply(
            {"id": "dialogue-0", "x": 95, "y": 92, "width": 21, "height": 16, "tailDirection": "bottom-left"},
        )])

        [placement] = await _analyzer(client, fake_clock).analyze(b"img", [block])

        assert (placement.x, placement.y) == (77, 82)
        assert placement.tail_direction == TailDirection.BOTTOM_LEFT

    @pytest.mark.asyncio
    async def test_vision_narrative_tail_is_forced_to_none(self, fake_clock):
        block = TextBlock(id="narrative", kind=TextBlockKind.NARRATIVE, text="Meanwhile...")
        client = FakeVisionClient([_reply(
            {"id": "narrative", "x": 5, "y": 5, "width": 30, "height": 13, "tailDirection": "bottom-center"},
        )])

        [placement] = await _analyzer(client, fake_clock).analyze(b"img", [block])

        assert placement.source == PlacementSource.VISION
        assert placement.tail_direction == TailDirection.NONE

    @pytest.mark.asyncio
    async def test_missing_block_gets_default_placement(self, fake_clock, blocks):
        client = FakeVisionClient([_reply(
            {"id": "narrative", "x": 10, "y": 5, "width": 30, "height": 13},
        )])

        placements = await _analyzer(client, fake_clock).analyze(b"img", blocks[:2])

        assert placements[0].source == PlacementSource.VISION
        assert placements[1].source == PlacementSource.FALLBACK
        assert (placements[1].x, placements[1].y) == (55, 5)

    @pytest.mark.asyncio
    async def test_malformed_reply_is_retried(self, fake_clock):
        block = TextBlock(id="sfx", kind=TextBlockKind.EFFECT, text="BOOM")
        client = FakeVisionClient([
            "Sorry, I cannot help with that.",
            "```json\n" + _reply({"id": "sfx", "x": 60, "y": 60, "width": 20, "height": 12}) + "\n```",
        ])

        [placement] = await _analyzer(client, fake_clock).analyze(b"img", [block])

        assert client.calls == 2
        assert placement.source == PlacementSource.VISION
        assert (placement.x, placement.y) == (60, 60)


class TestParseResponse:
    """Tests for PlacementAnalyzer.parse_response()."""

    def test_strips_code_fences_and_prose(self):
        text = "Here you go:\n```json\n" + _reply({"id": "a", "x": 1, "y": 2, "width": 10, "height": 10}) + "\n```"
        parsed = PlacementAnalyzer.parse_response(text)
        assert parsed["a"].x == 1

    def test_no_json_raises_transient(self):
        with pytest.raises(TransientBackendError):
            PlacementAnalyzer.parse_response("no placements today")

    def test_out_of_range_values_raise_transient(self):
        with pytest.raises(TransientBackendError):
            PlacementAnalyzer.parse_response(_reply({"id": "a", "x": 1, "y": 2, "width": 500, "height": 10}))

    def test_broken_json_raises_transient(self):
        with pytest.raises(TransientBackendError):
            PlacementAnalyzer.parse_response('{"placements": [{"id": "a", "x": }]}')


class TestTailDirection:
    """Tests for normalize_tail_direction()."""

    @pytest.mark.parametrize("raw, expected", [
        ("bottom-left", TailDirection.BOTTOM_LEFT),
        ("  Top-Right ", TailDirection.TOP_RIGHT),
        ("down", TailDirection.BOTTOM_CENTER),
        ("left", TailDirection.LEFT_CENTER),
        ("none", TailDirection.NONE),
        ("", TailDirection.NONE),
        (None, TailDirection.NONE),
        ("diagonal-ish", TailDirection.BOTTOM_CENTER),
    ])
    def test_normalization(self, raw, expected):
        assert normalize_tail_direction(raw) == expected


class TestVisionPacing:
    """Vision calls are spaced apart across concurrent analyses."""

    @pytest.mark.asyncio
    async def test_concurrent_analyses_are_paced(self, fake_clock):
        block = TextBlock(id="sfx", kind=TextBlockKind.EFFECT, text="BOOM")
        client = FakeVisionClient([_reply({"id": "sfx", "x": 60, "y": 60, "width": 20, "height": 12})])
        analyzer = _analyzer(client, fake_clock, pacing_delay=3.0)

        await asyncio.gather(
            analyzer.analyze(b"img-1", [block]),
            analyzer.analyze(b"img-2", [block]),
        )

        assert client.calls == 2
        assert fake_clock.sleeps == [3.0]
