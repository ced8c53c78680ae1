"""
Placement Analyzer - positions dialogue, narrative and SFX boxes on a panel.

Flow per artifact:
1. Estimate every block's size deterministically (geometry.estimate_size)
2. Ask a vision model where each block should go, with those sizes as
   hard constraints (paced, retried under RetryPolicy)
3. Reconcile: keep the model's size only when it is within
   ``size_tolerance`` points of the estimate, then clamp into the frame

Any failure falls back to corner-anchored default placements, so
analyze() always returns one Placement per block.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Union

import logfire
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from ...core.config import Config
from ...core.errors import ConfigurationError, TransientBackendError
from ..models import (
    AspectRatio,
    Placement,
    PlacementSource,
    TailDirection,
    TextBlock,
    TextBlockKind,
)
from .geometry import (
    DEFAULT_BOUNDS,
    DEFAULT_MARGIN,
    BlockSize,
    SizeBounds,
    clamp_placement,
    estimate_size,
)
from .vision_client import VisionClient
from ..retry_policy import RetryPolicy, SleepFunc, run_with_retry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CornerAnchor:
    x: float
    y: float
    tail: TailDirection


# Round-robin anchors for fallback placement
DEFAULT_CORNERS = (
    CornerAnchor(5, 5, TailDirection.BOTTOM_RIGHT),
    CornerAnchor(55, 5, TailDirection.BOTTOM_LEFT),
    CornerAnchor(5, 65, TailDirection.TOP_RIGHT),
    CornerAnchor(55, 65, TailDirection.TOP_LEFT),
)

_TAIL_ALIASES = {
    "top": TailDirection.TOP_CENTER,
    "up": TailDirection.TOP_CENTER,
    "bottom": TailDirection.BOTTOM_CENTER,
    "down": TailDirection.BOTTOM_CENTER,
    "left": TailDirection.LEFT_CENTER,
    "right": TailDirection.RIGHT_CENTER,
    "n/a": TailDirection.NONE,
    "na": TailDirection.NONE,
    "": TailDirection.NONE,
}


def normalize_tail_direction(value: Optional[str]) -> TailDirection:
    """
    Map a free-form direction from the vision model onto TailDirection.

    Unknown values point down (bottom-center), the most common bubble tail.
    """
    key = (value or "").strip().lower()
    try:
        return TailDirection(key)
    except ValueError:
        return _TAIL_ALIASES.get(key, TailDirection.BOTTOM_CENTER)


class VisionPlacement(BaseModel):
    """One placement as returned by the vision model."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    x: float = Field(..., ge=0, le=100)
    y: float = Field(..., ge=0, le=100)
    width: float = Field(..., ge=5, le=60)
    height: float = Field(..., ge=5, le=40)
    tail_direction: str = Field(default="", alias="tailDirection")
    reason: str = ""


class VisionPlacementResponse(BaseModel):
    placements: List[VisionPlacement] = Field(default_factory=list)


class PlacementAnalyzer:
    """
    Vision-assisted text placement with deterministic fallback.

    Vision calls are spaced at least ``pacing_delay`` seconds apart across
    every artifact this instance analyzes, including concurrent ones.
    """

    def __init__(
        self,
        vision_client: Optional[VisionClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        pacing_delay: float = 3.0,
        size_tolerance: float = 5.0,
        margin: float = DEFAULT_MARGIN,
        bounds: SizeBounds = DEFAULT_BOUNDS,
        sleep: Optional[SleepFunc] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        """
        Initialize the analyzer.

        Args:
            vision_client: Vision backend (None means always use default placements)
            retry_policy: Retry policy for vision calls (default: 3 attempts)
            pacing_delay: Minimum seconds between vision calls
            size_tolerance: Max points a vision size may differ from the estimate and still be used
            margin: Frame margin in percent kept free on every edge
            bounds: Size bounds for estimate_size
            sleep: Awaitable sleep function (defaults to asyncio.sleep)
            clock: Monotonic clock (defaults to time.monotonic)
        """
        self.vision_client = vision_client
        self.retry_policy = retry_policy or RetryPolicy(max_attempts=3)
        self.pacing_delay = pacing_delay
        self.size_tolerance = size_tolerance
        self.margin = margin
        self.bounds = bounds
        self._sleep = sleep or asyncio.sleep
        self._clock = clock or time.monotonic
        self._last_call_at: Optional[float] = None
        self._pacing_lock = asyncio.Lock()

    @classmethod
    def from_config(cls) -> "PlacementAnalyzer":
        """Analyzer wired to Claude vision if ANTHROPIC_API_KEY is set."""
        try:
            vision_client = VisionClient()
        except ConfigurationError as e:
            logger.warning(f"Vision placement disabled: {e}")
            vision_client = None

        return cls(
            vision_client=vision_client,
            retry_policy=RetryPolicy(
                max_attempts=Config.VISION_MAX_RETRIES,
                backoff_base=Config.RETRY_BACKOFF_BASE,
                rate_limit_buffer=Config.RATE_LIMIT_BUFFER_SECONDS,
                default_rate_limit_wait=Config.RATE_LIMIT_FALLBACK_SECONDS,
            ),
            pacing_delay=Config.VISION_PACING_DELAY,
            size_tolerance=Config.PLACEMENT_SIZE_TOLERANCE,
        )

    async def analyze(
        self,
        image: bytes,
        text_blocks: Sequence[TextBlock],
        aspect_ratio: Union[AspectRatio, str] = AspectRatio.SQUARE,
    ) -> List[Placement]:
        """
        Place every text block on an artifact.

        Never raises for backend or parsing failures: blocks fall back to
        corner-anchored default placements instead.

        Args:
            image: Artifact image bytes
            text_blocks: Blocks to place
            aspect_ratio: Frame aspect ratio

        Returns:
            One Placement per block, in input order
        """
        blocks = list(text_blocks)
        if not blocks:
            return []

        if self.vision_client is None:
            return self.default_placements(blocks, aspect_ratio)

        sizes = self.estimate_sizes(blocks, aspect_ratio)
        prompt = self.build_prompt(blocks, sizes, aspect_ratio)

        with logfire.span("analyze placement", blocks=len(blocks)):
            try:
                suggestions, attempts = await run_with_retry(
                    lambda: self._request_placements(image, prompt),
                    self.retry_policy,
                    label="Placement analysis",
                    sleep=self._sleep,
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Placement analysis failed, using default placements: {e}")
                return self.default_placements(blocks, aspect_ratio)

        logger.info(f"Vision placed {len(suggestions)}/{len(blocks)} block(s) in {attempts} attempt(s)")
        return self.reconcile(blocks, suggestions, sizes, aspect_ratio)

    def estimate_sizes(
        self,
        blocks: Sequence[TextBlock],
        aspect_ratio: Union[AspectRatio, str],
    ) -> Dict[str, BlockSize]:
        return {block.id: estimate_size(block.text, block.kind, aspect_ratio, self.bounds) for block in blocks}

    def build_prompt(
        self,
        blocks: Sequence[TextBlock],
        sizes: Dict[str, BlockSize],
        aspect_ratio: Union[AspectRatio, str],
    ) -> str:
        """Vision prompt listing each block with its required size."""
        ratio = aspect_ratio.value if isinstance(aspect_ratio, AspectRatio) else aspect_ratio
        block_lines = []
        for block in blocks:
            size = sizes[block.id]
            speaker = f" (speaker: {block.speaker})" if block.speaker else ""
            block_lines.append(
                f'- id "{block.id}", {block.kind.value}{speaker}: "{block.text}" '
                f"-> width {size.width:.0f}%, height {size.height:.0f}%"
            )
        blocks_text = "\n".join(block_lines)

        return f"""You are a professional comic book letterer. Place text elements on this comic panel (aspect ratio {ratio}).

TEXT ELEMENTS (width/height are REQUIRED sizes in % of the panel):
{blocks_text}

RULES:
- Never cover faces, eyes or the main action
- Prefer empty areas: sky, plain backgrounds, corners
- Keep every element fully inside the panel with a {self.margin:.0f}% margin
- Dialogue tails point toward the speaker; narrative boxes have no tail
- Elements must not overlap each other

Coordinates are percentages: x=0 is the left edge, y=0 is the top edge, (x, y) is the top-left corner.
tailDirection is one of: top-left, top-center, top-right, bottom-left, bottom-center, bottom-right,
left-top, left-center, left-bottom, right-top, right-center, right-bottom, none.

Return ONLY valid JSON:
{{"placements": [{{"id": "<block id>", "x": 0, "y": 0, "width": 0, "height": 0, "tailDirection": "<direction>", "reason": "<short reason>"}}]}}"""

    async def _request_placements(self, image: bytes, prompt: str) -> Dict[str, VisionPlacement]:
        await self._wait_for_slot()
        response_text = await self.vision_client.describe(image, prompt)
        return self.parse_response(response_text)

    async def _wait_for_slot(self) -> None:
        """Hold the next vision call until ``pacing_delay`` has passed since the last one."""
        async with self._pacing_lock:
            if self._last_call_at is not None:
                remaining = self.pacing_delay - (self._clock() - self._last_call_at)
                if remaining > 0:
                    logger.debug(f"Vision pacing: waiting {remaining:.1f}s")
                    await self._sleep(remaining)
            self._last_call_at = self._clock()

    @staticmethod
    def parse_response(response_text: str) -> Dict[str, VisionPlacement]:
        """
        Parse the model's JSON reply into placements keyed by block id.

        Raises:
            TransientBackendError: If the reply has no valid placements JSON
        """
        json_text = response_text.strip()
        if json_text.startswith("```"):
            json_text = re.sub(r"^```(?:json)?|```$", "", json_text).strip()

        match = re.search(r"\{.*\}", json_text, re.DOTALL)
        if not match:
            raise TransientBackendError("No JSON found in vision response")

        try:
            parsed = VisionPlacementResponse.model_validate(json.loads(match.group(0)))
        except (json.JSONDecodeError, PydanticValidationError) as e:
            raise TransientBackendError(f"Invalid placement JSON from vision model: {e}") from e

        return {p.id: p for p in parsed.placements}

    def reconcile(
        self,
        blocks: Sequence[TextBlock],
        suggestions: Dict[str, VisionPlacement],
        sizes: Dict[str, BlockSize],
        aspect_ratio: Union[AspectRatio, str],
    ) -> List[Placement]:
        """
        Merge vision suggestions with the deterministic estimates.

        A block the model did not return gets its default placement.
        """
        placements = []
        for index, block in enumerate(blocks):
            suggestion = suggestions.get(block.id)
            if suggestion is None:
                logger.debug(f"Vision skipped block {block.id}, using default placement")
                placements.append(self._default_placement(index, block, aspect_ratio))
                continue

            estimate = sizes[block.id]
            width = suggestion.width if abs(suggestion.width - estimate.width) <= self.size_tolerance else estimate.width
            height = suggestion.height if abs(suggestion.height - estimate.height) <= self.size_tolerance else estimate.height
            x, y, width, height = clamp_placement(suggestion.x, suggestion.y, width, height, self.margin)

            tail = normalize_tail_direction(suggestion.tail_direction)
            if block.kind == TextBlockKind.NARRATIVE:
                tail = TailDirection.NONE

            placements.append(Placement(
                block_id=block.id,
                x=x,
                y=y,
                width=width,
                height=height,
                tail_direction=tail,
                source=PlacementSource.VISION,
                reason=suggestion.reason or None,
            ))
        return placements

    def default_placements(
        self,
        blocks: Sequence[TextBlock],
        aspect_ratio: Union[AspectRatio, str] = AspectRatio.SQUARE,
    ) -> List[Placement]:
        """Corner-anchored placements, assigned round-robin in block order."""
        return [self._default_placement(index, block, aspect_ratio) for index, block in enumerate(blocks)]

    def _default_placement(
        self,
        index: int,
        block: TextBlock,
        aspect_ratio: Union[AspectRatio, str],
    ) -> Placement:
        corner = DEFAULT_CORNERS[index % len(DEFAULT_CORNERS)]
        size = estimate_size(block.text, block.kind, aspect_ratio, self.bounds)
        x, y, width, height = clamp_placement(corner.x, corner.y, size.width, size.height, self.margin)

        return Placement(
            block_id=block.id,
            x=x,
            y=y,
            width=width,
            height=height,
            tail_direction=TailDirection.NONE if block.kind == TextBlockKind.NARRATIVE else corner.tail,
            source=PlacementSource.FALLBACK,
            reason="Default fallback placement with calculated size",
        )
