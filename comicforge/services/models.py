"""
Pydantic models for ComicForge generation services.

These models provide validated data structures for:
- Batch generation (Job, JobResult, BatchResult)
- Async backend polling (AsyncJobHandle, PollState)
- Text placement (TextBlock, Placement, TailDirection)
- Comic plans (ComicPlan, Chapter, Page, Panel)

Jobs and results are frozen: a Job is immutable once submitted and a
JobResult is never mutated after the orchestrator returns it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.errors import ConfigurationError


# ============================================================================
# Enums
# ============================================================================

class BackendId(str, Enum):
    """Closed set of image backend families."""
    FLUX_SCHNELL = "flux-schnell"
    FLUX_DEV = "flux-dev"
    FLUX_PRO = "flux-pro"
    RUNPOD_FLUX = "runpod-flux"
    FLUX_KONTEXT = "flux-kontext"

    @classmethod
    def parse(cls, value: "str | BackendId") -> "BackendId":
        """
        Resolve a backend id, failing fast on unknown names.

        Raises:
            ConfigurationError: If the name is not a known backend family
        """
        try:
            return cls(value)
        except ValueError:
            known = ", ".join(b.value for b in cls)
            raise ConfigurationError(f"Unknown image backend: {value} (expected one of: {known})")


class AspectRatio(str, Enum):
    """Supported frame aspect ratios."""
    SQUARE = "1:1"
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    STANDARD = "4:3"
    STANDARD_PORTRAIT = "3:4"
    PHOTO = "3:2"
    PHOTO_PORTRAIT = "2:3"

    @property
    def dimensions(self) -> Tuple[int, int]:
        """Pixel (width, height) used by backends that take explicit sizes."""
        return _ASPECT_DIMENSIONS[self]

    @property
    def ratio(self) -> float:
        """Width divided by height."""
        width, height = self.value.split(":")
        return float(width) / float(height)


_ASPECT_DIMENSIONS: Dict[AspectRatio, Tuple[int, int]] = {
    AspectRatio.SQUARE: (1024, 1024),
    AspectRatio.LANDSCAPE: (1344, 768),
    AspectRatio.PORTRAIT: (768, 1344),
    AspectRatio.STANDARD: (1152, 896),
    AspectRatio.STANDARD_PORTRAIT: (896, 1152),
    AspectRatio.PHOTO: (1216, 832),
    AspectRatio.PHOTO_PORTRAIT: (832, 1216),
}


class PollState(str, Enum):
    """Remote job state as seen by the AsyncJobPoller."""
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (PollState.COMPLETED, PollState.FAILED, PollState.CANCELLED, PollState.TIMED_OUT)


class TextBlockKind(str, Enum):
    """Kind of text overlay on a panel."""
    DIALOGUE = "dialogue"
    NARRATIVE = "narrative"
    EFFECT = "effect"


class TailDirection(str, Enum):
    """Where a speech bubble's tail points."""
    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"
    TOP_RIGHT = "top-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    BOTTOM_RIGHT = "bottom-right"
    LEFT_TOP = "left-top"
    LEFT_CENTER = "left-center"
    LEFT_BOTTOM = "left-bottom"
    RIGHT_TOP = "right-top"
    RIGHT_CENTER = "right-center"
    RIGHT_BOTTOM = "right-bottom"
    NONE = "none"


class PlacementSource(str, Enum):
    """How a placement was produced."""
    VISION = "vision"
    FALLBACK = "fallback"


# ============================================================================
# Batch Generation Models
# ============================================================================

class Job(BaseModel):
    """
    One unit of rendering work.

    Identity is ``id``, unique within a batch. ``reference_artifact`` is
    resolved before submission for character-consistency runs; ``subject_id``
    names the character whose reference the job depends on.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="Job ID, unique within a batch")
    prompt: str = Field(..., min_length=1, description="Image prompt")
    negative_prompt: Optional[str] = Field(None, description="Things to avoid in the image")
    aspect_ratio: AspectRatio = Field(default=AspectRatio.SQUARE, description="Frame aspect ratio")
    seed: Optional[int] = Field(None, ge=0, description="Deterministic seed if supported")
    reference_artifact: Optional[str] = Field(None, description="Reference image location for consistency")
    subject_id: Optional[str] = Field(None, description="Character whose reference this job uses")


class JobResult(BaseModel):
    """Outcome of one Job, produced exactly once regardless of attempts."""
    model_config = ConfigDict(frozen=True)

    id: str
    artifact_ref: Optional[str] = None
    succeeded: bool
    error_detail: Optional[str] = None
    attempts: int = Field(default=0, ge=0)

    @classmethod
    def success(cls, job_id: str, artifact_ref: str, attempts: int) -> "JobResult":
        return cls(id=job_id, artifact_ref=artifact_ref, succeeded=True, attempts=attempts)

    @classmethod
    def failure(cls, job_id: str, error_detail: str, attempts: int = 0) -> "JobResult":
        return cls(id=job_id, succeeded=False, error_detail=error_detail, attempts=attempts)


class BatchResult(BaseModel):
    """Aggregated results of a batch, ordered like the input jobs."""
    results: List[JobResult] = Field(default_factory=list)
    succeeded_count: int = Field(default=0, ge=0)
    failed_count: int = Field(default=0, ge=0)
    backend: Optional[BackendId] = None
    elapsed_seconds: float = Field(default=0.0, ge=0.0)

    @classmethod
    def from_results(
        cls,
        results: List[JobResult],
        backend: Optional[BackendId] = None,
        elapsed_seconds: float = 0.0,
    ) -> "BatchResult":
        succeeded = sum(1 for r in results if r.succeeded)
        return cls(
            results=results,
            succeeded_count=succeeded,
            failed_count=len(results) - succeeded,
            backend=backend,
            elapsed_seconds=elapsed_seconds,
        )

    def by_id(self) -> Dict[str, JobResult]:
        """Results keyed by job id."""
        return {r.id: r for r in self.results}


class CharacterBatchResult(BaseModel):
    """Batch results plus the reference artifact resolved per subject (None if it failed)."""
    batch: BatchResult
    references: Dict[str, Optional[str]] = Field(default_factory=dict)


class AsyncJobHandle(BaseModel):
    """Remote job handle for polling backends."""
    remote_id: str
    backend: BackendId
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# ============================================================================
# Text Placement Models
# ============================================================================

class TextBlock(BaseModel):
    """A dialogue, narrative or SFX text overlay to place on an artifact."""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: TextBlockKind
    text: str = ""
    speaker: Optional[str] = None


class Placement(BaseModel):
    """
    Position and size of a text block, as percentages of the frame.

    Always fully inside the frame: x, y >= 0, x + width <= 100, y + height <= 100.
    """
    model_config = ConfigDict(frozen=True)

    block_id: str
    x: float = Field(..., ge=0, le=100)
    y: float = Field(..., ge=0, le=100)
    width: float = Field(..., gt=0, le=100)
    height: float = Field(..., gt=0, le=100)
    tail_direction: TailDirection = TailDirection.BOTTOM_CENTER
    source: PlacementSource = PlacementSource.FALLBACK
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _inside_frame(self) -> "Placement":
        if self.x + self.width > 100 or self.y + self.height > 100:
            raise ValueError(
                f"Placement {self.block_id} exceeds frame: "
                f"x={self.x} w={self.width} y={self.y} h={self.height}"
            )
        return self


# ============================================================================
# Comic Plan Models
# ============================================================================

class Character(BaseModel):
    """A recurring character in the plan."""
    id: str
    name: str
    description: str = ""


class DialogueLine(BaseModel):
    """One line of dialogue in a panel."""
    character_id: Optional[str] = None
    text: str


class Panel(BaseModel):
    """A single panel: what to render plus the text to place over it."""
    id: str
    image_prompt: str
    negative_prompt: Optional[str] = None
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    seed: Optional[int] = None
    narrative: Optional[str] = None
    dialogue: List[DialogueLine] = Field(default_factory=list)
    sfx: Optional[str] = None
    characters_in_scene: List[str] = Field(default_factory=list)

    # Filled in by ComicRenderService
    image_url: Optional[str] = None
    generation_error: Optional[str] = None
    placements: Dict[str, Placement] = Field(default_factory=dict)


class Page(BaseModel):
    """A page of panels."""
    number: int
    panels: List[Panel] = Field(default_factory=list)


class Chapter(BaseModel):
    """A chapter of pages."""
    title: str = ""
    pages: List[Page] = Field(default_factory=list)


class ComicPlan(BaseModel):
    """Structured generation plan for a whole comic."""
    id: str
    title: str = ""
    characters: List[Character] = Field(default_factory=list)
    chapters: List[Chapter] = Field(default_factory=list)

    def iter_panels(self) -> List[Panel]:
        """All panels in reading order."""
        return [
            panel
            for chapter in self.chapters
            for page in chapter.pages
            for panel in page.panels
        ]

    def character(self, character_id: str) -> Optional[Character]:
        return next((c for c in self.characters if c.id == character_id), None)
