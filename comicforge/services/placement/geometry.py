"""
Deterministic geometry for text overlays.

All values are percentages of the panel frame. ``estimate_size`` is a pure
function of the text, its kind and the frame's aspect ratio: each per-kind
curve is continuous and non-decreasing in text length, so longer text never
yields a smaller box.
"""

import math
from dataclasses import dataclass
from typing import Tuple, Union

from ..models import AspectRatio, Placement, TextBlockKind

# Cyrillic glyphs run wider than Latin at the same point size
CYRILLIC_WIDTH_FACTOR = 1.08

WIDE_FRAME_RATIO = 1.5
TALL_FRAME_RATIO = 0.7

DEFAULT_MARGIN = 2.0


@dataclass(frozen=True)
class SizeBounds:
    """Min/max percentage bounds per dimension."""
    min_width: float = 15.0
    max_width: float = 50.0
    min_height: float = 10.0
    max_height: float = 35.0


@dataclass(frozen=True)
class BlockSize:
    width: float
    height: float


DEFAULT_BOUNDS = SizeBounds()


def has_cyrillic(text: str) -> bool:
    """True if any character falls in the Cyrillic block (U+0400 to U+04FF)."""
    return any("\u0400" <= ch <= "\u04ff" for ch in text)


def aspect_ratio_value(aspect_ratio: Union[AspectRatio, str, float]) -> float:
    """Width/height of a frame given as AspectRatio, 'W:H' string or number."""
    if isinstance(aspect_ratio, AspectRatio):
        return aspect_ratio.ratio
    if isinstance(aspect_ratio, (int, float)):
        return float(aspect_ratio)
    try:
        width, height = (float(part) for part in aspect_ratio.split(":"))
        return width / height if height else 1.0
    except ValueError:
        return 1.0


def _piecewise(n: float, start: float, segments: Tuple[Tuple[float, float], ...]) -> float:
    """
    Continuous piecewise-linear curve.

    ``segments`` is a sequence of (length_limit, slope); the last limit may
    be math.inf. Value starts at ``start`` for n=0.
    """
    value = start
    previous_limit = 0.0
    for limit, slope in segments:
        span = min(n, limit) - previous_limit
        if span <= 0:
            break
        value += span * slope
        previous_limit = limit
    return value


def _base_size(length: int, kind: TextBlockKind) -> Tuple[float, float]:
    if kind == TextBlockKind.EFFECT:
        return min(35.0, 15 + length * 1.5), min(20.0, 10 + length * 0.5)

    if kind == TextBlockKind.NARRATIVE:
        width = _piecewise(length, 25.0, ((30, 0.4), (80, 0.2), (math.inf, 0.05)))
        height = 10 + math.ceil(length / 30) * 3
        return width, height

    # Dialogue: squarer box, height includes room for the tail
    width = _piecewise(length, 18.0, ((20, 0.5), (50, 0.3), (math.inf, 0.15)))
    height = 12 + math.ceil(length / 16) * 4
    return width, height


def estimate_size(
    text: str,
    kind: TextBlockKind,
    aspect_ratio: Union[AspectRatio, str, float] = AspectRatio.SQUARE,
    bounds: SizeBounds = DEFAULT_BOUNDS,
) -> BlockSize:
    """
    Estimate a text block's box size.

    Args:
        text: Block text (only its length and script matter)
        kind: dialogue, narrative or effect
        aspect_ratio: Frame aspect ratio
        bounds: Clamp bounds per dimension

    Returns:
        BlockSize with width/height in frame percent, inside ``bounds``
    """
    width, height = _base_size(len(text), kind)

    if has_cyrillic(text):
        width *= CYRILLIC_WIDTH_FACTOR

    ratio = aspect_ratio_value(aspect_ratio)
    if ratio > WIDE_FRAME_RATIO:
        width *= 0.9
        height *= 1.1
    elif ratio < TALL_FRAME_RATIO:
        width *= 1.1
        height *= 0.9

    return BlockSize(
        width=_clamp(round(width), bounds.min_width, bounds.max_width),
        height=_clamp(round(height), bounds.min_height, bounds.max_height),
    )


def clamp_placement(
    x: float,
    y: float,
    width: float,
    height: float,
    margin: float = DEFAULT_MARGIN,
) -> Tuple[float, float, float, float]:
    """
    Keep a box inside the frame with ``margin`` on every edge.

    Returns:
        (x, y, width, height) with x, y >= margin and x + width,
        y + height <= 100 - margin
    """
    usable = 100 - 2 * margin
    width = max(1, min(round(width), usable))
    height = max(1, min(round(height), usable))
    x = max(margin, min(round(x), 100 - margin - width))
    y = max(margin, min(round(y), 100 - margin - height))
    return x, y, width, height


def to_pixels(placement: Placement, image_width: int, image_height: int) -> Tuple[int, int, int, int]:
    """Convert a percentage placement to pixel (x, y, width, height)."""
    return (
        round(placement.x / 100 * image_width),
        round(placement.y / 100 * image_height),
        round(placement.width / 100 * image_width),
        round(placement.height / 100 * image_height),
    )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))
