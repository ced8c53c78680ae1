"""
Text placement for rendered panels: deterministic geometry plus
vision-assisted positioning with corner fallback.
"""

from .geometry import (
    BlockSize,
    SizeBounds,
    clamp_placement,
    estimate_size,
    has_cyrillic,
    to_pixels,
)
from .placement_analyzer import PlacementAnalyzer, normalize_tail_direction
from .vision_client import VisionClient

__all__ = [
    'BlockSize',
    'SizeBounds',
    'clamp_placement',
    'estimate_size',
    'has_cyrillic',
    'to_pixels',
    'PlacementAnalyzer',
    'normalize_tail_direction',
    'VisionClient',
]
