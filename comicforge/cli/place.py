"""
Text placement command for ComicForge CLI
"""

import asyncio
import io
import json
import logging
import sys
from typing import List, Optional, Tuple

import click
import httpx
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError as PydanticValidationError

from ..core.errors import GenerationError
from ..services.artifact_store import ArtifactStore
from ..services.models import AspectRatio, Placement, TextBlock
from ..services.placement.geometry import to_pixels
from ..services.placement.placement_analyzer import PlacementAnalyzer

logger = logging.getLogger(__name__)


@click.command('place')
@click.argument('image')
@click.option('--blocks', '-t', 'blocks_file', required=True, type=click.Path(exists=True, dir_okay=False),
              help='JSON array of text blocks ({id, kind, text, speaker})')
@click.option('--aspect-ratio', '-a', type=click.Choice([a.value for a in AspectRatio]), default='1:1',
              help='Frame aspect ratio of the image')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write placements JSON here')
def place_command(image: str, blocks_file: str, aspect_ratio: str, output: Optional[str]):
    """
    Place dialogue, narrative and SFX boxes on an image.

    IMAGE may be a local path or an http(s) URL.

    Example:
        comicforge place images/panel.png --blocks blocks.json --aspect-ratio 16:9
    """
    try:
        with open(blocks_file, "r", encoding="utf-8") as f:
            blocks = [TextBlock.model_validate(item) for item in json.load(f)]
    except (OSError, ValueError, TypeError, PydanticValidationError) as e:
        click.echo(f"❌ Invalid blocks file: {e}", err=True)
        sys.exit(1)

    try:
        placements, image_size = asyncio.run(_place(image, blocks, AspectRatio(aspect_ratio)))
    except (OSError, httpx.HTTPError, UnidentifiedImageError, GenerationError) as e:
        click.echo(f"❌ Could not read image: {e}", err=True)
        sys.exit(1)

    for placement in placements:
        click.echo(
            f"📍 {placement.block_id:<12} x={placement.x:>3.0f} y={placement.y:>3.0f} "
            f"{placement.width:.0f}x{placement.height:.0f}  tail={placement.tail_direction.value} "
            f"({placement.source.value})"
        )
        px, py, pw, ph = to_pixels(placement, *image_size)
        click.echo(f"   {'':<12} pixels: ({px}, {py}) {pw}x{ph}")

    if output:
        with open(output, "w", encoding="utf-8") as f:
            json.dump([p.model_dump(mode="json") for p in placements], f, indent=2)
        click.echo(f"💾 Saved to {output}")


async def _place(
    image: str,
    blocks: List[TextBlock],
    aspect_ratio: AspectRatio
) -> Tuple[List[Placement], Tuple[int, int]]:
    store = ArtifactStore()
    try:
        data = await store.load(image)
    finally:
        await store.aclose()

    with Image.open(io.BytesIO(data)) as opened:
        image_size = opened.size

    placements = await PlacementAnalyzer.from_config().analyze(data, blocks, aspect_ratio)
    return placements, image_size
