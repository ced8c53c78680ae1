"""
Generation commands for ComicForge CLI
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import click
from pydantic import ValidationError as PydanticValidationError

from ..core.config import Config
from ..core.errors import ConfigurationError, GenerationError
from ..services.batch_orchestrator import BatchOrchestrator
from ..services.comic_render_service import ComicRenderService
from ..services.models import BackendId, ComicPlan, Job

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S"
)

logger = logging.getLogger(__name__)

BACKEND_CHOICES = [b.value for b in BackendId]


def _echo_progress(completed: int, total: int, status: str) -> None:
    click.echo(f"   [{completed}/{total}] {status}")


def _load_json(path: str):
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


@click.command('render')
@click.argument('plan_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--backend', '-b', type=click.Choice(BACKEND_CHOICES), help='Image backend (default: IMAGE_PROVIDER)')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Where to write the enriched plan JSON')
@click.option('--character-consistency', is_flag=True, help='Generate character references and use FLUX Kontext')
@click.option('--style', default='', help='Art style for character reference prompts')
def render_command(
    plan_file: str,
    backend: Optional[str],
    output: Optional[str],
    character_consistency: bool,
    style: str
):
    """
    Render every panel of a comic plan and place its text.

    Examples:
        comicforge render plan.json --backend runpod-flux -o plan.rendered.json
        comicforge render plan.json --character-consistency --style "ink wash"
    """
    try:
        plan = ComicPlan.model_validate(_load_json(plan_file))
    except (OSError, ValueError, PydanticValidationError) as e:
        click.echo(f"❌ Invalid plan file: {e}", err=True)
        sys.exit(1)

    output_path = Path(output) if output else Path(plan_file).with_suffix(".rendered.json")
    panel_count = len(plan.iter_panels())
    click.echo(f"🎨 Rendering {panel_count} panel(s) from '{plan.title or plan.id}'")

    try:
        report = asyncio.run(_render(plan, backend, character_consistency, style))
    except (ConfigurationError, GenerationError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    output_path.write_text(report.plan.model_dump_json(indent=2), encoding="utf-8")

    click.echo(f"\n✅ {report.batch.succeeded_count}/{panel_count} panels rendered, "
               f"{report.placed_panels} lettered")
    for panel_id in report.failed_panels:
        click.echo(f"   ⚠️  {panel_id}: {report.batch.by_id()[panel_id].error_detail}")
    click.echo(f"💾 Saved to {output_path}")


async def _render(plan: ComicPlan, backend: Optional[str], character_consistency: bool, style: str):
    orchestrator = BatchOrchestrator()
    try:
        service = ComicRenderService(orchestrator)
        return await service.render_plan(
            plan,
            backend=backend,
            character_consistency=character_consistency,
            style=style,
            on_progress=_echo_progress,
        )
    finally:
        await orchestrator.aclose()


@click.command('batch')
@click.argument('jobs_file', type=click.Path(exists=True, dir_okay=False))
@click.option('--backend', '-b', type=click.Choice(BACKEND_CHOICES), help='Image backend (default: IMAGE_PROVIDER)')
@click.option('--timeout', type=float, help='Deadline for the whole batch in seconds')
@click.option('--output', '-o', type=click.Path(dir_okay=False), help='Write the BatchResult JSON here')
def batch_command(jobs_file: str, backend: Optional[str], timeout: Optional[float], output: Optional[str]):
    """
    Generate a list of jobs (JSON array of {id, prompt, ...}) on one backend.

    Example:
        comicforge batch jobs.json --backend flux-schnell -o results.json
    """
    try:
        jobs = [Job.model_validate(item) for item in _load_json(jobs_file)]
    except (OSError, ValueError, TypeError, PydanticValidationError) as e:
        click.echo(f"❌ Invalid jobs file: {e}", err=True)
        sys.exit(1)

    click.echo(f"🚀 Generating {len(jobs)} image(s)")

    try:
        result = asyncio.run(_run_batch(jobs, backend, timeout))
    except (ConfigurationError, GenerationError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    for job_result in result.results:
        if job_result.succeeded:
            click.echo(f"   ✅ {job_result.id}: {job_result.artifact_ref}")
        else:
            click.echo(f"   ❌ {job_result.id}: {job_result.error_detail}")
    click.echo(f"\n{result.succeeded_count} succeeded, {result.failed_count} failed "
               f"in {result.elapsed_seconds:.0f}s")

    if output:
        Path(output).write_text(result.model_dump_json(indent=2), encoding="utf-8")
        click.echo(f"💾 Saved to {output}")


async def _run_batch(jobs: List[Job], backend: Optional[str], timeout: Optional[float]):
    orchestrator = BatchOrchestrator()
    try:
        return await orchestrator.run_batch(jobs, backend, _echo_progress, batch_timeout=timeout)
    finally:
        await orchestrator.aclose()


@click.command('reference')
@click.argument('description')
@click.option('--style', default='', help='Art style appended to the prompt')
@click.option('--backend', '-b', type=click.Choice(BACKEND_CHOICES), help='Image backend (default: runpod-flux)')
def reference_command(description: str, style: str, backend: Optional[str]):
    """
    Generate a single character reference image.

    Example:
        comicforge reference "a tall knight with a red scarf" --style "manga"
    """
    try:
        artifact_ref = asyncio.run(_generate_reference(description, style, backend))
    except (ConfigurationError, GenerationError) as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)

    click.echo(f"✅ Reference saved: {artifact_ref}")


async def _generate_reference(description: str, style: str, backend: Optional[str]) -> str:
    orchestrator = BatchOrchestrator()
    try:
        return await orchestrator.generate_reference(description, style, backend)
    finally:
        await orchestrator.aclose()


@click.command('providers')
def providers_command():
    """List image backends with cost and concurrency mode."""
    orchestrator = BatchOrchestrator()
    for backend in BackendId:
        info = orchestrator.get_provider_info(backend)
        pacing = f", {info['pacing_delay']:.0f}s pacing" if info['pacing_delay'] else ""
        click.echo(f"{info['id']:<14} {info['name']:<14} {info['cost_per_image']:<8} "
                   f"{info['mode']} (x{info['concurrency']}{pacing})")
        click.echo(f"{'':<14} {info['description']}")
        try:
            Config.validate_backend(info['id'])
            click.echo(f"{'':<14} ✅ credentials configured")
        except ConfigurationError as e:
            click.echo(f"{'':<14} ⚠️  {e}")
