"""
ComicForge CLI - Main entry point
"""

import click

from ..core.observability import setup_logfire
from .generate import batch_command, providers_command, reference_command, render_command
from .place import place_command


@click.group()
@click.version_option(version='0.1.0')
def cli():
    """
    ComicForge - Batch comic panel generation and lettering

    Generate panel images across Replicate and RunPod FLUX backends with
    pacing, pooling and retries, then place dialogue and narrative boxes.
    """
    setup_logfire()


# Register commands
cli.add_command(render_command)
cli.add_command(batch_command)
cli.add_command(reference_command)
cli.add_command(place_command)
cli.add_command(providers_command)


if __name__ == '__main__':
    cli()
