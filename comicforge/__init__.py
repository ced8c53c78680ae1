"""
ComicForge - Batch image generation and text placement for comic plans

Turns a comic plan into rendered panel artifacts across rate-limited image
backends (Replicate, RunPod), then places dialogue, narrative and SFX boxes
on each artifact.
"""

__version__ = "0.1.0"
__author__ = "ComicForge Team"
