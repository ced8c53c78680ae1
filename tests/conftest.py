"""
Shared fixtures for ComicForge tests.
"""

import io
from typing import List

import pytest
from PIL import Image


class FakeClock:
    """Monotonic clock whose sleep advances time instantly and records each delay."""

    def __init__(self, start: float = 0.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    """Fresh FakeClock per test."""
    return FakeClock()


def make_png(width: int = 64, height: int = 64, color: str = "blue") -> bytes:
    """Create a small valid PNG."""
    img = Image.new("RGB", (width, height), color=color)
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_png()
