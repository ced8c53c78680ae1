"""
Setup configuration for comicforge package.
"""

from setuptools import setup, find_packages

setup(
    name="comicforge",
    version="0.1.0",
    description="Batch comic panel generation across FLUX backends with text placement",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.10",
    install_requires=[
        "httpx>=0.25",
        "tenacity>=8.2",
        "pydantic>=2.0",
        "python-dotenv>=1.0",
        "click>=8.1",
        "Pillow>=10.0",
        "logfire>=0.30",
        "anthropic>=0.30",
    ],
    extras_require={
        "test": [
            "pytest>=7.4",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "comicforge=comicforge.cli.main:cli",
        ],
    },
)
