"""
Configuration management for ComicForge
"""

import os
from typing import Dict

from dotenv import load_dotenv

from .errors import ConfigurationError

# Load environment variables
load_dotenv()


class Config:
    """Application configuration"""

    # Replicate (Flux schnell/dev/pro)
    REPLICATE_API_TOKEN: str = os.getenv('REPLICATE_API_TOKEN', '')
    REPLICATE_PACING_DELAY: float = float(os.getenv('REPLICATE_PACING_DELAY', '12'))
    REPLICATE_POLL_TIMEOUT: float = float(os.getenv('REPLICATE_POLL_TIMEOUT', '180'))

    # RunPod serverless (Flux + Kontext)
    RUNPOD_API_KEY: str = os.getenv('RUNPOD_API_KEY', '')
    RUNPOD_ENDPOINT_ID: str = os.getenv('RUNPOD_ENDPOINT_ID', '')
    RUNPOD_KONTEXT_ENDPOINT_ID: str = os.getenv('RUNPOD_KONTEXT_ENDPOINT_ID', '')
    RUNPOD_CONCURRENCY: int = int(os.getenv('RUNPOD_CONCURRENCY', '3'))
    RUNPOD_SYNC_TIMEOUT: float = float(os.getenv('RUNPOD_SYNC_TIMEOUT', '120'))
    RUNPOD_POLL_TIMEOUT: float = float(os.getenv('RUNPOD_POLL_TIMEOUT', '180'))
    KONTEXT_POLL_TIMEOUT: float = float(os.getenv('KONTEXT_POLL_TIMEOUT', '300'))
    POLL_INTERVAL: float = float(os.getenv('POLL_INTERVAL', '2'))

    # Anthropic (vision placement)
    ANTHROPIC_API_KEY: str = os.getenv('ANTHROPIC_API_KEY', '')
    VISION_MODEL: str = os.getenv('VISION_MODEL', 'claude-sonnet-4-20250514')
    VISION_PACING_DELAY: float = float(os.getenv('VISION_PACING_DELAY', '3'))
    VISION_MAX_RETRIES: int = int(os.getenv('VISION_MAX_RETRIES', '3'))
    PLACEMENT_SIZE_TOLERANCE: float = float(os.getenv('PLACEMENT_SIZE_TOLERANCE', '5'))

    # Generation defaults
    IMAGE_PROVIDER: str = os.getenv('IMAGE_PROVIDER', 'flux-dev')
    IMAGE_MAX_RETRIES: int = int(os.getenv('IMAGE_MAX_RETRIES', '5'))
    RATE_LIMIT_FALLBACK_SECONDS: float = float(os.getenv('RATE_LIMIT_FALLBACK_SECONDS', '15'))
    RATE_LIMIT_BUFFER_SECONDS: float = float(os.getenv('RATE_LIMIT_BUFFER_SECONDS', '2'))
    RETRY_BACKOFF_BASE: float = float(os.getenv('RETRY_BACKOFF_BASE', '2'))
    REFERENCE_PACING_DELAY: float = float(os.getenv('REFERENCE_PACING_DELAY', '2'))
    JOB_TIMEOUT: float = float(os.getenv('JOB_TIMEOUT', '900'))

    # Artifact storage
    IMAGES_DIR: str = os.getenv('IMAGES_DIR', 'images')
    API_BASE_URL: str = os.getenv('API_BASE_URL', '')

    # Credentials each backend family needs, keyed by backend id
    BACKEND_CREDENTIALS: Dict[str, tuple] = {
        'flux-schnell': ('REPLICATE_API_TOKEN',),
        'flux-dev': ('REPLICATE_API_TOKEN',),
        'flux-pro': ('REPLICATE_API_TOKEN',),
        'runpod-flux': ('RUNPOD_API_KEY', 'RUNPOD_ENDPOINT_ID'),
        'flux-kontext': ('RUNPOD_API_KEY', 'RUNPOD_KONTEXT_ENDPOINT_ID'),
    }

    @classmethod
    def validate_backend(cls, backend: str) -> bool:
        """
        Validate that credentials for a backend are configured.

        Args:
            backend: Backend id (e.g., 'flux-dev', 'runpod-flux')

        Returns:
            True if every required setting is present

        Raises:
            ConfigurationError: If the backend is unknown or settings are missing
        """
        if backend not in cls.BACKEND_CREDENTIALS:
            raise ConfigurationError(f"Unknown image backend: {backend}")

        missing = [key for key in cls.BACKEND_CREDENTIALS[backend] if not getattr(cls, key)]
        if missing:
            raise ConfigurationError(
                f"Missing configuration for {backend}: {', '.join(missing)}"
            )

        return True
