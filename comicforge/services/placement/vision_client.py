"""
Vision Client - Claude vision calls for text placement analysis.

Maps Anthropic SDK errors into the comicforge error taxonomy so placement
calls go through the same RetryPolicy as image generation. The SDK's own
retries are disabled for that reason.
"""

import base64
import io
import logging
from typing import Optional, Tuple

import anthropic
from PIL import Image, UnidentifiedImageError

from ...core.config import Config
from ...core.errors import (
    ConfigurationError,
    JobTimeout,
    RateLimited,
    TransientBackendError,
    TransportError,
    UnrecoverableBackendError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Anthropic rejects images above 5 MB; the long edge is capped to keep uploads small
MAX_IMAGE_BYTES = 5 * 1024 * 1024
MAX_IMAGE_EDGE = 1568

_MEDIA_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "WEBP": "image/webp",
    "GIF": "image/gif",
}


def prepare_image(data: bytes) -> Tuple[bytes, str]:
    """
    Detect an image's media type and shrink it if it is too large to upload.

    Args:
        data: Raw image bytes

    Returns:
        Tuple of (image bytes, media type)

    Raises:
        ValidationError: If the bytes are not a readable image
    """
    try:
        image = Image.open(io.BytesIO(data))
        image_format = image.format or ""
    except UnidentifiedImageError as e:
        raise ValidationError("Artifact is not a readable image") from e

    media_type = _MEDIA_TYPES.get(image_format)
    if media_type and len(data) <= MAX_IMAGE_BYTES:
        return data, media_type

    logger.info(f"Re-encoding {image_format or 'unknown'} image ({len(data) / 1024:.0f} KB) for vision upload")
    image.thumbnail((MAX_IMAGE_EDGE, MAX_IMAGE_EDGE))
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=90)
    return buffer.getvalue(), "image/jpeg"


class VisionClient:
    """Thin async wrapper over Claude's messages API for image + prompt calls."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[anthropic.AsyncAnthropic] = None,
        max_tokens: int = 2000,
        rate_limit_fallback: float = RateLimited.DEFAULT_RETRY_AFTER,
    ):
        """
        Initialize the client.

        Args:
            api_key: Anthropic key (defaults to Config.ANTHROPIC_API_KEY)
            model: Vision model (defaults to Config.VISION_MODEL)
            client: Optional pre-built AsyncAnthropic client
            max_tokens: Response token limit
            rate_limit_fallback: Wait used when a 429 carries no Retry-After

        Raises:
            ConfigurationError: If no client is given and no API key is configured
        """
        self.model = model or Config.VISION_MODEL
        self.max_tokens = max_tokens
        self.rate_limit_fallback = rate_limit_fallback

        if client is not None:
            self.client = client
        else:
            key = api_key or Config.ANTHROPIC_API_KEY
            if not key:
                raise ConfigurationError("ANTHROPIC_API_KEY not found in environment")
            self.client = anthropic.AsyncAnthropic(api_key=key, max_retries=0)

    async def describe(self, image: bytes, prompt: str) -> str:
        """
        Send an image and a prompt, returning the text of the reply.

        Raises:
            RateLimited, TransportError, JobTimeout, TransientBackendError,
            ValidationError, UnrecoverableBackendError
        """
        image_bytes, media_type = prepare_image(image)

        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                messages=[{
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": media_type,
                                "data": base64.b64encode(image_bytes).decode("ascii"),
                            },
                        },
                        {"type": "text", "text": prompt},
                    ],
                }],
            )
        except anthropic.RateLimitError as e:
            raise RateLimited(f"Vision rate limited: {e}", retry_after=self._retry_after(e)) from e
        except anthropic.APITimeoutError as e:
            raise JobTimeout(f"Vision request timed out: {e}") from e
        except anthropic.APIConnectionError as e:
            raise TransportError(f"Vision connection error: {e}") from e
        except anthropic.InternalServerError as e:
            raise TransientBackendError(f"Vision backend error: {e}") from e
        except anthropic.BadRequestError as e:
            raise ValidationError(f"Vision request rejected: {e}") from e
        except anthropic.APIStatusError as e:
            raise UnrecoverableBackendError(f"Vision request failed ({e.status_code}): {e}") from e

        return "".join(block.text for block in message.content if getattr(block, "type", None) == "text")

    def _retry_after(self, error: anthropic.RateLimitError) -> float:
        header = error.response.headers.get("retry-after") if error.response is not None else None
        if header:
            try:
                return float(header)
            except ValueError:
                logger.debug(f"Ignoring non-numeric retry-after header: {header}")
        return self.rate_limit_fallback
