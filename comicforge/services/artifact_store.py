"""
Artifact Store - writes rendered images to local storage and reads them back.

Filenames are ``md5(prompt + time_ns)[:12]`` plus the detected extension, so
concurrent writers never collide and no locking is needed. Artifact refs are
``{public_base_url}/images/{filename}`` when a base URL is configured, or the
local path otherwise.
"""

import asyncio
import base64
import binascii
import hashlib
import io
import logging
import time
from pathlib import Path
from typing import Optional

import httpx
from PIL import Image, UnidentifiedImageError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.config import Config
from ..core.errors import TransientBackendError, TransportError, ValidationError

logger = logging.getLogger(__name__)

_FORMAT_EXTENSIONS = {
    "PNG": ".png",
    "JPEG": ".jpg",
    "WEBP": ".webp",
    "GIF": ".gif",
}


class ArtifactStore:
    """Hash-named, append-only local storage for generated images."""

    def __init__(
        self,
        images_dir: Optional[str] = None,
        public_base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the store.

        Args:
            images_dir: Directory for image files (defaults to Config.IMAGES_DIR)
            public_base_url: Base URL the images are served under (defaults to Config.API_BASE_URL)
            client: Optional shared httpx client for downloads
        """
        self.images_dir = Path(images_dir or Config.IMAGES_DIR)
        base = public_base_url if public_base_url is not None else Config.API_BASE_URL
        self.public_base_url = base.rstrip("/")
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=60.0, follow_redirects=True)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def save(self, source: str, seed_text: str) -> str:
        """
        Persist a backend's image output.

        Args:
            source: Image URL, data URL, or raw base64 string
            seed_text: Job content used to derive the filename (usually the prompt)

        Returns:
            Artifact ref for the stored image

        Raises:
            TransientBackendError: If the source cannot be fetched or is not an image
        """
        data = await self._read_source(source)
        extension = self._detect_extension(data)

        digest = hashlib.md5(f"{seed_text}{time.time_ns()}".encode()).hexdigest()[:12]
        filename = f"{digest}{extension}"
        path = self.images_dir / filename

        await asyncio.to_thread(self._write, path, data)
        logger.info(f"Saved artifact {filename} ({len(data) / 1024:.0f} KB)")

        if self.public_base_url:
            return f"{self.public_base_url}/images/{filename}"
        return str(path)

    async def load(self, artifact_ref: str) -> bytes:
        """
        Fetch the bytes behind an artifact ref.

        Accepts local paths, refs under this store's public URL, other
        http(s) URLs and data URLs.

        Raises:
            ValidationError: If a public-URL ref resolves outside images_dir
        """
        if artifact_ref.startswith("data:"):
            return self._decode_base64(artifact_ref.split(",", 1)[-1])

        prefix = f"{self.public_base_url}/images/" if self.public_base_url else None
        if prefix and artifact_ref.startswith(prefix):
            root = self.images_dir.resolve()
            local = (root / artifact_ref[len(prefix):]).resolve()
            if not local.is_relative_to(root):
                raise ValidationError(f"Artifact ref points outside the images directory: {artifact_ref}")
            return await asyncio.to_thread(local.read_bytes)

        if artifact_ref.startswith(("http://", "https://")):
            return await self._download(artifact_ref)

        return await asyncio.to_thread(Path(artifact_ref).read_bytes)

    async def _read_source(self, source: str) -> bytes:
        if source.startswith(("http://", "https://")):
            try:
                return await self._download(source)
            except httpx.HTTPStatusError as e:
                raise TransientBackendError(f"Image download failed ({e.response.status_code}): {source}") from e
            except httpx.TransportError as e:
                raise TransportError(f"Image download failed: {e}") from e
        if source.startswith("data:"):
            source = source.split(",", 1)[-1]
        return self._decode_base64(source)

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=4),
        reraise=True,
    )
    async def _download(self, url: str) -> bytes:
        response = await self.client.get(url)
        response.raise_for_status()
        return response.content

    @staticmethod
    def _decode_base64(payload: str) -> bytes:
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise TransientBackendError(f"Backend returned invalid base64 image data: {e}") from e

    @staticmethod
    def _detect_extension(data: bytes) -> str:
        try:
            with Image.open(io.BytesIO(data)) as image:
                image_format = image.format
        except UnidentifiedImageError as e:
            raise TransientBackendError("Backend output is not a recognizable image") from e
        return _FORMAT_EXTENSIONS.get(image_format or "", ".png")

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
