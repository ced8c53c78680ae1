"""
Tests for ArtifactStore.

Tests cover:
- Saving base64, data URL and downloaded images
- Extension detection with Pillow
- Public URL refs and loading them back
- Invalid backend output
"""

import base64
import io

import httpx
import pytest
from PIL import Image

from comicforge.core.errors import TransientBackendError, ValidationError
from comicforge.services.artifact_store import ArtifactStore


def _jpeg_bytes() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (32, 32), color="red").save(buf, format="JPEG")
    return buf.getvalue()


class TestSave:
    """Tests for ArtifactStore.save()."""

    @pytest.mark.asyncio
    async def test_saves_raw_base64_png(self, tmp_path, png_bytes):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")

        ref = await store.save(base64.b64encode(png_bytes).decode(), "a lighthouse")

        assert ref.endswith(".png")
        assert (tmp_path / ref.rsplit("/", 1)[-1]).read_bytes() == png_bytes

    @pytest.mark.asyncio
    async def test_saves_data_url_with_detected_extension(self, tmp_path):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")
        data_url = "data:image/jpeg;base64," + base64.b64encode(_jpeg_bytes()).decode()

        ref = await store.save(data_url, "a red square")

        assert ref.endswith(".jpg")

    @pytest.mark.asyncio
    async def test_public_base_url_refs(self, tmp_path, png_bytes):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="https://cdn.example.com/")

        ref = await store.save(base64.b64encode(png_bytes).decode(), "prompt")

        assert ref.startswith("https://cdn.example.com/images/")
        assert await store.load(ref) == png_bytes

    @pytest.mark.asyncio
    async def test_same_prompt_never_collides(self, tmp_path, png_bytes):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")
        payload = base64.b64encode(png_bytes).decode()

        refs = {await store.save(payload, "same prompt") for _ in range(5)}

        assert len(refs) == 5

    @pytest.mark.asyncio
    async def test_downloads_url_sources(self, tmp_path, png_bytes):
        def handler(request):
            assert request.url.host == "replicate.delivery"
            return httpx.Response(200, content=png_bytes)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="", client=client)

        ref = await store.save("https://replicate.delivery/out.png", "prompt")

        assert await store.load(ref) == png_bytes

    @pytest.mark.asyncio
    async def test_download_http_error_is_transient(self, tmp_path):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404)))
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="", client=client)

        with pytest.raises(TransientBackendError, match="404"):
            await store.save("https://replicate.delivery/missing.png", "prompt")

    @pytest.mark.asyncio
    async def test_invalid_base64_is_transient(self, tmp_path):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")

        with pytest.raises(TransientBackendError):
            await store.save("not base64 at all!!", "prompt")

    @pytest.mark.asyncio
    async def test_non_image_payload_is_transient(self, tmp_path):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")

        with pytest.raises(TransientBackendError):
            await store.save(base64.b64encode(b"plain text, not pixels").decode(), "prompt")
        assert list(tmp_path.iterdir()) == []


class TestLoad:
    """Tests for ArtifactStore.load()."""

    @pytest.mark.asyncio
    async def test_loads_local_path_and_data_url(self, tmp_path, png_bytes):
        path = tmp_path / "panel.png"
        path.write_bytes(png_bytes)
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")

        assert await store.load(str(path)) == png_bytes
        assert await store.load("data:image/png;base64," + base64.b64encode(png_bytes).decode()) == png_bytes

    @pytest.mark.asyncio
    async def test_missing_file_raises_os_error(self, tmp_path):
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="")

        with pytest.raises(OSError):
            await store.load(str(tmp_path / "nope.png"))

    @pytest.mark.asyncio
    async def test_loads_public_url_ref_from_images_dir(self, tmp_path, png_bytes):
        (tmp_path / "panel.png").write_bytes(png_bytes)
        store = ArtifactStore(images_dir=str(tmp_path), public_base_url="https://cdn.example.com")

        assert await store.load("https://cdn.example.com/images/panel.png") == png_bytes

    @pytest.mark.asyncio
    async def test_public_url_ref_cannot_escape_images_dir(self, tmp_path, png_bytes):
        images = tmp_path / "images"
        images.mkdir()
        (tmp_path / "secret.png").write_bytes(png_bytes)
        store = ArtifactStore(images_dir=str(images), public_base_url="https://cdn.example.com")

        with pytest.raises(ValidationError, match="outside the images directory"):
            await store.load("https://cdn.example.com/images/../secret.png")
