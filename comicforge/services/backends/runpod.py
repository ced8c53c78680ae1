"""
RunPod serverless adapters (FLUX text-to-image and FLUX Kontext).

RunPod queues jobs internally, so this family runs under the pooled-parallel
strategy. Each job is a ComfyUI workflow. ``run_sync`` hits ``/runsync``
for the warm-worker fast path; ``submit`` + ``poll`` use ``/run`` and
``/status/{id}`` once the fast path times out.
"""

import base64
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ...core.config import Config
from ...core.errors import (
    ConfigurationError,
    RateLimited,
    TransientBackendError,
    UnrecoverableBackendError,
    ValidationError,
)
from .base import AsyncBackendAdapter, PollResult, SubmitResult
from ..models import AsyncJobHandle, BackendId, Job, PollState

logger = logging.getLogger(__name__)

RUNPOD_API_BASE = "https://api.runpod.ai/v2"

RUNPOD_STATUS_MAP: Dict[str, PollState] = {
    "IN_QUEUE": PollState.QUEUED,
    "IN_PROGRESS": PollState.RUNNING,
    "COMPLETED": PollState.COMPLETED,
    "FAILED": PollState.FAILED,
    # RunPod's own execution timeout is a backend failure, not our deadline
    "TIMED_OUT": PollState.FAILED,
    "CANCELLED": PollState.CANCELLED,
}

# Short base64 blobs in ``message`` are status text, not images
MIN_MESSAGE_IMAGE_LENGTH = 100

ReferenceLoader = Callable[[str], Awaitable[bytes]]


def extract_image_source(output: Any) -> Optional[str]:
    """
    Pull the image out of a RunPod worker's ``output`` payload.

    Workers disagree on the shape, so several fields are tried in order:
    ``images[0]`` (string or object with data/image/url), ``image_url``,
    ``image``, ``url``, then a long ``message``.
    """
    if isinstance(output, str):
        return output or None
    if not isinstance(output, dict):
        return None

    images = output.get("images")
    if isinstance(images, list) and images:
        first = images[0]
        if isinstance(first, str):
            return first
        if isinstance(first, dict):
            for key in ("data", "image", "url"):
                if first.get(key):
                    return first[key]

    for key in ("image_url", "image", "url"):
        if isinstance(output.get(key), str) and output[key]:
            return output[key]

    message = output.get("message")
    if isinstance(message, str) and len(message) > MIN_MESSAGE_IMAGE_LENGTH:
        return message

    return None


class RunPodFluxAdapter(AsyncBackendAdapter):
    """Async adapter for a RunPod serverless FLUX endpoint."""

    backend = BackendId.RUNPOD_FLUX

    def __init__(
        self,
        api_key: Optional[str] = None,
        endpoint_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limit_fallback: float = RateLimited.DEFAULT_RETRY_AFTER,
    ):
        """
        Initialize the adapter.

        Args:
            api_key: RunPod API key (defaults to Config.RUNPOD_API_KEY)
            endpoint_id: Serverless endpoint (defaults to Config.RUNPOD_ENDPOINT_ID)
            client: Optional shared httpx client
            rate_limit_fallback: Wait used when a 429 carries no hint

        Raises:
            ConfigurationError: If the key or endpoint is missing
        """
        super().__init__(client=client, rate_limit_fallback=rate_limit_fallback)
        self.api_key = api_key or Config.RUNPOD_API_KEY
        self.endpoint_id = endpoint_id or self._default_endpoint()
        if not self.api_key:
            raise ConfigurationError("RUNPOD_API_KEY not found in environment")
        if not self.endpoint_id:
            raise ConfigurationError(f"No RunPod endpoint configured for {self.backend.value}")

    def _default_endpoint(self) -> str:
        return Config.RUNPOD_ENDPOINT_ID

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _url(self, path: str) -> str:
        return f"{RUNPOD_API_BASE}/{self.endpoint_id}/{path}"

    async def build_input(self, job: Job) -> Dict[str, Any]:
        """ComfyUI text-to-image workflow (flux1-dev fp8 checkpoint)."""
        width, height = job.aspect_ratio.dimensions
        seed = job.seed if job.seed is not None else random.randrange(2 ** 31 - 1)
        return {
            "workflow": {
                "4": {"class_type": "CheckpointLoaderSimple",
                      "inputs": {"ckpt_name": "flux1-dev-fp8.safetensors"}},
                "6": {"class_type": "CLIPTextEncode",
                      "inputs": {"text": job.prompt, "clip": ["4", 1]}},
                "7": {"class_type": "CLIPTextEncode",
                      "inputs": {"text": job.negative_prompt or "", "clip": ["4", 1]}},
                "5": {"class_type": "EmptyLatentImage",
                      "inputs": {"width": width, "height": height, "batch_size": 1}},
                "3": {"class_type": "KSampler",
                      "inputs": {"seed": seed, "steps": 20, "cfg": 1.0,
                                 "sampler_name": "euler", "scheduler": "simple", "denoise": 1,
                                 "model": ["4", 0], "positive": ["6", 0],
                                 "negative": ["7", 0], "latent_image": ["5", 0]}},
                "8": {"class_type": "VAEDecode",
                      "inputs": {"samples": ["3", 0], "vae": ["4", 2]}},
                "9": {"class_type": "SaveImage",
                      "inputs": {"filename_prefix": "comicforge", "images": ["8", 0]}},
            }
        }

    async def run_sync(self, job: Job, timeout: float) -> SubmitResult:
        """
        Try ``/runsync`` within ``timeout`` seconds.

        Raises:
            JobTimeout: If RunPod did not answer in time (caller falls back to polling)
            UnrecoverableBackendError: If the job explicitly failed
        """
        logger.info(f"Trying runsync for {job.id} on {self.backend.value} (timeout {timeout:.0f}s)")
        response = await self._request(
            "POST",
            self._url("runsync"),
            headers=self._headers,
            json={"input": await self.build_input(job)},
            timeout=timeout,
        )
        self._raise_for_status(response)
        body = response.json()

        observation = self._to_poll_result(body)
        if observation.state == PollState.COMPLETED:
            return SubmitResult(artifact_source=self._require_image(body, job.id))
        if observation.state.is_terminal:
            raise UnrecoverableBackendError(
                f"{self.backend.value} job {body.get('id')} {observation.state.value}: {observation.error}"
            )

        # Accepted but still running once runsync's own wait elapsed
        return SubmitResult(handle=self._handle(body))

    async def submit(self, job: Job) -> SubmitResult:
        """Queue a job with ``/run`` and return its handle."""
        logger.info(f"Submitting {job.id} to {self.backend.value} /run")
        response = await self._request(
            "POST",
            self._url("run"),
            headers=self._headers,
            json={"input": await self.build_input(job)},
        )
        self._raise_for_status(response)
        return SubmitResult(handle=self._handle(response.json()))

    async def poll(self, handle: AsyncJobHandle) -> PollResult:
        """Read ``/status/{id}`` once."""
        response = await self._request(
            "GET",
            self._url(f"status/{handle.remote_id}"),
            headers=self._headers,
        )
        self._raise_for_status(response)
        body = response.json()

        observation = self._to_poll_result(body)
        if observation.state == PollState.COMPLETED:
            return PollResult(
                state=PollState.COMPLETED,
                artifact_source=self._require_image(body, handle.remote_id),
            )
        return observation

    def _handle(self, body: Dict[str, Any]) -> AsyncJobHandle:
        remote_id = body.get("id")
        if not remote_id:
            raise TransientBackendError(f"{self.backend.value} response has no job id: {body}")
        return AsyncJobHandle(remote_id=remote_id, backend=self.backend)

    def _to_poll_result(self, body: Dict[str, Any]) -> PollResult:
        status = body.get("status", "")
        state = RUNPOD_STATUS_MAP.get(status)
        if state is None:
            logger.warning(f"Unknown RunPod status '{status}' for job {body.get('id')}, treating as running")
            state = PollState.RUNNING
        return PollResult(state=state, error=body.get("error"))

    def _require_image(self, body: Dict[str, Any], label: str) -> str:
        source = extract_image_source(body.get("output"))
        if not source:
            raise UnrecoverableBackendError(f"{self.backend.value} job {label} completed without an image")
        return source


class RunPodKontextAdapter(RunPodFluxAdapter):
    """
    FLUX Kontext on RunPod: generates new compositions that keep the identity
    of a reference image.

    Kontext workers are slow to warm, so the orchestrator skips the runsync
    fast path for this family and goes straight to submit-then-poll.
    """

    backend = BackendId.FLUX_KONTEXT

    def __init__(
        self,
        reference_loader: ReferenceLoader,
        api_key: Optional[str] = None,
        endpoint_id: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        rate_limit_fallback: float = RateLimited.DEFAULT_RETRY_AFTER,
    ):
        """
        Args:
            reference_loader: Coroutine returning the bytes behind an artifact ref
            api_key: RunPod API key (defaults to Config.RUNPOD_API_KEY)
            endpoint_id: Kontext endpoint (defaults to Config.RUNPOD_KONTEXT_ENDPOINT_ID)
            client: Optional shared httpx client
            rate_limit_fallback: Wait used when a 429 carries no hint
        """
        super().__init__(
            api_key=api_key,
            endpoint_id=endpoint_id,
            client=client,
            rate_limit_fallback=rate_limit_fallback,
        )
        self.reference_loader = reference_loader

    def _default_endpoint(self) -> str:
        return Config.RUNPOD_KONTEXT_ENDPOINT_ID

    async def build_input(self, job: Job) -> Dict[str, Any]:
        """ComfyUI Kontext workflow with the job's reference attached through ReferenceLatent."""
        if not job.reference_artifact:
            raise ValidationError(f"Job {job.id} has no reference artifact for {self.backend.value}")

        try:
            reference = await self.reference_loader(job.reference_artifact)
        except (OSError, httpx.HTTPError) as e:
            raise TransientBackendError(f"Could not load reference for {job.id}: {e}") from e

        width, height = job.aspect_ratio.dimensions
        seed = job.seed if job.seed is not None else random.randrange(2 ** 31 - 1)
        return {
            "images": [
                {"name": "reference.png", "image": base64.b64encode(reference).decode("ascii")}
            ],
            "workflow": {
                "1": {"class_type": "UNETLoader",
                      "inputs": {"unet_name": "flux1-kontext-dev-fp8.safetensors",
                                 "weight_dtype": "fp8_e4m3fn"}},
                "2": {"class_type": "DualCLIPLoader",
                      "inputs": {"clip_name1": "clip_l.safetensors",
                                 "clip_name2": "t5xxl_fp8_e4m3fn.safetensors", "type": "flux"}},
                "3": {"class_type": "VAELoader", "inputs": {"vae_name": "ae.safetensors"}},
                "4": {"class_type": "LoadImage", "inputs": {"image": "reference.png"}},
                "5": {"class_type": "FluxKontextImageScale", "inputs": {"image": ["4", 0]}},
                "6": {"class_type": "VAEEncode", "inputs": {"pixels": ["5", 0], "vae": ["3", 0]}},
                "7": {"class_type": "CLIPTextEncode", "inputs": {"text": job.prompt, "clip": ["2", 0]}},
                "8": {"class_type": "ReferenceLatent",
                      "inputs": {"conditioning": ["7", 0], "latent": ["6", 0]}},
                "9": {"class_type": "EmptySD3LatentImage",
                      "inputs": {"width": width, "height": height, "batch_size": 1}},
                "10": {"class_type": "KSampler",
                       "inputs": {"model": ["1", 0], "positive": ["8", 0], "negative": ["8", 0],
                                  "latent_image": ["9", 0], "seed": seed, "steps": 28, "cfg": 3.5,
                                  "sampler_name": "euler", "scheduler": "simple", "denoise": 1.0}},
                "11": {"class_type": "VAEDecode", "inputs": {"samples": ["10", 0], "vae": ["3", 0]}},
                "12": {"class_type": "SaveImage",
                       "inputs": {"images": ["11", 0], "filename_prefix": "comicforge_ref"}},
            },
        }
