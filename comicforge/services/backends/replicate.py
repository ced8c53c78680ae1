"""
Replicate adapter for the FLUX schnell/dev/pro family.

Predictions are created with the ``Prefer: wait`` header so most responses
carry the finished output. A prediction still running when the wait window
closes is returned as a handle and polled through its ``urls.get`` endpoint
until it finishes, so it is never resubmitted.
"""

import logging
from typing import Any, Dict, Optional

import httpx

from ...core.config import Config
from ...core.errors import (
    ConfigurationError,
    RateLimited,
    TransientBackendError,
    UnrecoverableBackendError,
)
from .base import AsyncBackendAdapter, PollResult, SubmitResult
from ..models import AsyncJobHandle, BackendId, Job, PollState

logger = logging.getLogger(__name__)

REPLICATE_PREDICTIONS_URL = "https://api.replicate.com/v1/predictions"

# Pinned model versions per family
FLUX_MODEL_VERSIONS: Dict[BackendId, str] = {
    BackendId.FLUX_SCHNELL: "c846a69991daf4c0e5d016514849d14ee5b2e6846ce6b9d6f21369e564cfe51e",
    BackendId.FLUX_DEV: "6e4a938f85952bdabcc15aa329178c4d681c52bf25a0342403287dc26944661d",
    BackendId.FLUX_PRO: "285631b5656a1839331cd9af0d82da820e2075db12046d1d061c681b2f206bc6",
}

REPLICATE_STATUS_MAP: Dict[str, PollState] = {
    "starting": PollState.QUEUED,
    "processing": PollState.RUNNING,
    "succeeded": PollState.COMPLETED,
    "failed": PollState.FAILED,
    "canceled": PollState.CANCELLED,
}


class ReplicateFluxAdapter(AsyncBackendAdapter):
    """
    Adapter for FLUX models hosted on Replicate.

    Replicate enforces a low requests-per-minute ceiling without queuing,
    so this family runs under the paced-sequential strategy.
    """

    def __init__(
        self,
        backend: BackendId,
        api_token: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        wait_seconds: int = 60,
        rate_limit_fallback: float = RateLimited.DEFAULT_RETRY_AFTER,
    ):
        """
        Initialize the adapter.

        Args:
            backend: One of FLUX_SCHNELL, FLUX_DEV, FLUX_PRO
            api_token: Replicate token (defaults to Config.REPLICATE_API_TOKEN)
            client: Optional shared httpx client
            wait_seconds: How long Replicate holds the request open (max 60)
            rate_limit_fallback: Wait used when a 429 carries no hint

        Raises:
            ConfigurationError: If the backend is not a Replicate family or no token is set
        """
        super().__init__(client=client, rate_limit_fallback=rate_limit_fallback)
        if backend not in FLUX_MODEL_VERSIONS:
            raise ConfigurationError(f"{backend.value} is not a Replicate backend")

        self.backend = backend
        self.api_token = api_token or Config.REPLICATE_API_TOKEN
        if not self.api_token:
            raise ConfigurationError("REPLICATE_API_TOKEN not found in environment")
        self.wait_seconds = wait_seconds

    def build_input(self, job: Job) -> Dict[str, Any]:
        """Model input for a job, with per-model tuning."""
        payload: Dict[str, Any] = {
            "prompt": job.prompt,
            "aspect_ratio": job.aspect_ratio.value,
        }
        if job.seed is not None:
            payload["seed"] = job.seed

        if self.backend == BackendId.FLUX_SCHNELL:
            # Schnell has no negative prompt support
            payload.update({"num_outputs": 1, "output_format": "webp", "output_quality": 90})
        else:
            if job.negative_prompt:
                payload["negative_prompt"] = job.negative_prompt
            if self.backend == BackendId.FLUX_DEV:
                payload.update({"guidance": 3.5, "num_inference_steps": 28})
            else:
                payload.update({"safety_tolerance": 2, "output_format": "webp"})

        return payload

    async def submit(self, job: Job) -> SubmitResult:
        """
        Create a prediction and wait up to ``wait_seconds`` for its output.

        Returns the artifact when the prediction finished inside the wait
        window, otherwise a handle to the running prediction.

        Raises:
            UnrecoverableBackendError: If the prediction failed or was canceled
        """
        return await self._create_prediction(job, self.wait_seconds)

    async def run_sync(self, job: Job, timeout: float) -> SubmitResult:
        """Same as ``submit`` with the wait window capped at ``timeout``."""
        return await self._create_prediction(job, max(1, min(self.wait_seconds, int(timeout))))

    async def poll(self, handle: AsyncJobHandle) -> PollResult:
        """Read a prediction once through its ``urls.get`` endpoint."""
        response = await self._request(
            "GET",
            f"{REPLICATE_PREDICTIONS_URL}/{handle.remote_id}",
            headers={"Authorization": f"Bearer {self.api_token}"},
        )
        self._raise_for_status(response)
        prediction = response.json()

        state = self._poll_state(prediction)
        if state == PollState.COMPLETED:
            return PollResult(state=state, artifact_source=self.extract_output(prediction))
        return PollResult(state=state, error=prediction.get("error"))

    async def _create_prediction(self, job: Job, wait_seconds: int) -> SubmitResult:
        logger.info(f"Submitting {job.id} to {self.backend.value}")

        response = await self._request(
            "POST",
            REPLICATE_PREDICTIONS_URL,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
                "Prefer": f"wait={wait_seconds}",
            },
            json={"version": FLUX_MODEL_VERSIONS[self.backend], "input": self.build_input(job)},
            timeout=wait_seconds + 15.0,
        )
        self._raise_for_status(response)

        prediction = response.json()
        state = self._poll_state(prediction)

        if state == PollState.COMPLETED:
            return SubmitResult(artifact_source=self.extract_output(prediction))
        if state.is_terminal:
            raise UnrecoverableBackendError(
                f"{self.backend.value} prediction {prediction.get('id')} {prediction.get('status')}: "
                f"{prediction.get('error') or 'no error detail'}"
            )

        remote_id = prediction.get("id")
        if not remote_id:
            raise TransientBackendError(f"{self.backend.value} prediction has no id: {prediction}")
        logger.info(
            f"Prediction {remote_id} for {job.id} still {prediction.get('status')} "
            f"after {wait_seconds}s, polling"
        )
        return SubmitResult(handle=AsyncJobHandle(remote_id=remote_id, backend=self.backend))

    def _poll_state(self, prediction: Dict[str, Any]) -> PollState:
        status = prediction.get("status", "")
        state = REPLICATE_STATUS_MAP.get(status)
        if state is None:
            logger.warning(
                f"Unknown Replicate status '{status}' for prediction {prediction.get('id')}, treating as running"
            )
            state = PollState.RUNNING
        return state

    def extract_output(self, prediction: Dict[str, Any]) -> str:
        """First output URL of a finished prediction."""
        output = prediction.get("output")
        if isinstance(output, list) and output:
            output = output[0]
        if isinstance(output, str) and output:
            return output
        raise UnrecoverableBackendError(
            f"{self.backend.value} prediction {prediction.get('id')} succeeded without output"
        )
