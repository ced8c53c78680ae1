"""
Backend adapter contract.

Synchronous backends implement ``submit`` and hand back an artifact source
(URL, data URL or raw base64). Asynchronous backends additionally implement
``run_sync`` (bounded synchronous fast path) and ``poll``; their ``submit``
returns an AsyncJobHandle instead of an artifact.

Adapters translate every transport and HTTP failure into the error taxonomy
in comicforge.core.errors. Nothing above this layer inspects status codes or
message text.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from ...core.errors import (
    JobTimeout,
    RateLimited,
    TransientBackendError,
    TransportError,
    UnrecoverableBackendError,
    ValidationError,
)
from ..models import AsyncJobHandle, BackendId, Job, PollState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of a submit: an artifact source, or a handle to poll."""
    artifact_source: Optional[str] = None
    handle: Optional[AsyncJobHandle] = None


@dataclass(frozen=True)
class PollResult:
    """One observation of a remote job."""
    state: PollState
    artifact_source: Optional[str] = None
    error: Optional[str] = None


class BackendAdapter(ABC):
    """Uniform submit/extract contract over one backend family."""

    backend: BackendId

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        rate_limit_fallback: float = RateLimited.DEFAULT_RETRY_AFTER,
    ):
        self._client = client
        self._owns_client = client is None
        self.rate_limit_fallback = rate_limit_fallback

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    @abstractmethod
    async def submit(self, job: Job) -> SubmitResult:
        """
        Submit one job. Called exactly once per attempt.

        Raises:
            RateLimited, TransientBackendError, ValidationError,
            UnrecoverableBackendError
        """

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Send a request, mapping timeouts into JobTimeout and other transport errors into TransportError."""
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise JobTimeout(f"{self.backend.value} request timed out: {e!r}") from e
        except httpx.TransportError as e:
            raise TransportError(f"{self.backend.value} transport error: {e}") from e

    def _raise_for_status(self, response: httpx.Response) -> None:
        """
        Map a non-2xx response into the error taxonomy.

        429 becomes RateLimited with the backend's wait hint, 400/422 a
        ValidationError, other 4xx an UnrecoverableBackendError and 5xx a
        TransientBackendError.
        """
        status = response.status_code
        if status < 400:
            return

        detail = _error_detail(response)
        message = f"{self.backend.value} returned {status}: {detail}"

        if status == 429:
            raise RateLimited(message, retry_after=self._retry_after_hint(response))
        if status in (400, 422):
            raise ValidationError(message)
        if status in (408, 409, 425) or status >= 500:
            raise TransientBackendError(message)
        raise UnrecoverableBackendError(message)

    def _retry_after_hint(self, response: httpx.Response) -> float:
        """Wait hint from the JSON body's ``retry_after`` or the Retry-After header."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, Mapping):
            value = body.get("retry_after")
            if isinstance(value, (int, float)) and value >= 0:
                return float(value)

        header = response.headers.get("retry-after")
        if header:
            try:
                return float(header)
            except ValueError:
                logger.debug(f"Ignoring non-numeric Retry-After header: {header}")

        return self.rate_limit_fallback


class AsyncBackendAdapter(BackendAdapter):
    """Adapter for queued backends that need polling."""

    @abstractmethod
    async def run_sync(self, job: Job, timeout: float) -> SubmitResult:
        """
        Synchronous fast path bounded by ``timeout``.

        Returns an artifact source when the backend finished in time, or a
        handle when it accepted the job but is still working on it.

        Raises:
            JobTimeout: If no response arrived within ``timeout``
        """

    @abstractmethod
    async def poll(self, handle: AsyncJobHandle) -> PollResult:
        """Fetch the current state of a remote job."""


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(body, Mapping):
        for key in ("detail", "error", "message"):
            if body.get(key):
                return str(body[key])[:200]
    return str(body)[:200]
