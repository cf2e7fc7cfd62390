"""HTTP client for the internal generation endpoint that fronts the video provider."""

import uuid
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from videobatch.core.config import settings

logger = structlog.get_logger()

RETRYABLE_MARKERS = ("timeout", "temporarily", "rate", "429", "503", "network", "retryable")


def is_retryable_error(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in RETRYABLE_MARKERS)


class GeneratorError(Exception):
    def __init__(self, message: str, retryable: bool | None = None) -> None:
        super().__init__(message)
        self.retryable = is_retryable_error(message) if retryable is None else retryable


@dataclass
class GenerationRequest:
    task_id: uuid.UUID
    prompt: str
    model: str | None = None
    aspect_ratio: str | None = None
    duration: int | None = None
    reference_url: str | None = None
    meta: dict[str, Any] | None = None

    def to_payload(self) -> dict[str, Any]:
        return {
            "task_id": str(self.task_id),
            "prompt": self.prompt,
            "model": self.model,
            "aspect_ratio": self.aspect_ratio,
            "duration": self.duration,
            "reference_url": self.reference_url,
            "meta": self.meta,
        }


class GeneratorClient:
    def __init__(
        self,
        endpoint: str | None = None,
        secret: str | None = None,
        timeout: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.endpoint = endpoint if endpoint is not None else settings.generate_endpoint
        self.secret = secret if secret is not None else settings.generate_secret
        self.timeout = timeout or settings.generate_timeout_seconds
        self._client = client

    def generate(self, request: GenerationRequest) -> str:
        """Generate one video and return its URL.

        Raises:
            GeneratorError: on a missing endpoint, transport error, non-2xx
                response or a response without a video URL
        """
        if not self.endpoint:
            raise GeneratorError("NO_GENERATE_ENDPOINT_CONFIGURED", retryable=False)

        headers = {"content-type": "application/json"}
        if self.secret:
            headers["x-internal-secret"] = self.secret

        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(self.endpoint, json=request.to_payload(), headers=headers)
        except httpx.TimeoutException as e:
            raise GeneratorError(f"timeout: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise GeneratorError(f"network error: {e}", retryable=True) from e
        finally:
            if self._client is None:
                client.close()

        if response.status_code >= 400:
            raise GeneratorError(f"GENERATOR_HTTP_{response.status_code}:{response.text[:200]}")

        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            raise GeneratorError("GENERATOR_NO_VIDEO_URL", retryable=False)
        video_url = data.get("video_url") or data.get("url")
        if not video_url:
            raise GeneratorError("GENERATOR_NO_VIDEO_URL", retryable=False)
        return str(video_url)
