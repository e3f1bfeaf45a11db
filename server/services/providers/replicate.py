"""Replicate prediction API client."""

import time
from typing import Any, Dict, Optional

import httpx

from core.config import Settings
from core.logging import get_logger, log_provider_call
from models.queue import ProviderStatus
from services.providers.base import ProviderError

logger = get_logger(__name__)

# Short model names used in node data -> Replicate model slugs
MODEL_SLUGS: Dict[str, str] = {
    "nano-banana": "google/nano-banana",
    "nano-banana-pro": "google/nano-banana-pro",
    "veo-3.1-fast": "google/veo-3.1-fast",
    "veo-3.1": "google/veo-3.1",
    "kling-motion-control": "kwaivgi/kling-v2.6-motion-control",
    "llama": "meta/meta-llama-3.1-405b-instruct",
    "reframe-image": "luma/reframe-image",
    "reframe-video": "luma/reframe-video",
    "upscale-image": "topazlabs/image-upscale",
    "upscale-video": "topazlabs/video-upscale",
    "lipsync-2": "sync/lipsync-2",
    "lipsync-2-pro": "sync/lipsync-2-pro",
    "latentsync": "bytedance/latentsync",
    "text-to-speech": "minimax/speech-02-turbo",
    "voice-change": "zsxkib/seed-vc",
    "frame-extract": "fofr/video-to-frames",
}

_STATUS_MAP = {
    "starting": "starting",
    "processing": "processing",
    "succeeded": "succeeded",
    "failed": "failed",
    "canceled": "canceled",
    "aborted": "canceled",
}


def resolve_model_slug(model: str) -> str:
    """Known short name -> slug; an ``owner/name`` value is passed through."""
    if model in MODEL_SLUGS:
        return MODEL_SLUGS[model]
    if "/" in model:
        return model
    raise ValueError(f"Unknown model: {model}")


class ReplicateProvider:
    """GenerationProvider over the Replicate HTTP API."""

    name = "replicate"

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.base_url = settings.replicate_base_url.rstrip("/")
        self.api_token = settings.replicate_api_token
        self.timeout = settings.provider_timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Content-Type": "application/json"}
            if self.api_token:
                headers["Authorization"] = f"Bearer {self.api_token}"
            self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers,
                                             timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await self._get_client().request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Replicate request timed out after {self.timeout} seconds") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Replicate request failed: {e}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise ProviderError(f"Replicate API error {response.status_code}: {detail}",
                                status_code=response.status_code)
        return response.json()

    async def dispatch(self, model: str, params: Dict[str, Any]) -> str:
        slug = resolve_model_slug(model)
        start = time.time()
        try:
            data = await self._request("POST", f"/models/{slug}/predictions", json={"input": params})
        except ProviderError as e:
            log_provider_call(logger, self.name, slug, "dispatch", False, error=str(e))
            raise
        log_provider_call(logger, self.name, slug, "dispatch", True,
                          prediction_id=data.get("id"), duration=round(time.time() - start, 3))
        return data["id"]

    async def poll_status(self, operation_id: str) -> ProviderStatus:
        data = await self._request("GET", f"/predictions/{operation_id}")
        return ProviderStatus(
            status=_STATUS_MAP.get(data.get("status"), "processing"),
            output=data.get("output"),
            error=data.get("error"),
            metrics=data.get("metrics") or {},
        )
