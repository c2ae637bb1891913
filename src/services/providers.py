"""Outbound generation provider clients."""

import logging
from typing import Optional

import httpx

from src.config import get_settings
from src.db.models import ProviderType
from src.services.errors import ProviderError

logger = logging.getLogger(__name__)

settings = get_settings()

MUSIC_CALLBACK_PATH = "/callback/music-generation"
VIDEO_CALLBACK_PATH = "/callback/video-generation"


class GenerationProvider:
    """
    Submits generation requests to a provider that answers asynchronously.

    ``submit`` returns the provider's task id; results arrive later on the
    callback URL. Any transport failure, non-2xx status, non-200 envelope
    code or missing task id raises ProviderError.
    """

    provider_type: ProviderType
    callback_path: str

    def __init__(self, api_key: str, endpoint: str, model: str, timeout: float):
        self.api_key = api_key
        self.endpoint = endpoint
        self.model = model
        self.timeout = timeout

    def callback_url(self, base_url: Optional[str] = None) -> str:
        base = (base_url or settings.callback_base_url).rstrip("/")
        return f"{base}{self.callback_path}"

    def build_body(self, payload: dict, callback_url: str) -> dict:
        raise NotImplementedError

    async def submit(self, payload: dict, callback_url: str) -> str:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        body = self.build_body(payload, callback_url)

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.endpoint, headers=headers, json=body)
        except httpx.TimeoutException as e:
            raise ProviderError(
                f"{self.provider_type.value} provider timed out after {self.timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise ProviderError(f"{self.provider_type.value} provider request failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(
                f"{self.provider_type.value} provider returned {response.status_code}: "
                f"{response.text}",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(f"{self.provider_type.value} provider returned invalid JSON") from e

        code = data.get("code") if isinstance(data, dict) else None
        if code != 200:
            message = data.get("msg") if isinstance(data, dict) else None
            raise ProviderError(
                f"{self.provider_type.value} provider returned error code {code}: {message}"
            )

        accepted = data.get("data")
        task_id = accepted.get("taskId") if isinstance(accepted, dict) else None
        if not task_id:
            raise ProviderError(f"{self.provider_type.value} provider response missing taskId")

        logger.info(f"{self.provider_type.value} provider accepted task {task_id}")
        return str(task_id)


class MusicProvider(GenerationProvider):
    provider_type = ProviderType.MUSIC
    callback_path = MUSIC_CALLBACK_PATH

    def build_body(self, payload: dict, callback_url: str) -> dict:
        return {
            "prompt": payload.get("prompt", ""),
            "style": payload.get("style", ""),
            "title": payload.get("title", ""),
            "customMode": True,
            "instrumental": False,
            "model": self.model,
            "callBackUrl": callback_url,
        }


class VideoProvider(GenerationProvider):
    provider_type = ProviderType.VIDEO
    callback_path = VIDEO_CALLBACK_PATH

    def build_body(self, payload: dict, callback_url: str) -> dict:
        return {
            "model": self.model,
            "callBackUrl": callback_url,
            "input": {
                "prompt": payload.get("prompt", ""),
                "aspect_ratio": payload.get("aspect_ratio", "portrait"),
                "n_frames": payload.get("n_frames", "15"),
            },
        }


ProviderRegistry = dict[ProviderType, GenerationProvider]


def build_provider_registry() -> ProviderRegistry:
    return {
        ProviderType.MUSIC: MusicProvider(
            api_key=settings.music_provider_api_key,
            endpoint=settings.music_provider_endpoint,
            model=settings.music_provider_model,
            timeout=settings.music_provider_timeout,
        ),
        ProviderType.VIDEO: VideoProvider(
            api_key=settings.video_provider_api_key,
            endpoint=settings.video_provider_endpoint,
            model=settings.video_provider_model,
            timeout=settings.video_provider_timeout,
        ),
    }


_registry: Optional[ProviderRegistry] = None


def get_provider_registry() -> ProviderRegistry:
    """FastAPI dependency mapping provider type to its client."""
    global _registry
    if _registry is None:
        _registry = build_provider_registry()
    return _registry
