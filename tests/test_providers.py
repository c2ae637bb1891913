"""Tests for outbound provider clients."""

import json

import httpx
import pytest

from src.services import providers as providers_module
from src.services.errors import ProviderError
from src.services.providers import MusicProvider, VideoProvider


@pytest.fixture
def provider_transport(monkeypatch):
    """Route the clients' httpx calls to a canned handler."""
    state = {"requests": [], "response": httpx.Response(200, json={"code": 200, "data": {"taskId": "t-1"}})}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        response = state["response"]
        if isinstance(response, Exception):
            raise response
        return response

    real_client = httpx.AsyncClient

    def client_factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(providers_module.httpx, "AsyncClient", client_factory)
    return state


def music() -> MusicProvider:
    return MusicProvider(api_key="k", endpoint="https://music.test/generate", model="V5", timeout=5)


@pytest.mark.asyncio
async def test_music_submit_returns_task_id(provider_transport):
    task_id = await music().submit(
        {"prompt": "a calm morning", "title": "Morning"}, "https://svc/callback/music-generation"
    )

    assert task_id == "t-1"
    request = provider_transport["requests"][0]
    assert request.headers["Authorization"] == "Bearer k"
    body = json.loads(request.content)
    assert body["prompt"] == "a calm morning"
    assert body["callBackUrl"] == "https://svc/callback/music-generation"
    assert body["model"] == "V5"


@pytest.mark.asyncio
async def test_video_body_nests_input(provider_transport):
    provider = VideoProvider(api_key="k", endpoint="https://video.test/task", model="sora", timeout=5)

    await provider.submit({"prompt": "waves"}, "https://svc/callback/video-generation")

    body = json.loads(provider_transport["requests"][0].content)
    assert body["model"] == "sora"
    assert body["input"]["prompt"] == "waves"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="upstream down"),
        httpx.Response(200, json={"code": 429, "msg": "quota exceeded"}),
        httpx.Response(200, json={"code": 200, "data": {}}),
        httpx.Response(200, json={"code": 200, "data": ["unexpected"]}),
        httpx.Response(200, text="not json"),
    ],
)
async def test_rejections_raise_provider_error(provider_transport, response):
    provider_transport["response"] = response

    with pytest.raises(ProviderError):
        await music().submit({"prompt": "x"}, "https://svc/cb")


@pytest.mark.asyncio
async def test_transport_errors_raise_provider_error(provider_transport):
    provider_transport["response"] = httpx.ConnectError("connection refused")

    with pytest.raises(ProviderError, match="request failed"):
        await music().submit({"prompt": "x"}, "https://svc/cb")


def test_callback_url_uses_base():
    assert music().callback_url("https://svc/") == "https://svc/callback/music-generation"
