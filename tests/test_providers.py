"""Tests for the Replicate client and the shared poll loop."""

import json

import httpx
import pytest

from models.queue import ProviderStatus
from services.poller import POLL_CONFIGS, PollConfig, poll_for_completion
from services.providers import ProviderError, ReplicateProvider, resolve_model_slug

from conftest import FakeProvider


def _provider(settings, handler):
    client = httpx.AsyncClient(base_url="https://api.test/v1", transport=httpx.MockTransport(handler))
    return ReplicateProvider(settings, client=client)


def test_resolve_model_slug():
    assert resolve_model_slug("nano-banana") == "google/nano-banana"
    assert resolve_model_slug("acme/custom-model") == "acme/custom-model"
    with pytest.raises(ValueError, match="Unknown model"):
        resolve_model_slug("mystery")


async def test_dispatch_posts_prediction(settings):
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": "abc123", "status": "starting"})

    provider = _provider(settings, handler)
    operation_id = await provider.dispatch("veo-3.1-fast", {"prompt": "waves"})
    await provider.aclose()

    assert operation_id == "abc123"
    assert seen["path"] == "/v1/models/google/veo-3.1-fast/predictions"
    assert seen["body"] == {"input": {"prompt": "waves"}}


async def test_poll_status_maps_envelope(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={
            "id": "abc123",
            "status": "succeeded",
            "output": ["https://cdn.test/a.png"],
            "metrics": {"predict_time": 3.2},
        })

    provider = _provider(settings, handler)
    status = await provider.poll_status("abc123")

    assert status == ProviderStatus(status="succeeded", output=["https://cdn.test/a.png"],
                                    metrics={"predict_time": 3.2})
    assert status.is_terminal


async def test_aborted_maps_to_canceled(settings):
    provider = _provider(settings, lambda request: httpx.Response(200, json={"status": "aborted"}))

    assert (await provider.poll_status("x")).status == "canceled"


async def test_http_error_raises_provider_error(settings):
    provider = _provider(settings, lambda request: httpx.Response(422, json={"detail": "bad input"}))

    with pytest.raises(ProviderError, match="Replicate API error 422: bad input") as info:
        await provider.dispatch("nano-banana", {})
    assert info.value.status_code == 422


async def test_transport_error_raises_provider_error(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = _provider(settings, handler)

    with pytest.raises(ProviderError, match="request failed"):
        await provider.poll_status("x")


def test_progress_interpolates_between_bounds():
    config = PollConfig(interval=0, max_attempts=10, progress_start=30, progress_end=90)

    assert config.progress_at(0) == 30
    assert config.progress_at(5) == 60
    assert config.progress_at(50) == 90


def test_default_poll_budgets():
    assert (POLL_CONFIGS["image"].interval, POLL_CONFIGS["image"].max_attempts) == (5, 60)
    assert (POLL_CONFIGS["video"].interval, POLL_CONFIGS["video"].max_attempts) == (10, 120)
    assert (POLL_CONFIGS["llm"].interval, POLL_CONFIGS["llm"].max_attempts) == (2, 90)


async def test_poll_reports_progress_and_heartbeats():
    provider = FakeProvider(statuses=["starting", "processing", "succeeded"], output="done")
    progress = []
    heartbeats = 0

    async def on_progress(percent, message):
        progress.append((percent, message))

    async def on_heartbeat():
        nonlocal heartbeats
        heartbeats += 1

    config = PollConfig(interval=0, max_attempts=10, progress_start=30, progress_end=90)
    result = await poll_for_completion(provider, "op", config, on_progress, on_heartbeat)

    assert result.success is True
    assert result.output == "done"
    assert heartbeats == 3
    assert progress[0] == (30, "Status: starting")
    assert progress[-1] == (100, "Completed")


@pytest.mark.parametrize("status, error, expected", [
    ("failed", "out of memory", "out of memory"),
    ("failed", None, "Prediction failed"),
    ("canceled", None, "Prediction canceled"),
])
async def test_poll_failure_results(status, error, expected):
    provider = FakeProvider(statuses=[status], error=error)

    result = await poll_for_completion(provider, "op", PollConfig(interval=0, max_attempts=5))

    assert result.success is False
    assert result.error == expected
    assert result.operation_id == "op"


async def test_poll_times_out():
    provider = FakeProvider(statuses=["processing"])

    result = await poll_for_completion(provider, "op", PollConfig(interval=0, max_attempts=3))

    assert result.success is False
    assert result.error == "Prediction timed out"
    assert provider.total_polls == 3
