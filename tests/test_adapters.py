import base64
from unittest.mock import patch

import httpx
import pytest

from enhancer.adapters.inference import InferenceTimeout, ReplicateInference, decode_data_url
from enhancer.adapters.storage import SupabaseStorage
from enhancer.core.config import Settings
from enhancer.core.errors import InvalidRequest, NotConfigured, UpstreamUnavailable

REAL_CLIENT = httpx.AsyncClient
SETTINGS = Settings(
    REPLICATE_API_TOKEN="r8_test",
    INFERENCE_POLL_INTERVAL_S=0,
    INFERENCE_MAX_ATTEMPTS=3,
    SUPABASE_URL="https://proj.supabase.co",
    SUPABASE_SERVICE_ROLE_KEY="service-role-key",
    MAX_UPLOAD_MB=1,
)


def _mock_clients(handler):
    def factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(handler)
        return REAL_CLIENT(*args, **kwargs)

    return patch("enhancer.adapters.inference.httpx.AsyncClient", side_effect=factory)


async def _no_sleep(_):
    return None


@pytest.mark.asyncio
async def test_inference_polls_until_succeeded_and_retries_transient_errors():
    polls = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p1", "status": "starting", "urls": {"get": "https://api.replicate.com/v1/predictions/p1"}})
        polls.append(request.url.path)
        if len(polls) == 1:
            return httpx.Response(502, text="bad gateway")
        return httpx.Response(200, json={"id": "p1", "status": "succeeded", "output": "https://replicate.delivery/out.png"})

    inference = ReplicateInference(SETTINGS, sleep=_no_sleep)
    with _mock_clients(handler):
        result = await inference.enhance("https://proj.supabase.co/storage/v1/object/public/image/u1/a.png")
    assert result.output_url == "https://replicate.delivery/out.png"
    assert len(polls) == 2


@pytest.mark.asyncio
async def test_inference_gives_up_after_bounded_polls_and_cancels():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "POST" and request.url.path.endswith("/cancel"):
            return httpx.Response(200, json={"id": "p1", "status": "canceled"})
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p1", "status": "starting"})
        return httpx.Response(200, json={"id": "p1", "status": "processing"})

    inference = ReplicateInference(SETTINGS, sleep=_no_sleep)
    with _mock_clients(handler):
        with pytest.raises(InferenceTimeout):
            await inference.enhance("https://example.com/a.png")
    assert [m for m, _ in seen].count("GET") == 3
    assert seen[-1] == ("POST", "/v1/predictions/p1/cancel")


@pytest.mark.asyncio
async def test_success_on_the_last_allowed_poll_is_returned_not_cancelled():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.method, request.url.path))
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p1", "status": "starting"})
        gets = [m for m, _ in seen].count("GET")
        if gets < SETTINGS.INFERENCE_MAX_ATTEMPTS:
            return httpx.Response(200, json={"id": "p1", "status": "processing"})
        return httpx.Response(200, json={"id": "p1", "status": "succeeded", "output": ["https://replicate.delivery/last.png"]})

    inference = ReplicateInference(SETTINGS, sleep=_no_sleep)
    with _mock_clients(handler):
        result = await inference.enhance("https://example.com/a.png")
    assert result.output_url == "https://replicate.delivery/last.png"
    assert [m for m, _ in seen].count("GET") == 3
    assert not any(path.endswith("/cancel") for _, path in seen)


@pytest.mark.asyncio
async def test_already_finished_prediction_needs_no_poll():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.method)
        return httpx.Response(201, json={"id": "p1", "status": "succeeded", "output": "https://replicate.delivery/fast.png"})

    inference = ReplicateInference(SETTINGS, sleep=_no_sleep)
    with _mock_clients(handler):
        result = await inference.enhance("https://example.com/a.png")
    assert result.output_url == "https://replicate.delivery/fast.png"
    assert seen == ["POST"]


@pytest.mark.asyncio
async def test_failed_prediction_is_upstream_error():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": "p1", "status": "starting"})
        return httpx.Response(200, json={"id": "p1", "status": "failed", "error": "CUDA OOM"})

    inference = ReplicateInference(SETTINGS, sleep=_no_sleep)
    with _mock_clients(handler):
        with pytest.raises(UpstreamUnavailable):
            await inference.enhance("https://example.com/a.png")


@pytest.mark.asyncio
async def test_unconfigured_inference():
    with pytest.raises(NotConfigured):
        await ReplicateInference(Settings(REPLICATE_API_TOKEN=None)).enhance("https://example.com/a.png")


def test_decode_data_url():
    data, ctype = decode_data_url("data:image/jpeg;base64," + base64.b64encode(b"jpeg-bytes").decode())
    assert (data, ctype) == (b"jpeg-bytes", "image/jpeg")
    for bad in ("", "https://example.com/a.png", "data:text/plain;base64,aGk=", "data:image/png;base64,@@@"):
        with pytest.raises(InvalidRequest):
            decode_data_url(bad)


def test_storage_paths():
    storage = SupabaseStorage(SETTINGS)
    url = storage.public_url("u1/abc-original.png")
    assert url == "https://proj.supabase.co/storage/v1/object/public/image/u1/abc-original.png"
    assert storage.path_from_url(url) == "u1/abc-original.png"
    assert storage.path_from_url("https://replicate.delivery/pbxt/out.png") is None
    assert storage.path_from_url("https://cdn.example.com/other/x.png") is None


@pytest.mark.asyncio
async def test_storage_enforces_upload_cap():
    storage = SupabaseStorage(SETTINGS)
    with pytest.raises(InvalidRequest):
        await storage.upload("u1/big.png", b"x" * (1024 * 1024 + 1), "image/png")
