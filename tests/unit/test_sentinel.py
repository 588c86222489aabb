import json
import pytest
import httpx
from datetime import datetime, timezone

from src.core.exceptions import AuthError, ProviderError
from src.modules.imagery.models import BoundingBox, TimeRange
from src.pipeline.sentinel import SentinelAuthProvider, SentinelImageryProvider

TOKEN_URL = "https://sentinel.test/oauth/token"
PROCESS_URL = "https://sentinel.test/api/v1/process"


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def make_auth(handler, clock=None) -> SentinelAuthProvider:
    return SentinelAuthProvider(
        client_id="client",
        client_secret="secret",
        token_url=TOKEN_URL,
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock()
    )


@pytest.mark.asyncio
async def test_token_is_requested_with_client_credentials():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200, json={"access_token": "abc", "expires_in": 3600})

    token = await make_auth(handler).get_token()

    assert token == "abc"
    assert requests[0].method == "POST"
    assert requests[0].headers["authorization"].startswith("Basic ")
    assert b"grant_type=client_credentials" in requests[0].content


@pytest.mark.asyncio
async def test_token_is_cached_until_near_expiry():
    calls = []
    clock = FakeClock()

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"access_token": f"tok-{len(calls)}", "expires_in": 600})

    auth = make_auth(handler, clock)

    assert await auth.get_token() == "tok-1"
    clock.now += 500
    assert await auth.get_token() == "tok-1"
    # Within the refresh margin of the 600s lifetime
    clock.now += 60
    assert await auth.get_token() == "tok-2"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_token_rejection_raises_auth_error():
    auth = make_auth(lambda request: httpx.Response(401, json={"error": "invalid_client"}))

    with pytest.raises(AuthError) as exc_info:
        await auth.get_token()

    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_token_timeout_raises_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(AuthError):
        await make_auth(handler).get_token()


@pytest.mark.asyncio
async def test_missing_credentials_raise_auth_error():
    auth = SentinelAuthProvider(client_id=None, client_secret=None, token_url=TOKEN_URL)

    with pytest.raises(AuthError):
        await auth.get_token()


def make_imagery(handler) -> SentinelImageryProvider:
    return SentinelImageryProvider(process_url=PROCESS_URL, transport=httpx.MockTransport(handler))


def search_args():
    bbox = BoundingBox.around(12.97, 77.59)
    time_range = TimeRange.last_days(30, now=datetime(2026, 10, 19, tzinfo=timezone.utc))
    return bbox, time_range


@pytest.mark.asyncio
async def test_fetch_image_sends_process_request():
    captured = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers["authorization"]
        captured["body"] = json.loads(request.content)
        return httpx.Response(200, content=b"II*\x00tiff")

    bbox, time_range = search_args()
    data = await make_imagery(handler).fetch_image("abc", bbox, time_range, 20)

    assert data == b"II*\x00tiff"
    assert captured["auth"] == "Bearer abc"
    body = captured["body"]
    assert body["input"]["bounds"]["bbox"] == [77.49, 12.87, 77.69, 13.07]
    assert body["input"]["bounds"]["properties"]["crs"].endswith("EPSG/0/4326")
    data_filter = body["input"]["data"][0]
    assert data_filter["type"] == "sentinel-2-l2a"
    assert data_filter["dataFilter"]["maxCloudCoverage"] == 20
    assert data_filter["dataFilter"]["timeRange"] == {
        "from": "2026-09-19T00:00:00Z",
        "to": "2026-10-19T00:00:00Z",
    }
    assert data_filter["processing"]["upsampling"] == "BILINEAR"
    assert body["output"]["width"] == 512
    assert body["output"]["responses"][0]["format"]["type"] == "image/tiff"
    assert "evaluatePixel" in body["evalscript"]


@pytest.mark.asyncio
async def test_fetch_image_error_status_raises_provider_error():
    bbox, time_range = search_args()
    imagery = make_imagery(lambda request: httpx.Response(503, text="overloaded"))

    with pytest.raises(ProviderError) as exc_info:
        await imagery.fetch_image("abc", bbox, time_range, 20)

    assert exc_info.value.details["http_status"] == 503
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_fetch_image_timeout_raises_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    bbox, time_range = search_args()
    with pytest.raises(ProviderError):
        await make_imagery(handler).fetch_image("abc", bbox, time_range, 20)
