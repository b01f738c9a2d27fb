"""Tests for the page fetcher and image store using httpx mock transports."""

import httpx
import pytest

from catalog_ingest.config import settings
from catalog_ingest.ingest.errors import FetchError, HttpError
from catalog_ingest.ingest.http_client import FetchPolicy, PageFetcher
from catalog_ingest.ingest.image_store import ImageStore

URL = "https://www.macupdate.com/app/mac/1/test"


def _fetcher(handler) -> PageFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return PageFetcher(client=client, policy=FetchPolicy(max_attempts=3, backoff_base=0.0))


def _sequence(*responses):
    calls = []

    def handler(request: httpx.Request):
        calls.append(request)
        item = responses[min(len(calls), len(responses)) - 1]
        if isinstance(item, Exception):
            raise item
        return item

    return handler, calls


@pytest.mark.asyncio
async def test_fetch_returns_body_with_browser_user_agent():
    handler, calls = _sequence(httpx.Response(200, text="<html>ok</html>"))

    async with _fetcher(handler) as fetcher:
        html = await fetcher.fetch(URL)

    assert html == "<html>ok</html>"
    assert calls[0].headers["User-Agent"] == settings.user_agent


@pytest.mark.asyncio
async def test_client_error_raises_http_error_without_retry():
    handler, calls = _sequence(httpx.Response(404))

    async with _fetcher(handler) as fetcher:
        with pytest.raises(HttpError) as exc_info:
            await fetcher.fetch(URL)

    assert exc_info.value.status_code == 404
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_server_error_is_retried():
    handler, calls = _sequence(httpx.Response(503), httpx.Response(200, text="recovered"))

    async with _fetcher(handler) as fetcher:
        html = await fetcher.fetch(URL)

    assert html == "recovered"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_rate_limit_honours_retry_after():
    handler, calls = _sequence(
        httpx.Response(429, headers={"Retry-After": "0"}),
        httpx.Response(200, text="ok"),
    )

    async with _fetcher(handler) as fetcher:
        assert await fetcher.fetch(URL) == "ok"

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_persistent_server_error_raises_after_max_attempts():
    handler, calls = _sequence(httpx.Response(500))

    async with _fetcher(handler) as fetcher:
        with pytest.raises(HttpError) as exc_info:
            await fetcher.fetch(URL)

    assert exc_info.value.status_code == 500
    assert len(calls) == 3


@pytest.mark.asyncio
async def test_transport_error_raises_fetch_error():
    handler, calls = _sequence(httpx.ConnectError("connection refused"))

    async with _fetcher(handler) as fetcher:
        with pytest.raises(FetchError) as exc_info:
            await fetcher.fetch(URL)

    assert not isinstance(exc_info.value, HttpError)
    assert len(calls) == 3


def test_fetch_policy_defaults_from_settings():
    policy = FetchPolicy.from_settings()

    assert policy.max_attempts == settings.fetch_max_attempts
    assert policy.timeout.read == settings.fetch_timeout_seconds
    assert policy.timeout.connect == settings.fetch_connect_timeout_seconds


# =============================================================================
# Image store
# =============================================================================

def _image_store(tmp_path, handler) -> ImageStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ImageStore(media_root=tmp_path, url_prefix="/uploads", client=client)


@pytest.mark.asyncio
async def test_image_stored_by_content_hash(tmp_path):
    handler, calls = _sequence(
        httpx.Response(200, content=b"\x89PNG-data", headers={"content-type": "image/png"})
    )
    store = _image_store(tmp_path, handler)

    first = await store.fetch_and_store("https://cdn.example.com/icon", "icon", "42")
    second = await store.fetch_and_store("https://cdn.example.com/icon?v=2", "icon", "42")

    assert first is not None
    assert first.startswith("/uploads/icons/42-")
    assert first.endswith(".png")
    assert first == second
    stored = list((tmp_path / "icons").iterdir())
    assert len(stored) == 1
    assert stored[0].read_bytes() == b"\x89PNG-data"


@pytest.mark.asyncio
async def test_submission_images_sent_with_referer(tmp_path):
    handler, calls = _sequence(httpx.Response(200, content=b"jpeg", headers={"content-type": "image/jpeg"}))
    store = _image_store(tmp_path, handler)

    url = await store.fetch_and_store("https://static.macupdate.com/submission/1/shot.jpg", "screenshot")

    assert url.startswith("/uploads/screenshots/")
    assert url.endswith(".jpg")
    assert calls[0].headers["Referer"] == "https://www.macupdate.com/app/mac"


@pytest.mark.asyncio
async def test_image_failures_return_none(tmp_path):
    handler, _ = _sequence(httpx.Response(404))
    store = _image_store(tmp_path, handler)
    assert await store.fetch_and_store("https://cdn.example.com/missing.png", "icon") is None

    handler, _ = _sequence(httpx.ConnectError("down"))
    store = _image_store(tmp_path, handler)
    assert await store.fetch_and_store("https://cdn.example.com/down.png", "screenshot") is None

    assert await store.fetch_and_store(None, "icon") is None
    assert await store.fetch_and_store("https://cdn.example.com/x.png", "banner") is None
