import asyncio

import pytest
from aiohttp import test_utils, web

from portfolio_uploader.errors import GENERIC_SUBMIT_MESSAGE, SubmitError
from portfolio_uploader.models import PhotoMetadata
from portfolio_uploader.photo_api import (
    DryRunSubmitter,
    PhotoApiClient,
    extract_error_message,
    parse_usage,
)
from portfolio_uploader.resampler import ResizeOutcome

METADATA = PhotoMetadata(
    title="sunset",
    category_id="cat-1",
    is_published=True,
    original_width=4000,
    original_height=3000,
    file_size_bytes=123456,
)
THUMBNAIL = ResizeOutcome(encoded_bytes=b"thumb-bytes", width=400, height=300, filename="sunset.jpg")
PREVIEW = ResizeOutcome(encoded_bytes=b"preview-bytes", width=1200, height=900, filename="sunset.jpg")


def _serve(routes, scenario):
    """aiohttpのテストサーバーを立ててクライアントで ``scenario`` を実行する"""

    async def _main():
        app = web.Application()
        app.add_routes(routes)
        async with test_utils.TestServer(app) as server:
            base_url = str(server.make_url("/"))
            return await scenario(base_url)

    return asyncio.run(_main())


def test_extract_error_message():
    payload = {"error": {"code": "LIMIT_REACHED", "message": "Photo limit reached"}}
    assert extract_error_message(payload) == ("LIMIT_REACHED", "Photo limit reached")
    assert extract_error_message({"error": {"message": ""}}) == (None, GENERIC_SUBMIT_MESSAGE)
    assert extract_error_message("oops") == (None, GENERIC_SUBMIT_MESSAGE)
    assert extract_error_message(None, "fallback") == (None, "fallback")


def test_parse_usage():
    usage = parse_usage({"photos": {"count": 42, "limit": 200}})
    assert (usage.current_photo_count, usage.photo_limit, usage.remaining) == (42, 200, 158)

    with pytest.raises(SubmitError):
        parse_usage({"albums": {}})


def test_submit_photo_sends_multipart_form():
    received = {}

    async def create_photo(request: web.Request) -> web.Response:
        received["authorization"] = request.headers.get("Authorization")
        form = await request.post()
        received["thumbnail"] = form["thumbnail"].file.read()
        received["thumbnail_type"] = form["thumbnail"].content_type
        received["preview"] = form["preview"].file.read()
        received["fields"] = {
            key: form[key]
            for key in (
                "original_width",
                "original_height",
                "file_size_bytes",
                "title",
                "category_id",
                "is_published",
            )
        }
        return web.json_response(
            {
                "id": "photo-1",
                "thumbnail_url": "https://cdn.example.com/t.jpg",
                "preview_url": "https://cdn.example.com/p.jpg",
                "title": "sunset",
            },
            status=201,
        )

    async def scenario(base_url):
        async with PhotoApiClient(base_url, token="secret") as client:
            return await client.submit_photo(METADATA, THUMBNAIL, PREVIEW)

    record = _serve([web.post("/api/photos", create_photo)], scenario)

    assert record.id == "photo-1"
    assert record.preview_url == "https://cdn.example.com/p.jpg"
    assert received["authorization"] == "Bearer secret"
    assert received["thumbnail"] == b"thumb-bytes"
    assert received["thumbnail_type"] == "image/jpeg"
    assert received["preview"] == b"preview-bytes"
    assert received["fields"] == {
        "original_width": "4000",
        "original_height": "3000",
        "file_size_bytes": "123456",
        "title": "sunset",
        "category_id": "cat-1",
        "is_published": "true",
    }


def test_submit_photo_surfaces_server_error_message():
    async def create_photo(request: web.Request) -> web.Response:
        return web.json_response(
            {"error": {"code": "LIMIT_REACHED", "message": "Photo limit reached"}}, status=409
        )

    async def scenario(base_url):
        client = PhotoApiClient(base_url)
        with pytest.raises(SubmitError) as excinfo:
            await client.submit_photo(METADATA, THUMBNAIL, PREVIEW)
        return excinfo.value

    error = _serve([web.post("/api/photos", create_photo)], scenario)

    assert error.message == "Photo limit reached"
    assert error.status == 409
    assert error.code == "LIMIT_REACHED"


def test_submit_photo_falls_back_on_unreadable_error_body():
    async def create_photo(request: web.Request) -> web.Response:
        return web.Response(text="<html>Bad Gateway</html>", status=502, content_type="text/html")

    async def scenario(base_url):
        client = PhotoApiClient(base_url)
        with pytest.raises(SubmitError) as excinfo:
            await client.submit_photo(METADATA, THUMBNAIL, PREVIEW)
        return excinfo.value

    error = _serve([web.post("/api/photos", create_photo)], scenario)

    assert error.message == GENERIC_SUBMIT_MESSAGE
    assert error.status == 502
    assert error.code is None


def test_submit_photo_rejects_response_without_id():
    async def create_photo(request: web.Request) -> web.Response:
        return web.json_response({"thumbnail_url": "x"}, status=201)

    async def scenario(base_url):
        client = PhotoApiClient(base_url)
        with pytest.raises(SubmitError) as excinfo:
            await client.submit_photo(METADATA, THUMBNAIL, PREVIEW)
        return excinfo.value

    error = _serve([web.post("/api/photos", create_photo)], scenario)

    assert error.message == "サーバーの応答が不正です"


def test_refresh_reads_usage():
    async def stats(request: web.Request) -> web.Response:
        return web.json_response({"photos": {"count": 195, "limit": 200}, "categories": {"count": 3}})

    async def scenario(base_url):
        return await PhotoApiClient(base_url).refresh()

    usage = _serve([web.get("/api/stats", stats)], scenario)

    assert usage.current_photo_count == 195
    assert usage.remaining == 5


def test_connection_failure_becomes_submit_error():
    async def scenario():
        # 一度立てて閉じたサーバーのアドレスには接続できない
        async with test_utils.TestServer(web.Application()) as server:
            base_url = str(server.make_url("/"))
        client = PhotoApiClient(base_url, timeout_seconds=5)
        with pytest.raises(SubmitError) as excinfo:
            await client.refresh()
        return excinfo.value

    error = asyncio.run(scenario())

    assert error.message.startswith("サーバーに接続できませんでした")
    assert error.status is None


def test_dry_run_submitter_records_metadata():
    submitter = DryRunSubmitter()

    record = asyncio.run(submitter.submit_photo(METADATA, THUMBNAIL, PREVIEW))

    assert record.id.startswith("dry-run-")
    assert record.title == "sunset"
    assert submitter.submitted == [METADATA]


def test_headers_without_token():
    assert "Authorization" not in PhotoApiClient("https://example.com/").headers
    assert PhotoApiClient("https://example.com/").base_url == "https://example.com"
