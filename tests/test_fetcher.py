import httpx
import pytest

from scraper.fetch.fetcher import DecoderCache, ResponseProcessor
from scraper.fetch.protocol import (
    ControlMessage,
    FetchError,
    FetchRequest,
    FetchResponse,
    decode_message,
    encode_message,
)

ORIGIN = "http://site.test"


async def _fetch(handler, url="/"):
    transport = httpx.MockTransport(handler)
    async with httpx.AsyncClient(transport=transport, follow_redirects=True) as client:
        processor = ResponseProcessor(ORIGIN, client)
        return await processor.fetch(url), processor


@pytest.mark.asyncio
async def test_fetch_decodes_declared_charset():
    seen = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        return httpx.Response(
            status_code=200,
            headers={"Content-Type": "text/html; charset=ISO-8859-1"},
            content="<p>café</p>".encode("latin-1"),
        )

    response, processor = await _fetch(handler, "/menu?lang=fr")

    assert seen == ["http://site.test/menu?lang=fr"]
    assert response.status == 200
    assert response.content_type == "text/html"
    assert response.body == "<p>café</p>"
    assert "iso-8859-1" in processor.decoders
    assert response.redirected is False


@pytest.mark.asyncio
async def test_fetch_keeps_double_slash_path_on_the_origin():
    seen = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.url.host, request.url.raw_path.decode()))
        return httpx.Response(200, headers={"Content-Type": "text/html"}, text="<p>ok</p>")

    response, _ = await _fetch(handler, "//evil.test/steal")

    assert seen == [("site.test", "//evil.test/steal")]
    assert response.status == 200


@pytest.mark.asyncio
async def test_fetch_defaults_to_utf8():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            status_code=200,
            headers={"Content-Type": "text/plain"},
            content="سلام".encode("utf-8"),
        )

    response, processor = await _fetch(handler)

    assert response.content_type == "text/plain"
    assert response.body == "سلام"
    assert "utf-8" in processor.decoders


@pytest.mark.asyncio
async def test_fetch_returns_binary_for_non_text_content():
    payload = b"\x89PNG\r\n\x1a\n\x00\x01"

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, headers={"Content-Type": "image/png"}, content=payload)

    response, processor = await _fetch(handler, "/logo.png")

    assert response.content_type == "image/png"
    assert response.body == payload
    assert len(processor.decoders) == 0


@pytest.mark.asyncio
async def test_fetch_without_content_type_is_binary():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=200, content=b"raw")

    response, _ = await _fetch(handler)

    assert response.content_type == "application/octet-stream"
    assert response.body == b"raw"


@pytest.mark.asyncio
async def test_fetch_error_carries_status_text():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code=500, text="boom")

    response, _ = await _fetch(handler, "/x")

    assert response.ok is False
    assert response.status == 500
    assert response.content_type == "!"
    assert response.body == "Internal Server Error"


@pytest.mark.asyncio
async def test_fetch_follows_redirects():
    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/old":
            return httpx.Response(status_code=301, headers={"Location": "/new"})
        return httpx.Response(status_code=200, headers={"Content-Type": "text/html"}, text="new page")

    response, _ = await _fetch(handler, "/old")

    assert response.redirected is True
    assert response.url == "/old"
    assert response.original_url == "/old"
    assert response.final_url == "http://site.test/new"
    assert response.body == "new page"


def test_decoder_cache_builds_each_charset_once():
    cache = DecoderCache()

    first = cache.decoder_for("text/html; charset=UTF-8")
    second = cache.decoder_for('text/css; charset="utf-8"')

    assert first is second
    assert len(cache) == 1


def test_decoder_cache_falls_back_for_unknown_charset():
    cache = DecoderCache()

    assert cache.decode(b"ok \xff", "text/html; charset=x-unknown") == "ok \ufffd"


def test_binary_response_message_survives_json():
    message = FetchResponse(url="/img", status=200, content_type="image/gif", body=b"GIF89a\x00\xff")

    decoded = decode_message(encode_message(message))

    assert decoded == message


def test_request_error_and_control_messages():
    assert decode_message(encode_message(FetchRequest(url="/a"))) == FetchRequest(url="/a")
    assert decode_message(encode_message(ControlMessage(action="stop"))) == ControlMessage(action="stop")
    assert decode_message('{"url": "/a", "error": "timed out"}') == FetchError(url="/a", error="timed out")

    with pytest.raises(ValueError):
        decode_message('{"action": "explode"}')
