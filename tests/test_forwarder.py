"""Tests for outbound request construction and the upstream client"""

import json

import anyio
import httpx
import pytest

from llmrelay.config import ProfileConfig
from llmrelay.forwarder import (
    RelayMode,
    UpstreamForwarder,
    UpstreamResponse,
    build_outbound_headers,
    build_outbound_request,
    build_target_url,
    parse_json_body,
    select_relay_mode,
    wants_stream,
)

_PROFILE = ProfileConfig(base_url="https://api.example.com/v1/", api_key="sk-upstream")


def test_build_target_url_joins_without_double_slash():
    assert build_target_url("https://api.example.com/v1/", "/chat/completions") == (
        "https://api.example.com/v1/chat/completions"
    )
    assert build_target_url("https://api.example.com/v1", "models") == (
        "https://api.example.com/v1/models"
    )
    assert build_target_url("https://api.example.com", "") == "https://api.example.com/"


def test_build_outbound_headers_substitutes_credentials_and_host():
    headers = build_outbound_headers(
        {
            "Host": "localhost:3000",
            "Content-Length": "12",
            "Authorization": "Bearer client-token",
            "Content-Type": "application/json",
            "X-Custom": "kept",
        },
        "sk-upstream",
        "https://api.example.com:8443/v1/chat",
        request_id="req-9",
    )

    assert headers["authorization"] == "Bearer sk-upstream"
    assert headers["host"] == "api.example.com:8443"
    assert "content-length" not in headers
    assert headers["content-type"] == "application/json"
    assert headers["x-custom"] == "kept"
    assert headers["x-request-id"] == "req-9"


def test_build_outbound_headers_leaves_host_unset_for_unparseable_target():
    headers = build_outbound_headers({"host": "localhost"}, "k", "not a url")
    assert "host" not in headers
    assert headers["authorization"] == "Bearer k"


def test_parse_json_body_and_stream_detection():
    assert parse_json_body(b'{"stream": true}', "application/json") == {"stream": True}
    assert parse_json_body(b"not json", "application/json") is None
    assert parse_json_body(b'{"stream": true}', "text/plain") is None
    assert parse_json_body(b"", None) is None

    assert wants_stream({"stream": True}) is True
    assert wants_stream({"stream": "true"}) is False
    assert wants_stream({"stream": 1}) is False
    assert wants_stream([{"stream": True}]) is False
    assert wants_stream(None) is False


def test_select_relay_mode_needs_request_flag_and_unread_body():
    raw = httpx.Response(200)
    unread = UpstreamResponse(200, raw.headers, True, raw)
    buffered = UpstreamResponse(200, raw.headers, False, raw)

    assert select_relay_mode(True, unread) is RelayMode.STREAMING
    assert select_relay_mode(True, buffered) is RelayMode.BUFFERED
    assert select_relay_mode(False, unread) is RelayMode.BUFFERED


def test_build_outbound_request_drops_body_for_get():
    outbound = build_outbound_request(
        "get", "models", _PROFILE, {}, b"ignored", [("limit", "5")], "req-1"
    )
    assert outbound.method == "GET"
    assert outbound.content is None
    assert outbound.params == [("limit", "5")]
    assert outbound.url == "https://api.example.com/v1/models"


@pytest.mark.asyncio
async def test_forwarder_sends_rewritten_request():
    captured = {}

    def handler(request: httpx.Request):
        captured["method"] = request.method
        captured["url"] = str(request.url)
        captured["authorization"] = request.headers.get("authorization")
        captured["host"] = request.headers.get("host")
        captured["body"] = request.content
        return httpx.Response(200, json={"id": "abc"})

    forwarder = UpstreamForwarder(transport=httpx.MockTransport(handler))
    outbound = build_outbound_request(
        "POST",
        "chat/completions",
        _PROFILE,
        {"authorization": "Bearer client", "content-type": "application/json"},
        b'{"model":"m"}',
        [("a", "1"), ("a", "2")],
    )
    try:
        upstream = await forwarder.send(outbound)
        assert upstream.status_code == 200
        assert upstream.incremental is False
        assert json.loads(await upstream.aread()) == {"id": "abc"}
    finally:
        await forwarder.aclose()

    assert captured["method"] == "POST"
    assert captured["url"] == "https://api.example.com/v1/chat/completions?a=1&a=2"
    assert captured["authorization"] == "Bearer sk-upstream"
    assert captured["host"] == "api.example.com"
    assert captured["body"] == b'{"model":"m"}'


@pytest.mark.asyncio
async def test_forwarder_does_not_raise_for_error_statuses():
    forwarder = UpstreamForwarder(
        transport=httpx.MockTransport(lambda request: httpx.Response(429, json={"error": "slow down"}))
    )
    outbound = build_outbound_request("POST", "x", _PROFILE, {}, b"{}", [])
    try:
        upstream = await forwarder.send(outbound)
    finally:
        await forwarder.aclose()
    assert upstream.status_code == 429


@pytest.mark.asyncio
async def test_forwarder_follows_up_to_five_redirects():
    def handler(request: httpx.Request):
        hop = int(request.url.params.get("hop", "0"))
        limit = int(request.url.params.get("limit"))
        if hop < limit:
            return httpx.Response(
                302,
                headers={"location": f"https://api.example.com/r?hop={hop + 1}&limit={limit}"},
            )
        return httpx.Response(200, text="done")

    forwarder = UpstreamForwarder(transport=httpx.MockTransport(handler))
    try:
        ok = await forwarder.send(
            build_outbound_request("GET", "r", _PROFILE, {}, b"", [("hop", "0"), ("limit", "5")])
        )
        assert ok.status_code == 200

        with pytest.raises(httpx.TooManyRedirects):
            await forwarder.send(
                build_outbound_request(
                    "GET", "r", _PROFILE, {}, b"", [("hop", "0"), ("limit", "6")]
                )
            )
    finally:
        await forwarder.aclose()


@pytest.mark.asyncio
async def test_forwarder_stream_mode_leaves_body_unread():
    async def body():
        yield b"data: 1\n\n"
        yield b"data: 2\n\n"

    forwarder = UpstreamForwarder(
        transport=httpx.MockTransport(
            lambda request: httpx.Response(
                200, headers={"content-type": "text/event-stream"}, content=body()
            )
        )
    )
    outbound = build_outbound_request("POST", "x", _PROFILE, {}, b'{"stream":true}', [])
    try:
        upstream = await forwarder.send(outbound, stream=True)
        assert upstream.incremental is True
        chunks = [chunk async for chunk in upstream.aiter_bytes()]
        await upstream.aclose()
    finally:
        await forwarder.aclose()
    assert b"".join(chunks) == b"data: 1\n\ndata: 2\n\n"


@pytest.mark.asyncio
async def test_forwarder_stream_mode_times_out_waiting_for_headers():
    async def handler(request: httpx.Request):
        await anyio.sleep(1)
        return httpx.Response(200)

    forwarder = UpstreamForwarder(timeout=0.05, transport=httpx.MockTransport(handler))
    outbound = build_outbound_request("POST", "x", _PROFILE, {}, b'{"stream":true}', [])
    try:
        with pytest.raises(httpx.TimeoutException):
            await forwarder.send(outbound, stream=True)
    finally:
        await forwarder.aclose()


@pytest.mark.asyncio
async def test_forwarder_stream_mode_tolerates_slow_chunk_gaps():
    captured = {}

    async def body():
        yield b"data: 1\n\n"
        await anyio.sleep(0.2)
        yield b"data: 2\n\n"
        await anyio.sleep(0.2)
        yield b"data: [DONE]\n\n"

    def handler(request: httpx.Request):
        captured["timeout"] = request.extensions["timeout"]
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body())

    forwarder = UpstreamForwarder(timeout=0.05, transport=httpx.MockTransport(handler))
    outbound = build_outbound_request("POST", "x", _PROFILE, {}, b'{"stream":true}', [])
    try:
        upstream = await forwarder.send(outbound, stream=True)
        chunks = [chunk async for chunk in upstream.aiter_bytes()]
        await upstream.aclose()
    finally:
        await forwarder.aclose()

    assert b"".join(chunks) == b"data: 1\n\ndata: 2\n\ndata: [DONE]\n\n"
    assert captured["timeout"]["read"] is None
    assert captured["timeout"]["connect"] == 0.05


@pytest.mark.asyncio
async def test_forwarder_buffered_mode_keeps_read_timeout():
    captured = {}

    def handler(request: httpx.Request):
        captured["timeout"] = request.extensions["timeout"]
        return httpx.Response(200, text="ok")

    forwarder = UpstreamForwarder(transport=httpx.MockTransport(handler))
    try:
        await forwarder.send(build_outbound_request("GET", "x", _PROFILE, {}, b"", []))
    finally:
        await forwarder.aclose()
    assert captured["timeout"]["read"] == 30.0


def test_build_outbound_headers_keeps_repeated_headers():
    headers = build_outbound_headers(
        httpx.Headers(
            [
                ("X-Tag", "a"),
                ("X-Tag", "b"),
                ("X-Request-Id", "client-id"),
                ("Authorization", "Bearer client"),
            ]
        ),
        "sk-upstream",
        "https://api.example.com/v1",
        request_id="req-2",
    )

    assert headers.get_list("x-tag") == ["a", "b"]
    assert headers.get_list("x-request-id") == ["req-2"]
    assert headers.get_list("authorization") == ["Bearer sk-upstream"]
