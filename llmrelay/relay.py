"""Relay of upstream responses to the client, buffered or streamed."""

import asyncio
import logging
from typing import Any, AsyncIterator, Iterable, List, Optional, Tuple

import anyio
import httpx
from fastapi import Response
from fastapi.responses import StreamingResponse

from .errors import RelayError
from .forwarder import RelayMode, UpstreamResponse
from .recorder import InteractionRecorder, body_for_log

logger = logging.getLogger(__name__)

HOP_BY_HOP_HEADERS = frozenset({"transfer-encoding", "connection"})
# httpx hands us the decoded entity, so the relay's own framing owns these.
_RECOMPUTED_HEADERS = frozenset({"content-encoding", "content-length"})
DEFAULT_STREAM_CONTENT_TYPE = "text/event-stream"


def relay_headers(
    upstream_headers: httpx.Headers, exclude: Iterable[str] = ()
) -> List[Tuple[str, str]]:
    """Upstream headers safe to copy onto the client response.

    Repeated headers (e.g. several set-cookie lines) are kept as separate items.
    """
    skipped = HOP_BY_HOP_HEADERS | _RECOMPUTED_HEADERS | {h.lower() for h in exclude}
    return [
        (key, value)
        for key, value in upstream_headers.multi_items()
        if key.lower() not in skipped
    ]


def streaming_headers(upstream_headers: httpx.Headers) -> List[Tuple[str, str]]:
    """Headers for a streamed relay: upstream's, with SSE framing forced."""
    items = relay_headers(upstream_headers, exclude=("content-type", "cache-control"))
    items.append(
        ("content-type", upstream_headers.get("content-type") or DEFAULT_STREAM_CONTENT_TYPE)
    )
    items.append(("cache-control", "no-cache"))
    items.append(("connection", "keep-alive"))
    return items


def _apply_headers(response: Response, items: Iterable[Tuple[str, str]]) -> None:
    for key, value in items:
        response.headers.append(key, value)


class StreamAccumulator:
    """Bounded copy of streamed bytes kept for the interaction record."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit
        self.size = 0
        self.chunks = 0
        self.truncated = False
        self._parts: List[bytes] = []

    def append(self, chunk: bytes) -> None:
        self.chunks += 1
        if self.limit is not None and self.size + len(chunk) > self.limit:
            remaining = self.limit - self.size
            if remaining > 0:
                self._parts.append(chunk[:remaining])
                self.size += remaining
            self.truncated = True
            return
        self._parts.append(chunk)
        self.size += len(chunk)

    def text(self) -> str:
        return b"".join(self._parts).decode("utf-8", errors="replace")

    def for_log(self) -> Any:
        if self.truncated:
            return {"truncated": True, "limit": self.limit, "text": self.text()}
        return self.text()


async def relay_buffered(
    upstream: UpstreamResponse,
    recorder: InteractionRecorder,
    body_log_limit: Optional[int] = None,
) -> Response:
    """Read the whole upstream body and send it as a single response."""
    recorder.relay_mode = RelayMode.BUFFERED.value
    content = await upstream.aread()
    response = Response(content=content, status_code=upstream.status_code)
    _apply_headers(response, relay_headers(upstream.headers))
    recorder.record_success(
        upstream.status_code, upstream.headers, body_for_log(content, body_log_limit)
    )
    return response


async def _close_upstream(upstream: UpstreamResponse) -> None:
    # Runs during cancellation too; shield so the socket is actually released.
    with anyio.CancelScope(shield=True):
        try:
            await upstream.aclose()
        except Exception as close_error:
            logger.debug("Ignoring error while closing upstream stream: %s", close_error)


async def relay_stream_chunks(
    upstream: UpstreamResponse,
    recorder: InteractionRecorder,
    accumulator: StreamAccumulator,
) -> AsyncIterator[bytes]:
    """Forward upstream chunks as they arrive and record the outcome once.

    Terminal outcomes: upstream completion (interaction record), upstream
    read failure (error record, stream ends cleanly) or client disconnect
    (error record, exception propagates and the upstream read stops).
    """
    try:
        try:
            async for chunk in upstream.aiter_bytes():
                try:
                    accumulator.append(chunk)
                except Exception as append_error:
                    recorder.log_nonfatal("Error writing streaming chunk", append_error)
                yield chunk
        except httpx.HTTPError as stream_error:
            recorder.record_error(
                "Streaming response error",
                RelayError(f"Upstream stream failed: {stream_error}", cause=stream_error),
                status_code=upstream.status_code,
                extra={"partial_body": accumulator.for_log(), "chunks": accumulator.chunks},
            )
            return
        except Exception as relay_error:
            recorder.record_error(
                "Streaming relay failed",
                relay_error,
                status_code=upstream.status_code,
                extra={"partial_body": accumulator.for_log(), "chunks": accumulator.chunks},
            )
            return

        recorder.record_success(
            upstream.status_code, upstream.headers, accumulator.for_log()
        )
    except (GeneratorExit, asyncio.CancelledError) as disconnect:
        recorder.record_error(
            "Client disconnected mid-stream",
            RelayError("Client disconnected mid-stream", cause=disconnect),
            status_code=upstream.status_code,
            extra={"partial_body": accumulator.for_log(), "chunks": accumulator.chunks},
        )
        raise
    finally:
        await _close_upstream(upstream)


class RelayStreamingResponse(StreamingResponse):
    """StreamingResponse that always finalizes the relay, started or not.

    If the client goes away before the body loop pulls the first chunk, the
    chunk generator never runs and its own cleanup cannot fire. Sending is
    wrapped so the generator is closed, the upstream released and an error
    recorded in that case.
    """

    def __init__(
        self,
        upstream: UpstreamResponse,
        recorder: InteractionRecorder,
        accumulator: StreamAccumulator,
    ):
        super().__init__(
            relay_stream_chunks(upstream, recorder, accumulator),
            status_code=upstream.status_code,
        )
        self.upstream = upstream
        self.recorder = recorder

    async def __call__(self, scope, receive, send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            await self._finalize()

    async def _finalize(self) -> None:
        if self.recorder.finished:
            return
        with anyio.CancelScope(shield=True):
            # A started generator records the disconnect itself on close.
            await self.body_iterator.aclose()
            if not self.recorder.finished:
                self.recorder.record_error(
                    "Client disconnected before stream start",
                    RelayError("Client disconnected before stream start"),
                    status_code=self.upstream.status_code,
                )
            await _close_upstream(self.upstream)


def relay_streaming(
    upstream: UpstreamResponse,
    recorder: InteractionRecorder,
    body_log_limit: Optional[int] = None,
) -> StreamingResponse:
    """Build a StreamingResponse that relays upstream chunks without buffering."""
    recorder.relay_mode = RelayMode.STREAMING.value
    accumulator = StreamAccumulator(limit=body_log_limit)
    response = RelayStreamingResponse(upstream, recorder, accumulator)
    # No media_type on the response, so content-type carries no charset suffix.
    _apply_headers(response, streaming_headers(upstream.headers))
    return response
