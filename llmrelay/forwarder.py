"""Outbound request construction and execution against upstream APIs."""

import dataclasses
import enum
import json
import logging
from typing import Any, AsyncIterator, List, Mapping, Optional, Tuple

import anyio
import httpx

from .config import ProfileConfig

logger = logging.getLogger(__name__)

UPSTREAM_TIMEOUT_SECONDS = 30.0
MAX_REDIRECTS = 5
_BODYLESS_METHODS = {"GET", "HEAD"}


class RelayMode(enum.Enum):
    BUFFERED = "buffered"
    STREAMING = "streaming"


@dataclasses.dataclass(frozen=True)
class OutboundRequest:
    """Everything needed to issue one upstream call."""

    method: str
    url: str
    headers: httpx.Headers
    content: Optional[bytes] = None
    params: Optional[List[Tuple[str, str]]] = None


@dataclasses.dataclass
class UpstreamResponse:
    """Upstream reply plus an explicit flag telling whether the body is unread.

    ``incremental`` is True only when the body is still on the wire and can be
    consumed chunk by chunk through :meth:`aiter_bytes`.
    """

    status_code: int
    headers: httpx.Headers
    incremental: bool
    raw: httpx.Response

    async def aiter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self.raw.aiter_bytes():
            yield chunk

    async def aread(self) -> bytes:
        return await self.raw.aread()

    async def aclose(self) -> None:
        await self.raw.aclose()


def header_items(headers: Mapping[str, str]) -> List[Tuple[str, str]]:
    """All (name, value) pairs of a header map, keeping repeated names."""
    multi_items = getattr(headers, "multi_items", None)
    if multi_items is not None:
        return list(multi_items())
    return list(headers.items())


def build_target_url(base_url: str, path: str) -> str:
    """Join the profile base URL and the path remainder."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def build_outbound_headers(
    incoming_headers: Mapping[str, str],
    api_key: str,
    target_url: str,
    request_id: Optional[str] = None,
) -> httpx.Headers:
    """Rewrite inbound headers for the upstream call.

    Copies every header, repeated ones included, drops host and
    content-length, substitutes the profile credential as a bearer token and
    recomputes host from the target.
    """
    replaced = {"host", "content-length", "authorization"}
    if request_id:
        replaced.add("x-request-id")
    items = [
        (key.lower(), value)
        for key, value in header_items(incoming_headers)
        if key.lower() not in replaced
    ]

    items.append(("authorization", f"Bearer {api_key}"))
    try:
        host = httpx.URL(target_url).netloc.decode("ascii")
    except (httpx.InvalidURL, UnicodeDecodeError):
        host = ""
    if host:
        items.append(("host", host))
    if request_id:
        items.append(("x-request-id", request_id))
    return httpx.Headers(items)


def parse_json_body(body: bytes, content_type: Optional[str]) -> Any:
    """Return the decoded JSON body, or None when the body is not JSON."""
    if not body:
        return None
    if content_type and "json" not in content_type.lower():
        return None
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None


def wants_stream(parsed_body: Any) -> bool:
    """True only for a JSON object body carrying ``"stream": true``."""
    return isinstance(parsed_body, dict) and parsed_body.get("stream") is True


def select_relay_mode(stream_requested: bool, upstream: UpstreamResponse) -> RelayMode:
    if stream_requested and upstream.incremental:
        return RelayMode.STREAMING
    return RelayMode.BUFFERED


def build_outbound_request(
    method: str,
    path: str,
    profile_config: ProfileConfig,
    incoming_headers: Mapping[str, str],
    body: bytes,
    query_items: List[Tuple[str, str]],
    request_id: Optional[str] = None,
) -> OutboundRequest:
    target_url = build_target_url(profile_config.base_url, path)
    method = method.upper()
    content = body if body and method not in _BODYLESS_METHODS else None
    return OutboundRequest(
        method=method,
        url=target_url,
        headers=build_outbound_headers(
            incoming_headers, profile_config.api_key, target_url, request_id
        ),
        content=content,
        params=list(query_items) if query_items else None,
    )


class UpstreamForwarder:
    """Owns the shared HTTP client used for every upstream call.

    The client accepts every status code; only connection-level faults raise.
    """

    def __init__(
        self,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        max_redirects: int = MAX_REDIRECTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.max_redirects = max_redirects
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            max_redirects=max_redirects,
            transport=transport,
        )

    async def send(self, outbound: OutboundRequest, stream: bool = False) -> UpstreamResponse:
        """Issue the request; raises httpx errors for transport faults.

        In stream mode the timeout covers only the wait for the response
        headers. Gaps between body chunks are not bounded.
        """
        request = self._client.build_request(
            outbound.method,
            outbound.url,
            headers=outbound.headers,
            content=outbound.content,
            params=outbound.params,
            timeout=httpx.Timeout(self.timeout, read=None) if stream else httpx.USE_CLIENT_DEFAULT,
        )
        logger.debug(
            "[forward] %s %s stream=%s", outbound.method, outbound.url, stream
        )
        if stream:
            try:
                with anyio.fail_after(self.timeout):
                    response = await self._client.send(request, stream=True)
            except TimeoutError as timeout_error:
                raise httpx.ReadTimeout(
                    "Timed out waiting for upstream response headers", request=request
                ) from timeout_error
        else:
            response = await self._client.send(request)
        return UpstreamResponse(
            status_code=response.status_code,
            headers=response.headers,
            incremental=stream and not response.is_stream_consumed,
            raw=response,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
