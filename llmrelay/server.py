"""FastAPI server exposing the profile/version forwarding proxy"""

import asyncio
import logging
import secrets
import string
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from .config import Config, load_config
from .errors import (
    PayloadTooLargeError,
    ProxyError,
    RelayError,
    classify_exception,
    error_payload,
)
from .exchange_logger import SessionLogger
from .forwarder import (
    RelayMode,
    UpstreamForwarder,
    UpstreamResponse,
    build_outbound_request,
    parse_json_body,
    select_relay_mode,
    wants_stream,
)
from .models import (
    ConfigResponse,
    ErrorResponse,
    HealthResponse,
    ProfileSummary,
    SessionInfo,
    SessionResponse,
    SessionSummary,
)
from .profiles import ProfileRegistry
from .recorder import InteractionRecorder, build_request_snapshot
from .relay import relay_buffered, relay_streaming

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"
REQUEST_ID_HEADER = "x-request-id"
PROXY_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"]
_REQUEST_ID_ALPHABET = string.ascii_lowercase + string.digits


def _configure_logging(config: Config) -> None:
    """Apply runtime log level from config."""
    if config.serve.debug:
        level = logging.DEBUG
    else:
        level = getattr(logging, config.logging.level.upper(), logging.INFO)
    logging.getLogger("llmrelay").setLevel(level)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_request_id() -> str:
    """Return an id like ``req_1718000000000_k3j9x0a2b``."""
    suffix = "".join(secrets.choice(_REQUEST_ID_ALPHABET) for _ in range(9))
    return f"req_{int(time.time() * 1000)}_{suffix}"


def get_request_id(request: Request) -> str:
    """Correlation id for this request, assigned once and cached on its state."""
    request_id = getattr(request.state, "request_id", None)
    if request_id is None:
        request_id = request.headers.get(REQUEST_ID_HEADER) or generate_request_id()
        request.state.request_id = request_id
    return request_id


def _error_response(
    error: ProxyError,
    request_id: str,
    debug: bool = False,
    sensitive_values: Optional[list[str]] = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=error.status_code,
        content=error_payload(error, request_id, debug, sensitive_values),
        headers={REQUEST_ID_HEADER: request_id},
    )


class UnhandledErrorMiddleware:
    """Turn an exception that escaped every handler into a JSON error.

    Runs inside Starlette's ServerErrorMiddleware, so a handled error never
    reaches the server. Errors raised after the response started propagate.
    """

    def __init__(
        self,
        app: ASGIApp,
        handler: Callable[[Request, Exception], Awaitable[Response]],
    ):
        self.app = app
        self.handler = handler

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal started
            if message["type"] == "http.response.start":
                started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except Exception as exc:
            if started:
                raise
            response = await self.handler(Request(scope, receive), exc)
            await response(scope, receive, send)


async def read_limited_body(request: Request, limit: int) -> bytes:
    """Read the request body, rejecting it before forwarding when over limit."""
    content_length = request.headers.get("content-length")
    if content_length:
        try:
            declared = int(content_length)
        except ValueError:
            declared = None
        if declared is not None and declared > limit:
            raise PayloadTooLargeError(limit)

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        if size > limit:
            raise PayloadTooLargeError(limit)
        chunks.append(chunk)
    return b"".join(chunks)


def _original_url(request: Request) -> str:
    query = request.url.query
    return f"{request.url.path}?{query}" if query else request.url.path


async def proxy_request(
    request: Request,
    profile: str,
    version: str,
    path: str,
    *,
    config: Config,
    profiles: ProfileRegistry,
    forwarder: UpstreamForwarder,
    session_logger: SessionLogger,
) -> Response:
    """Forward one inbound request and relay the upstream reply.

    Exactly one interaction or error record is written per call, and every
    fault raised before the response starts is classified into a JSON error.
    """
    request_id = get_request_id(request)
    body_log_limit = config.logging.max_body_log_bytes
    recorder = InteractionRecorder(
        session_logger,
        request_id,
        profile,
        version,
        build_request_snapshot(
            request.method,
            _original_url(request),
            request.headers,
            b"",
            None,
            request.query_params,
        ),
    )
    upstream: Optional[UpstreamResponse] = None
    handed_off = False

    try:
        body = await read_limited_body(request, config.serve.max_body_bytes)
        parsed_body = parse_json_body(body, request.headers.get("content-type"))
        recorder.request_snapshot = build_request_snapshot(
            request.method,
            _original_url(request),
            request.headers,
            body,
            parsed_body,
            request.query_params,
            body_log_limit,
        )

        profile_config = profiles.require(profile, version)
        recorder.add_sensitive_value(profile_config.api_key)

        outbound = build_outbound_request(
            request.method,
            path,
            profile_config,
            request.headers,
            body,
            request.query_params.multi_items(),
            request_id=request_id,
        )
        recorder.target_url = outbound.url
        stream_requested = wants_stream(parsed_body)

        upstream = await forwarder.send(outbound, stream=stream_requested)
        mode = select_relay_mode(stream_requested, upstream)
        logger.info(
            "[proxy] id=%s %s /%s/%s/%s -> %s status=%d mode=%s",
            request_id,
            request.method,
            profile,
            version,
            path,
            outbound.url,
            upstream.status_code,
            mode.value,
        )

        if mode is RelayMode.STREAMING:
            response = relay_streaming(upstream, recorder, body_log_limit)
            handed_off = True
        else:
            response = await relay_buffered(upstream, recorder, body_log_limit)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    except asyncio.CancelledError as cancelled:
        recorder.record_error(
            "Client disconnected before response",
            RelayError("Client disconnected before response", cause=cancelled),
        )
        raise
    except Exception as exc:
        error = classify_exception(exc)
        if error.status_code >= 500:
            logger.warning(
                "[proxy] id=%s profile=%s version=%s failed: %s (%s)",
                request_id,
                profile,
                version,
                error.message,
                type(exc).__name__,
            )
        recorder.record_error(
            "Proxy request failed", exc, status_code=error.status_code
        )
        return _error_response(
            error, request_id, config.serve.debug, recorder.sensitive_values
        )
    finally:
        if upstream is not None and not handed_off:
            await upstream.aclose()


def create_app(
    config_path: str = "config.yaml",
    env_file: str | None = None,
    preloaded_config: Config | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Create and configure FastAPI application

    Args:
        config_path: Path to configuration file
        env_file: Optional path to dotenv file
        preloaded_config: Preloaded config object to avoid re-parsing config
        transport: Optional httpx transport for upstream calls (tests inject
            ``httpx.MockTransport`` here)

    Returns:
        Configured FastAPI app
    """
    if preloaded_config is not None:
        config = preloaded_config
        _configure_logging(config)
        logger.info("Using preloaded configuration")
    else:
        try:
            config = load_config(config_path, env_file=env_file)
            _configure_logging(config)
            logger.info(f"Loaded configuration from {config_path}")
        except Exception as e:
            logger.exception(f"Failed to load configuration: {e}")
            raise

    profiles = ProfileRegistry.from_config(config)
    forwarder = UpstreamForwarder(transport=transport)
    session_logger = SessionLogger(config.logging.log_dir)
    started_at = time.monotonic()
    logger.info(
        "Loaded %d profiles; session %s logging to %s",
        len(profiles),
        session_logger.session_id,
        session_logger.log_path,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        session_logger.log_session_info(
            "Server started", {"profiles": profiles.get_profiles()}
        )
        yield
        await forwarder.aclose()
        session_logger.close()

    app = FastAPI(
        title="llmrelay",
        description="Transparent profile/version forwarding proxy with interaction logging",
        version=APP_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.profiles = profiles
    app.state.forwarder = forwarder
    app.state.session_logger = session_logger

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        request_id = get_request_id(request)
        if exc.status_code == 404:
            body = ErrorResponse(
                error="Not Found",
                message=f"Route {request.method} {request.url.path} not found",
                request_id=request_id,
                timestamp=_utc_now_iso(),
            )
        else:
            body = ErrorResponse(
                error=str(exc.detail),
                request_id=request_id,
                timestamp=_utc_now_iso(),
            )
        return JSONResponse(
            status_code=exc.status_code,
            content=body.model_dump(exclude_none=True),
            headers={REQUEST_ID_HEADER: request_id},
        )

    @app.exception_handler(ProxyError)
    async def proxy_error_handler(request: Request, exc: ProxyError):
        return _error_response(exc, get_request_id(request), config.serve.debug)

    async def unhandled_error_handler(request: Request, exc: Exception):
        request_id = get_request_id(request)
        logger.error(f"Unhandled error processing request {request_id}: {exc}", exc_info=True)
        session_logger.log_error(
            "unknown",
            "unknown",
            "Unhandled error occurred",
            exc,
            {"request_id": request_id, "method": request.method, "url": _original_url(request)},
        )
        return _error_response(classify_exception(exc), request_id, config.serve.debug)

    app.add_middleware(UnhandledErrorMiddleware, handler=unhandled_error_handler)
    if config.serve.cors_origin:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[o.strip() for o in config.serve.cors_origin.split(",")],
            allow_methods=PROXY_METHODS,
            allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
            allow_credentials=True,
        )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Liveness check with uptime and session identity"""
        info = session_logger.session_info()
        return HealthResponse(
            status="healthy",
            timestamp=_utc_now_iso(),
            uptime=round(time.monotonic() - started_at, 3),
            version=APP_VERSION,
            session=SessionSummary(
                id=info["session_id"],
                start_time=info["session_start_time"],
                duration_ms=info["session_duration_ms"],
            ),
        )

    @app.get("/config", response_model=ConfigResponse)
    async def config_info():
        """List known profiles and their versions"""
        summaries = {}
        for profile in profiles.get_profiles():
            versions = profiles.get_versions(profile)
            summaries[profile] = ProfileSummary(
                versions=versions,
                description=f"Configuration for {profile} profile",
                version_descriptions={
                    v: profiles.resolve(profile, v).description for v in versions
                },
            )
        return ConfigResponse(profiles=summaries, timestamp=_utc_now_iso())

    @app.get("/session", response_model=SessionResponse)
    async def session_info():
        """Session identity, uptime and log file location"""
        return SessionResponse(
            session=SessionInfo(**session_logger.session_info()),
            timestamp=_utc_now_iso(),
        )

    # Registered last so the static routes above always win.
    @app.api_route("/{profile}/{version}/{path:path}", methods=PROXY_METHODS)
    async def proxy(request: Request, profile: str, version: str, path: str):
        """Forward any request under /<profile>/<version>/ to the configured upstream"""
        return await proxy_request(
            request,
            profile,
            version,
            path,
            config=config,
            profiles=profiles,
            forwarder=forwarder,
            session_logger=session_logger,
        )

    return app
