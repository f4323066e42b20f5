"""Proxy fault taxonomy and mapping of transport faults to client-visible errors."""

import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

_REDACTABLE_QUERY_PARAM_PATTERN = re.compile(
    r"([?&](?:key|api_key|x-api-key)=)([^&\s]+)",
    flags=re.IGNORECASE,
)


class ProxyError(Exception):
    """Base class for faults that end a proxied request.

    Subclasses fix the HTTP status the client sees and a stable message.
    """

    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, cause: Optional[BaseException] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.cause = cause


class ProfileNotFoundError(ProxyError):
    status_code = 404
    code = "profile_not_found"

    def __init__(self, profile: str, version: str):
        super().__init__(
            f"Configuration not found for profile '{profile}' and version '{version}'"
        )
        self.profile = profile
        self.version = version


class InvalidProfileConfigError(ProxyError):
    status_code = 500
    code = "invalid_profile_config"

    def __init__(self, profile: str, version: str):
        super().__init__(
            f"Invalid configuration for profile '{profile}' and version '{version}'"
        )
        self.profile = profile
        self.version = version


class PayloadTooLargeError(ProxyError):
    status_code = 413
    code = "payload_too_large"

    def __init__(self, limit: int):
        super().__init__(f"Request body too large (limit {limit} bytes)")
        self.limit = limit


class UpstreamUnreachableError(ProxyError):
    status_code = 502
    code = "upstream_unreachable"
    default_message = "Bad Gateway - Unable to connect to upstream service"


class UpstreamRedirectError(UpstreamUnreachableError):
    code = "upstream_too_many_redirects"
    default_message = "Bad Gateway - Too many redirects from upstream service"


class UpstreamTimeoutError(ProxyError):
    status_code = 504
    code = "upstream_timeout"
    default_message = "Gateway Timeout - Upstream service timeout"


class RelayError(ProxyError):
    """Failure after the status line was committed; only logged, never sent."""

    code = "relay_error"
    default_message = "Response relay failed"


def classify_exception(error: BaseException) -> ProxyError:
    """Map any fault raised while forwarding to a ProxyError.

    ProxyError instances pass through unchanged. Timeouts are checked before
    connection errors because httpx.ConnectTimeout is both.
    """
    if isinstance(error, ProxyError):
        return error
    if isinstance(error, httpx.TimeoutException):
        return UpstreamTimeoutError(cause=error)
    if isinstance(error, httpx.TooManyRedirects):
        return UpstreamRedirectError(cause=error)
    if isinstance(error, (httpx.ConnectError, httpx.TransportError)):
        return UpstreamUnreachableError(cause=error)
    return ProxyError(cause=error)


def sanitize_error_message(
    error: BaseException | str, sensitive_values: Optional[list[str]] = None
) -> str:
    """Redact API key material from error strings before logging."""
    message = str(error)
    message = _REDACTABLE_QUERY_PARAM_PATTERN.sub(r"\1[REDACTED]", message)
    for value in sensitive_values or []:
        if value:
            message = message.replace(value, "[REDACTED]")
    return message


def error_payload(
    error: ProxyError,
    request_id: str,
    debug: bool = False,
    sensitive_values: Optional[list[str]] = None,
) -> Dict[str, Any]:
    """Build the JSON body sent to the client for a classified fault."""
    payload: Dict[str, Any] = {
        "error": error.message,
        "request_id": request_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if debug:
        source = error.cause if error.cause is not None else error
        payload["details"] = sanitize_error_message(source, sensitive_values)
        payload["type"] = type(source).__name__
    return payload
