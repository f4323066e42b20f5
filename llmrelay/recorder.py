"""Per-request interaction recording with exactly-once terminal writes."""

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Mapping, Optional

from .errors import sanitize_error_message
from .exchange_logger import SessionLogger
from .forwarder import header_items

logger = logging.getLogger(__name__)

REDACTED = "[REDACTED]"
SENSITIVE_REQUEST_HEADERS = frozenset({"authorization", "x-api-key", "cookie"})
SENSITIVE_RESPONSE_HEADERS = frozenset({"set-cookie", "authorization"})


def redact_headers(
    headers: Optional[Mapping[str, Any]], sensitive: Iterable[str]
) -> Optional[Dict[str, Any]]:
    """Return a copy of headers with sensitive values replaced."""
    if headers is None:
        return None
    sensitive = {name.lower() for name in sensitive}
    return {
        key: REDACTED if key.lower() in sensitive else value
        for key, value in headers.items()
    }


def _redact_snapshot(snapshot: Any, sensitive: Iterable[str]) -> Any:
    if not isinstance(snapshot, dict) or "headers" not in snapshot:
        return snapshot
    redacted = dict(snapshot)
    redacted["headers"] = redact_headers(snapshot["headers"], sensitive)
    return redacted


def redact_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Redact header maps of a record without copying bodies.

    Only ``request.headers`` and ``response.headers`` (also under
    ``context`` for error records) are rebuilt; every other value is shared
    with the input. Applying it twice gives the same result as once.
    """
    redacted = dict(record)
    if "request" in redacted:
        redacted["request"] = _redact_snapshot(
            redacted["request"], SENSITIVE_REQUEST_HEADERS
        )
    if "response" in redacted:
        redacted["response"] = _redact_snapshot(
            redacted["response"], SENSITIVE_RESPONSE_HEADERS
        )
    if isinstance(redacted.get("context"), dict):
        redacted["context"] = redact_record(redacted["context"])
    return redacted


def headers_for_log(headers: Mapping[str, Any]) -> Dict[str, Any]:
    """Header map for the log; a repeated name maps to the list of its values."""
    logged: Dict[str, Any] = {}
    for key, value in header_items(headers):
        if key not in logged:
            logged[key] = value
        elif isinstance(logged[key], list):
            logged[key].append(value)
        else:
            logged[key] = [logged[key], value]
    return logged


def body_for_log(content: bytes, limit: Optional[int] = None) -> Any:
    """Textual form of a body for the log: JSON value when it parses, else text."""
    if not content:
        return ""
    truncated = limit is not None and len(content) > limit
    if truncated:
        content = content[:limit]
    text = content.decode("utf-8", errors="replace")
    if truncated:
        return {"truncated": True, "limit": limit, "text": text}
    try:
        return json.loads(text)
    except ValueError:
        return text


def build_request_snapshot(
    method: str,
    url: str,
    headers: Mapping[str, str],
    body: bytes,
    parsed_body: Any,
    query: Mapping[str, Any],
    body_limit: Optional[int] = None,
) -> Dict[str, Any]:
    return {
        "method": method,
        "url": url,
        "headers": headers_for_log(headers),
        "body": parsed_body if parsed_body is not None else body_for_log(body, body_limit),
        "query": dict(query),
    }


class InteractionRecorder:
    """Collects one request's data and writes exactly one terminal record.

    The first call to :meth:`record_success` or :meth:`record_error` wins;
    later calls are ignored and return False.
    """

    def __init__(
        self,
        sink: SessionLogger,
        request_id: str,
        profile: str,
        version: str,
        request_snapshot: Dict[str, Any],
        sensitive_values: Optional[list[str]] = None,
    ):
        self.sink = sink
        self.request_id = request_id
        self.profile = profile
        self.version = version
        self.request_snapshot = request_snapshot
        self.sensitive_values = list(sensitive_values or [])
        self.start_time = datetime.now(timezone.utc)
        self._start_monotonic = time.monotonic()
        self.target_url: Optional[str] = None
        self.relay_mode: Optional[str] = None
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    @property
    def duration_ms(self) -> float:
        return round((time.monotonic() - self._start_monotonic) * 1000, 2)

    def add_sensitive_value(self, value: str) -> None:
        if value:
            self.sensitive_values.append(value)

    def _claim(self) -> bool:
        if self._finished:
            logger.debug("Interaction %s already recorded; skipping", self.request_id)
            return False
        self._finished = True
        return True

    def _base(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "start_time": self.start_time.isoformat(),
            "duration_ms": self.duration_ms,
            "request": self.request_snapshot,
            "target_url": self.target_url,
            "relay_mode": self.relay_mode,
        }

    def record_success(
        self, status: int, headers: Mapping[str, Any], body: Any
    ) -> bool:
        """Write the interaction record for a relayed upstream response."""
        if not self._claim():
            return False
        record = self._base()
        record["response"] = {
            "status": status,
            "headers": headers_for_log(headers),
            "body": body,
        }
        self.sink.log_interaction(self.profile, self.version, redact_record(record))
        return True

    def log_nonfatal(self, message: str, error: BaseException) -> None:
        """Log a recoverable failure without ending the interaction."""
        context = {
            "request_id": self.request_id,
            "duration_ms": self.duration_ms,
            "target_url": self.target_url,
            "relay_mode": self.relay_mode,
            "error_message": sanitize_error_message(error, self.sensitive_values),
        }
        self.sink.log_error(self.profile, self.version, message, error, context)

    def record_error(
        self,
        message: str,
        error: BaseException,
        status_code: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Write the error record in place of an interaction record."""
        if not self._claim():
            return False
        context = self._base()
        context["status_code"] = status_code
        context["error_message"] = sanitize_error_message(error, self.sensitive_values)
        if extra:
            context.update(extra)
        self.sink.log_error(
            self.profile,
            self.version,
            message,
            error,
            redact_record(context),
        )
        return True
