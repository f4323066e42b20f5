"""Session-scoped JSONL sink for request/response interactions and errors."""

import json
import logging
import os
import secrets
import threading
import time
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SERVICE_NAME = "llmrelay"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def describe_error(error: BaseException) -> Dict[str, Any]:
    """Flatten an exception into message/type/code/stack fields."""
    cause = getattr(error, "cause", None)
    code = getattr(error, "code", None)
    if code is None and isinstance(error, OSError):
        code = error.errno
    return {
        "message": str(error),
        "type": type(error).__name__,
        "code": code,
        "cause": f"{type(cause).__name__}: {cause}" if cause is not None else None,
        "stack": "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        ),
    }


class SessionLogger:
    """Append-only interaction log for one server session.

    Every entry is one JSON line in ``<log_dir>/<YYYYmmddHHMMSS>_<id8>.jsonl``.
    Writes are serialized with a lock so concurrent requests never interleave
    lines. No public method raises; failures go to this module's logger.
    """

    def __init__(self, log_dir: str = "logs"):
        self.session_id = secrets.token_hex(8)
        self.session_start = datetime.now(timezone.utc)
        self._start_monotonic = time.monotonic()
        self._lock = threading.Lock()
        self._closed = False
        self.log_dir = Path(log_dir)
        stamp = self.session_start.strftime("%Y%m%d%H%M%S")
        self.log_path = self.log_dir / f"{stamp}_{self.session_id[:8]}.jsonl"
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("Failed to create log directory %s: %s", self.log_dir, e)

        self.log_session_info(
            "Session started",
            {
                "session_start_time": self.session_start.isoformat(),
                "pid": os.getpid(),
            },
        )

    @property
    def session_duration_ms(self) -> int:
        return int((time.monotonic() - self._start_monotonic) * 1000)

    def session_info(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "session_start_time": self.session_start.isoformat(),
            "session_duration_ms": self.session_duration_ms,
            "log_file_path": str(self.log_path),
        }

    def _write(self, entry: Dict[str, Any]) -> bool:
        entry.setdefault("timestamp", _utc_now_iso())
        entry["service"] = SERVICE_NAME
        entry["session_id"] = self.session_id
        try:
            # Serialize outside the lock to keep the critical section short
            json_line = json.dumps(entry, ensure_ascii=False, default=str) + "\n"
            with self._lock:
                with open(self.log_path, "a", encoding="utf-8") as f:
                    f.write(json_line)
        except Exception as log_error:
            logger.warning(
                "Failed to write session log (%s): %s", self.log_path, log_error
            )
            return False
        return True

    def log_interaction(self, profile: str, version: str, record: Dict[str, Any]) -> None:
        """Write one completed request/response record."""
        entry = {
            "level": "info",
            "message": "API Interaction",
            "event": "interaction",
            **record,
            "profile": profile,
            "version": version,
        }
        if not self._write(entry):
            return
        response = record.get("response") or {}
        logger.info(
            "[exchange] profile=%s version=%s id=%s status=%s mode=%s duration=%sms",
            profile,
            version,
            record.get("request_id"),
            response.get("status"),
            record.get("relay_mode"),
            record.get("duration_ms"),
        )

    def log_error(
        self,
        profile: str,
        version: str,
        message: str,
        error: BaseException,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Write one error record with the exception and request context."""
        try:
            error_info = describe_error(error)
        except Exception as describe_failure:
            error_info = {"message": str(error), "describe_error": str(describe_failure)}
        entry = {
            "level": "error",
            "message": message,
            "event": "error",
            "error": error_info,
            "context": context or {},
            "profile": profile,
            "version": version,
        }
        if not self._write(entry):
            return
        logger.warning(
            "[exchange] profile=%s version=%s id=%s error=%s: %s",
            profile,
            version,
            (context or {}).get("request_id"),
            message,
            error_info.get("message"),
        )

    def log_session_info(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        self._write({"level": "info", "message": message, "event": "session", **(data or {})})

    def close(self) -> None:
        if self._closed:
            return
        self.log_session_info(
            "Session ending",
            {
                "session_end_time": _utc_now_iso(),
                "session_duration_ms": self.session_duration_ms,
            },
        )
        self._closed = True
