import json

import httpx

from llmrelay.exchange_logger import SessionLogger
from llmrelay.recorder import (
    REDACTED,
    InteractionRecorder,
    body_for_log,
    build_request_snapshot,
    headers_for_log,
    redact_record,
)


def _read_jsonl_entries(path):
    with open(path, "r", encoding="utf-8") as f:
        return [json.loads(line) for line in f if line.strip()]


def _recorder(tmp_path, sensitive_values=None):
    sink = SessionLogger(str(tmp_path))
    snapshot = build_request_snapshot(
        "POST",
        "/openai/v1/chat",
        {"authorization": "Bearer client-token", "content-type": "application/json"},
        b'{"a":1}',
        {"a": 1},
        {},
    )
    return sink, InteractionRecorder(
        sink, "req-1", "openai", "v1", snapshot, sensitive_values=sensitive_values
    )


def test_redact_record_replaces_sensitive_headers_only():
    record = {
        "request": {
            "headers": {"Authorization": "Bearer x", "X-Api-Key": "k", "cookie": "c", "accept": "*/*"},
            "body": {"big": "payload"},
        },
        "response": {"headers": {"set-cookie": "s", "content-type": "application/json"}},
    }

    redacted = redact_record(record)

    assert redacted["request"]["headers"] == {
        "Authorization": REDACTED,
        "X-Api-Key": REDACTED,
        "cookie": REDACTED,
        "accept": "*/*",
    }
    assert redacted["response"]["headers"]["set-cookie"] == REDACTED
    assert redacted["response"]["headers"]["content-type"] == "application/json"
    # Bodies are shared, not copied
    assert redacted["request"]["body"] is record["request"]["body"]
    # Input is untouched
    assert record["request"]["headers"]["Authorization"] == "Bearer x"


def test_redact_record_is_idempotent():
    record = {
        "request": {"headers": {"authorization": "Bearer x"}},
        "context": {"request": {"headers": {"x-api-key": "k"}}},
    }
    once = redact_record(record)
    assert redact_record(once) == once
    assert once["context"]["request"]["headers"]["x-api-key"] == REDACTED


def test_body_for_log_parses_json_and_truncates():
    assert body_for_log(b'{"id":"abc"}') == {"id": "abc"}
    assert body_for_log(b"plain text") == "plain text"
    assert body_for_log(b"") == ""
    truncated = body_for_log(b"0123456789", limit=4)
    assert truncated == {"truncated": True, "limit": 4, "text": "0123"}


def test_headers_for_log_groups_repeated_names():
    logged = headers_for_log(
        httpx.Headers([("accept", "*/*"), ("x-tag", "a"), ("x-tag", "b"), ("x-tag", "c")])
    )
    assert logged == {"accept": "*/*", "x-tag": ["a", "b", "c"]}
    assert headers_for_log({"content-type": "application/json"}) == {
        "content-type": "application/json"
    }


def test_record_success_is_written_once(tmp_path):
    sink, recorder = _recorder(tmp_path)

    assert recorder.record_success(200, {"content-type": "application/json"}, {"id": "abc"})
    assert not recorder.record_success(200, {}, {"id": "again"})
    assert not recorder.record_error("late", RuntimeError("late"))
    assert recorder.finished

    entries = [e for e in _read_jsonl_entries(sink.log_path) if e["event"] != "session"]
    assert len(entries) == 1
    entry = entries[0]
    assert entry["event"] == "interaction"
    assert entry["response"]["status"] == 200
    assert entry["response"]["body"] == {"id": "abc"}
    assert entry["request"]["headers"]["authorization"] == REDACTED
    assert entry["request"]["body"] == {"a": 1}


def test_record_error_sanitizes_message_and_redacts_context(tmp_path):
    sink, recorder = _recorder(tmp_path, sensitive_values=["sk-upstream"])
    recorder.target_url = "https://api.openai.com/v1/chat"

    recorder.record_error(
        "Proxy request failed",
        RuntimeError("rejected key sk-upstream"),
        status_code=502,
    )

    entry = _read_jsonl_entries(sink.log_path)[-1]
    assert entry["event"] == "error"
    assert entry["context"]["status_code"] == 502
    assert entry["context"]["error_message"] == "rejected key [REDACTED]"
    assert entry["context"]["request"]["headers"]["authorization"] == REDACTED
    assert entry["context"]["target_url"] == "https://api.openai.com/v1/chat"


def test_log_nonfatal_does_not_finish_interaction(tmp_path):
    sink, recorder = _recorder(tmp_path)

    recorder.log_nonfatal("Error writing streaming chunk", ValueError("bad chunk"))
    assert not recorder.finished
    assert recorder.record_success(200, {}, "ok")

    events = [e["event"] for e in _read_jsonl_entries(sink.log_path)]
    assert events.count("error") == 1
    assert events.count("interaction") == 1
