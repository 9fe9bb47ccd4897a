import os
import tempfile

# Must be set before any quotapulse imports that use settings.data_dir
os.environ["DATA_DIR"] = tempfile.mkdtemp()

import json
from datetime import datetime, timedelta, timezone

import pytest
from quotapulse.usage.layouts import ClaudeLogLayout, CodexLogLayout

# A Monday, so weekly resets land a full week out
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def iso(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%dT%H:%M:%S.000Z")


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def clock():
    return lambda: NOW


@pytest.fixture
def write_jsonl():
    """Write records (dicts or raw strings) as JSON lines and pin the file's mtime."""

    def _write(path, records, mtime: datetime = NOW):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            for record in records:
                f.write(record if isinstance(record, str) else json.dumps(record))
                f.write("\n")
        os.utime(path, (mtime.timestamp(), mtime.timestamp()))
        return path

    return _write


@pytest.fixture
def claude_entry():
    def _entry(
        at: datetime,
        input_tokens: int = 0,
        output_tokens: int = 0,
        cache_read: int = 0,
        cache_write: int = 0,
        model: str | None = "claude-sonnet-4-5-20250929",
        message_id: str | None = "msg_1",
        request_id: str | None = "req_1",
        session_id: str = "session-a",
    ) -> dict:
        message = {
            "id": message_id,
            "role": "assistant",
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_write,
            },
        }
        if model is not None:
            message["model"] = model
        record = {"type": "assistant", "timestamp": iso(at), "sessionId": session_id, "message": message}
        if request_id is not None:
            record["requestId"] = request_id
        return record

    return _entry


@pytest.fixture
def codex_events():
    """Builders for the three Codex rollout record types the scanner reads."""

    class _Codex:
        @staticmethod
        def session_meta(session_id: str, at: datetime = NOW - timedelta(hours=3)) -> dict:
            return {"timestamp": iso(at), "type": "session_meta", "payload": {"id": session_id, "cwd": "/work"}}

        @staticmethod
        def turn_context(model: str, at: datetime = NOW - timedelta(hours=3)) -> dict:
            return {"timestamp": iso(at), "type": "turn_context", "payload": {"model": model, "cwd": "/work"}}

        @staticmethod
        def token_count(at: datetime, total: tuple | None = None, last: tuple | None = None) -> dict:
            info = {}
            for key, value in (("total_token_usage", total), ("last_token_usage", last)):
                if value is not None:
                    input_tokens, cached, output = value
                    info[key] = {
                        "input_tokens": input_tokens,
                        "cached_input_tokens": cached,
                        "output_tokens": output,
                        "reasoning_output_tokens": 0,
                        "total_tokens": input_tokens + output,
                    }
            return {"timestamp": iso(at), "type": "event_msg", "payload": {"type": "token_count", "info": info}}

    return _Codex()


@pytest.fixture
def claude_home(tmp_path):
    return tmp_path / "claude"


@pytest.fixture
def claude_layout(claude_home):
    return ClaudeLogLayout(config_dirs=[claude_home])


@pytest.fixture
def codex_home(tmp_path):
    return tmp_path / "codex"


@pytest.fixture
def codex_layout(codex_home):
    return CodexLogLayout(codex_home=codex_home)
