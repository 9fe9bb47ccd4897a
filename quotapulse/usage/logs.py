"""Streaming primitives shared by the log scanner and the cost digestor.

Session logs are append-only JSON lines that can grow without bound, so
files are read line by line with a hard per-line cap and never buffered
whole.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

from quotapulse.core.blocking import CancelToken
from quotapulse.observability.logger import get_logger

log = get_logger("usage_logs")

MAX_LINE_BYTES = 512 * 1024
_CHUNK = 64 * 1024


def iter_lines(path: Path, cancel: CancelToken | None = None, max_line_bytes: int = MAX_LINE_BYTES) -> Iterator[str]:
    """Yield decoded lines of `path`.

    A line longer than `max_line_bytes` is drained in chunks and yielded as
    an empty string. A missing or unreadable file yields nothing.
    """
    try:
        f = open(path, "rb")
    except OSError as e:
        log.debug("log_file_unreadable", path=str(path), error=str(e))
        return

    with f:
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            try:
                raw = f.readline(max_line_bytes + 1)
            except OSError as e:
                log.debug("log_read_failed", path=str(path), error=str(e))
                return
            if not raw:
                return
            if len(raw) > max_line_bytes and not raw.endswith(b"\n"):
                _drain_line(f)
                yield ""
                continue
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")


def _drain_line(f):
    while True:
        chunk = f.readline(_CHUNK)
        if not chunk or chunk.endswith(b"\n"):
            return


def iter_records(path: Path, cancel: CancelToken | None = None) -> Iterator[dict]:
    """Yield parsed JSON objects, skipping blank, oversized and malformed lines."""
    for line in iter_lines(path, cancel):
        if not line or not line.strip():
            continue
        try:
            record = json.loads(line)
        except ValueError:
            continue
        if isinstance(record, dict):
            yield record


def parse_timestamp(value) -> datetime | None:
    """Parse an ISO-8601 string (or unix seconds) into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def safe_int(value) -> int:
    """Coerce a JSON number to a non-negative int."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        result = int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            result = int(float(value))
        except (TypeError, ValueError, OverflowError):
            return 0
    return max(0, result)


def get_dict(record: dict, key: str) -> dict | None:
    value = record.get(key)
    return value if isinstance(value, dict) else None


def get_str(record: dict, key: str) -> str | None:
    value = record.get(key)
    if isinstance(value, str) and value.strip():
        return value
    return None


def recent_files(root: Path, cutoff: datetime, pattern: str = "*.jsonl") -> list[Path]:
    """Files under `root` matching `pattern` modified at or after `cutoff`."""
    if not root.is_dir():
        return []
    cutoff_ts = cutoff.timestamp()
    found = []
    for path in root.rglob(pattern):
        try:
            if path.is_file() and os.path.getmtime(path) >= cutoff_ts:
                found.append(path)
        except OSError:
            continue
    return sorted(found)
