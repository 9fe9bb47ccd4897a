"""How token usage is recovered from each provider's session-log schema.

Two schemas exist in the wild:

* cumulative totals (Codex): `token_count` events carry running totals per
  session, so usage is the positive difference from the previous sighting;
* incremental usage (Claude): each assistant message carries its own usage,
  but streaming writes the same message several times, so entries are
  deduplicated by (message id, request id).

A strategy instance holds the bookkeeping for exactly one scan; create a
fresh one per scan.
"""

import json
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterator, NamedTuple

from quotapulse.budget.models import TokenLedger
from quotapulse.core.blocking import CancelToken
from quotapulse.usage.logs import get_dict, get_str, iter_lines, parse_timestamp, safe_int

MAX_DEDUPE_KEYS = 200_000
DEFAULT_CODEX_MODEL = "gpt-5"


class UsageEvent(NamedTuple):
    timestamp: datetime
    session_id: str
    model: str | None
    ledger: TokenLedger


class IngestionStrategy(ABC):
    """Turns the lines of one log file into usage events."""

    family: str = "base"

    @abstractmethod
    def prefilter(self, line: str) -> bool:
        """Cheap substring check run before JSON parsing."""

    @abstractmethod
    def begin_file(self, path: Path):
        """Reset per-file context before reading `path`."""

    @abstractmethod
    def handle(self, record: dict, path: Path) -> UsageEvent | None:
        pass

    def events(self, path: Path, cancel: CancelToken | None = None) -> Iterator[UsageEvent]:
        self.begin_file(path)
        for line in iter_lines(path, cancel):
            if not line or not self.prefilter(line):
                continue
            try:
                record = json.loads(line)
            except ValueError:
                continue
            if not isinstance(record, dict):
                continue
            event = self.handle(record, path)
            if event is not None:
                yield event


class _Totals(NamedTuple):
    input: int
    cached: int
    output: int

    def minus(self, previous: "_Totals") -> "_Totals":
        return _Totals(
            max(0, self.input - previous.input),
            max(0, self.cached - previous.cached),
            max(0, self.output - previous.output),
        )

    def to_ledger(self) -> TokenLedger:
        # Codex reports cached tokens as a subset of input tokens
        cached = min(self.cached, self.input)
        return TokenLedger(
            standard_input=self.input - cached,
            cached_input=cached,
            generated_output=self.output,
        )


def _read_totals(usage: dict) -> _Totals:
    cached = safe_int(usage.get("cached_input_tokens"))
    if cached == 0:
        cached = safe_int(usage.get("cache_read_input_tokens"))
    return _Totals(safe_int(usage.get("input_tokens")), cached, safe_int(usage.get("output_tokens")))


class CumulativeTotalsStrategy(IngestionStrategy):
    family = "codex"

    def __init__(self, default_model: str = DEFAULT_CODEX_MODEL):
        self.default_model = default_model
        self._last_totals: dict[str, _Totals] = {}
        self._active_session: str | None = None
        self._current_model: str | None = None

    def prefilter(self, line: str) -> bool:
        return '"token_count"' in line or '"session_meta"' in line or '"turn_context"' in line

    def begin_file(self, path: Path):
        self._active_session = None
        self._current_model = None

    def handle(self, record: dict, path: Path) -> UsageEvent | None:
        kind = get_str(record, "type")
        payload = get_dict(record, "payload")

        if kind == "session_meta":
            self._active_session = _session_id(record, payload) or self._active_session
            return None

        if kind == "turn_context":
            if payload is not None:
                info = get_dict(payload, "info") or {}
                self._current_model = get_str(payload, "model") or get_str(info, "model") or self._current_model
            return None

        if kind != "event_msg" or payload is None or get_str(payload, "type") != "token_count":
            return None

        timestamp = parse_timestamp(record.get("timestamp"))
        if timestamp is None:
            return None

        info = get_dict(payload, "info")
        if info is None:
            return None

        session_id = _session_id(record, payload) or self._active_session or str(path)
        model = get_str(info, "model") or get_str(info, "model_name") or self._current_model or self.default_model

        total = get_dict(info, "total_token_usage")
        last = get_dict(info, "last_token_usage")
        if total is not None:
            current = _read_totals(total)
            previous = self._last_totals.get(session_id)
            self._last_totals[session_id] = current
            delta = current.minus(previous) if previous is not None else current
        elif last is not None:
            delta = _read_totals(last)
        else:
            return None

        ledger = delta.to_ledger()
        if ledger.is_empty:
            return None
        return UsageEvent(timestamp, session_id, model, ledger)


def _session_id(record: dict, payload: dict | None) -> str | None:
    if payload is not None:
        found = get_str(payload, "session_id")
        if found is None and get_str(record, "type") == "session_meta":
            found = get_str(payload, "id")
        if found:
            return found
    return get_str(record, "session_id")


class IncrementalUsageStrategy(IngestionStrategy):
    family = "claude"

    def __init__(self, max_dedupe_keys: int = MAX_DEDUPE_KEYS):
        self.max_dedupe_keys = max_dedupe_keys
        self._seen: set[tuple[str, str]] = set()

    def prefilter(self, line: str) -> bool:
        return '"assistant"' in line and '"usage"' in line

    def begin_file(self, path: Path):
        pass

    def handle(self, record: dict, path: Path) -> UsageEvent | None:
        if get_str(record, "type") != "assistant":
            return None
        message = get_dict(record, "message")
        if message is None:
            return None
        usage = get_dict(message, "usage")
        if usage is None:
            return None

        timestamp = parse_timestamp(record.get("timestamp"))
        if timestamp is None:
            return None

        message_id = get_str(message, "id")
        request_id = get_str(record, "requestId")
        if message_id and request_id and not self._remember((message_id, request_id)):
            return None

        ledger = TokenLedger(
            standard_input=safe_int(usage.get("input_tokens")),
            cached_input=safe_int(usage.get("cache_read_input_tokens")),
            cache_write_input=safe_int(usage.get("cache_creation_input_tokens")),
            generated_output=safe_int(usage.get("output_tokens")),
        )
        if ledger.is_empty:
            return None

        session_id = get_str(record, "sessionId") or path.stem
        return UsageEvent(timestamp, session_id, get_str(message, "model"), ledger)

    def _remember(self, key: tuple[str, str]) -> bool:
        """Record a dedupe key; False if it was already seen.

        The set is cleared wholesale once it grows past the cap, so a
        duplicate straddling the clear can be counted twice.
        """
        if key in self._seen:
            return False
        if len(self._seen) >= self.max_dedupe_keys:
            self._seen.clear()
        self._seen.add(key)
        return True
