"""Scrape quota percentages from an assistant's own status command.

Output formats drift between CLI releases, so parsing is deliberately
permissive: a line naming a window (session / 5-hour, week / 7-day) opens
that section, and the next percentage or reset phrase on the same or a
following line is attributed to it.
"""

import asyncio
import re
from datetime import datetime, timedelta

from pydantic import BaseModel

from quotapulse.models import utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.sources.base import SourceUnavailable

log = get_logger("providers.cli")

_PERCENT = re.compile(r"(?<![\d.])(\d{1,3}(?:\.\d+)?)\s*%")
_RESET = re.compile(
    r"resets?\s+in\s+(?:(\d+)\s*d(?:ays?)?)?\s*(?:(\d+)\s*h(?:(?:ou)?rs?)?)?\s*(?:(\d+)\s*m(?:in(?:ute)?s?)?)?",
    re.IGNORECASE,
)
_ANSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_SESSION_WORDS = ("session", "5h limit", "5 hour", "5-hour", "five hour")
_WEEK_WORDS = ("week", "7 day", "7-day", "seven day")
_REMAINING_WORDS = ("remaining", "left", "available")


class CliUsage(BaseModel):
    model_config = {"frozen": True}

    session_percent: float | None = None
    session_resets_at: datetime | None = None
    week_percent: float | None = None
    week_resets_at: datetime | None = None

    @property
    def has_usage(self) -> bool:
        return self.session_percent is not None or self.week_percent is not None


def _section_of(lowered: str) -> str | None:
    if any(w in lowered for w in _SESSION_WORDS):
        return "session"
    if any(w in lowered for w in _WEEK_WORDS):
        return "week"
    return None


def _used_percent(match: re.Match, lowered: str) -> float:
    value = max(0.0, min(100.0, float(match.group(1))))
    # The word right after the number wins over the rest of the line
    following = lowered[match.end():match.end() + 16]
    if "used" in following:
        return value
    if any(w in following or w in lowered for w in _REMAINING_WORDS):
        return 100.0 - value
    return value


def _reset_in(line: str, now: datetime) -> datetime | None:
    for match in _RESET.finditer(line):
        days, hours, minutes = (int(g) if g else 0 for g in match.groups())
        if days or hours or minutes:
            return now + timedelta(days=days, hours=hours, minutes=minutes)
    return None


def parse_cli_usage(text: str, now: datetime | None = None) -> CliUsage:
    now = now or utcnow()
    found: dict[str, float | datetime] = {}
    section = None

    for raw_line in _ANSI.sub("", text).splitlines():
        line = raw_line.strip()
        if not line:
            continue
        lowered = line.lower()
        section = _section_of(lowered) or section
        if section is None:
            continue

        percent = _PERCENT.search(line)
        if percent and f"{section}_percent" not in found:
            found[f"{section}_percent"] = _used_percent(percent, lowered)

        resets = _reset_in(line, now)
        if resets and f"{section}_resets_at" not in found:
            found[f"{section}_resets_at"] = resets

    return CliUsage(**found)


class CliProbe:
    """Runs `<command> <args>` and returns its stdout."""

    def __init__(self, command: str, args: list[str], timeout: float = 15.0):
        self.command = command
        self.args = args
        self.timeout = timeout

    async def run(self) -> str:
        try:
            process = await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise SourceUnavailable(f"{self.command} CLI not found") from e

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._kill(process)
            await process.wait()
            raise SourceUnavailable(f"{self.command} CLI timed out")
        except asyncio.CancelledError:
            self._kill(process)
            raise

        output = stdout.decode("utf-8", errors="replace")
        if process.returncode not in (0, None) and not output.strip():
            raise SourceUnavailable(f"{self.command} CLI exited with {process.returncode}")
        return output

    @staticmethod
    def _kill(process):
        try:
            process.kill()
        except ProcessLookupError:
            pass
        log.warning("cli_probe_killed", pid=process.pid)

    async def probe(self, now: datetime | None = None) -> CliUsage:
        usage = parse_cli_usage(await self.run(), now)
        if not usage.has_usage:
            raise SourceUnavailable(f"{self.command} CLI reported no usage")
        return usage
