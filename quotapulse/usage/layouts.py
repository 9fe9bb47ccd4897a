"""Where each provider keeps its session logs on disk."""

from abc import ABC, abstractmethod
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

from quotapulse.usage.logs import recent_files
from quotapulse.usage.strategies import CumulativeTotalsStrategy, IncrementalUsageStrategy, IngestionStrategy


def _day_start(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _unique(paths: list[Path]) -> list[Path]:
    seen = set()
    result = []
    for path in paths:
        key = str(path)
        if key not in seen:
            seen.add(key)
            result.append(path)
    return result


class LogLayout(ABC):
    provider_id: str = "base"

    @abstractmethod
    def roots(self) -> list[Path]:
        pass

    @abstractmethod
    def new_strategy(self) -> IngestionStrategy:
        pass

    def files_modified_since(self, cutoff: datetime) -> list[Path]:
        files = []
        for root in self.roots():
            files.extend(recent_files(root, cutoff))
        return _unique(files)

    def files_for_days(self, since: date, until: date) -> list[Path]:
        """Files that may hold events dated within [since, until]."""
        return self.files_modified_since(_day_start(since) - timedelta(days=1))


class ClaudeLogLayout(LogLayout):
    """`<config dir>/projects/**/*.jsonl`, searched recursively (subagents nest)."""

    provider_id = "claude"

    def __init__(self, config_dirs: list[Path] | None = None, home: Path | None = None):
        self.config_dirs = config_dirs or []
        self.home = home or Path.home()

    def roots(self) -> list[Path]:
        if self.config_dirs:
            roots = []
            for base in self.config_dirs:
                roots.append(base if base.name.lower() == "projects" else base / "projects")
            return _unique(roots)
        return [self.home / ".config" / "claude" / "projects", self.home / ".claude" / "projects"]

    def new_strategy(self) -> IngestionStrategy:
        return IncrementalUsageStrategy()


class CodexLogLayout(LogLayout):
    """`<codex home>/sessions/YYYY/MM/DD/*.jsonl` plus flat `archived_sessions`."""

    provider_id = "codex"

    def __init__(self, codex_home: Path | None = None):
        self.codex_home = codex_home or Path.home() / ".codex"

    @property
    def sessions_dir(self) -> Path:
        return self.codex_home / "sessions"

    @property
    def archived_dir(self) -> Path:
        return self.codex_home / "archived_sessions"

    def roots(self) -> list[Path]:
        return [self.sessions_dir, self.archived_dir]

    def new_strategy(self) -> IngestionStrategy:
        return CumulativeTotalsStrategy()

    def files_for_days(self, since: date, until: date) -> list[Path]:
        files = []
        day = since
        while day <= until:
            day_dir = self.sessions_dir / f"{day.year:04d}" / f"{day.month:02d}" / f"{day.day:02d}"
            if day_dir.is_dir():
                files.extend(sorted(day_dir.glob("*.jsonl")))
            day += timedelta(days=1)
        # Archived sessions are not date-partitioned
        files.extend(recent_files(self.archived_dir, _day_start(since) - timedelta(days=1)))
        return _unique(files)
