import asyncio
from datetime import datetime, timedelta
from typing import Callable

from quotapulse.budget.expense import ExpenseAnalyzer
from quotapulse.models import (
    IdentityCard,
    ProviderProfile,
    ProviderReading,
    QuotaWindow,
    ReadingConfidence,
    ReadingSource,
    TokenMeter,
    UsagePulse,
    utcnow,
)
from quotapulse.observability.logger import get_logger
from quotapulse.sources.base import SignalSource, safe_digest
from quotapulse.usage.formatter import format_relative_time
from quotapulse.usage.scanner import UsageLogScanner

log = get_logger("sources.logs")


def estimate_session_reset(session_start: datetime | None, now: datetime, duration: timedelta) -> datetime:
    """End of the session window that began at `session_start`, or a fresh window from now."""
    if session_start is None or now - session_start >= duration:
        return now + duration
    return session_start + duration


def next_weekly_reset(now: datetime) -> datetime:
    """Next Monday 00:00 UTC, strictly after `now`."""
    days = (0 - now.weekday()) % 7 or 7
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return midnight + timedelta(days=days)


class LogUsageSource(SignalSource):
    """Token usage from local session logs. Works offline, but has no notion of the quota limit."""

    def __init__(
        self,
        profile: ProviderProfile,
        scanner: UsageLogScanner,
        expense: ExpenseAnalyzer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._profile = profile
        self.scanner = scanner
        self.expense = expense
        self._clock = clock

    @property
    def profile(self) -> ProviderProfile:
        return self._profile

    async def read(self) -> ProviderReading:
        # Scan and digest read the same files; running them one after another keeps peak memory down
        try:
            result = await self.scanner.scan_async()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("log_scan_failed", provider=self.provider_id, error=str(e))
            return ProviderReading.unavailable(
                f"{self._profile.display_name} logs unreadable", self._clock(), ReadingSource.LOCAL_LOG
            )
        now = self._clock()

        if result.session_tokens == 0 and result.week_tokens == 0:
            return ProviderReading.unavailable(
                f"No {self._profile.display_name} usage data available", now, ReadingSource.LOCAL_LOG
            )

        digest = await safe_digest(self.expense, self.provider_id)
        session_duration = self.scanner.session_window
        week_duration = self.scanner.week_window
        captured_at = result.latest_timestamp or now

        usage = UsagePulse(
            provider_id=self.provider_id,
            captured_at=captured_at,
            session=TokenMeter(tokens=result.session_tokens) if result.session_tokens else None,
            week=TokenMeter(tokens=result.week_tokens) if result.week_tokens else None,
            consumption=digest,
            session_window=QuotaWindow(
                duration=session_duration,
                resets_at=estimate_session_reset(result.session_start, now, session_duration),
            ),
            week_window=QuotaWindow(duration=week_duration, resets_at=next_weekly_reset(now)),
        )
        return ProviderReading(
            usage=usage,
            identity=IdentityCard(provider_id=self.provider_id, display_name=self._profile.display_name),
            status_summary=f"Updated {format_relative_time(captured_at, now)}",
            captured_at=captured_at,
            confidence=ReadingConfidence.MEDIUM,
            source=ReadingSource.LOCAL_LOG,
        )
