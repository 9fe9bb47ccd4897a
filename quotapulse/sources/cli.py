import asyncio
from datetime import datetime, timedelta
from typing import Callable

from quotapulse.budget.expense import ExpenseAnalyzer
from quotapulse.models import (
    IdentityCard,
    PercentMeter,
    ProviderProfile,
    ProviderReading,
    QuotaWindow,
    ReadingConfidence,
    ReadingSource,
    UsagePulse,
    utcnow,
)
from quotapulse.observability.logger import get_logger
from quotapulse.providers.cli import CliProbe
from quotapulse.sources.base import SignalSource, SourceUnavailable, safe_digest

log = get_logger("sources.cli")

SESSION_DURATION = timedelta(hours=5)
WEEK_DURATION = timedelta(days=7)


class CliProbeSource(SignalSource):
    """Percentages scraped from the assistant's status command; least trusted."""

    def __init__(
        self,
        profile: ProviderProfile,
        probe: CliProbe,
        expense: ExpenseAnalyzer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._profile = profile
        self.probe = probe
        self.expense = expense
        self._clock = clock

    @property
    def profile(self) -> ProviderProfile:
        return self._profile

    async def read(self) -> ProviderReading:
        try:
            result = await self.probe.probe(self._clock())
        except SourceUnavailable as e:
            return ProviderReading.unavailable(str(e), self._clock(), ReadingSource.CLI)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("cli_probe_failed", provider=self.provider_id, error=str(e))
            return ProviderReading.unavailable(
                f"{self._profile.display_name} CLI unavailable", self._clock(), ReadingSource.CLI
            )

        digest = await safe_digest(self.expense, self.provider_id)
        now = self._clock()
        usage = UsagePulse(
            provider_id=self.provider_id,
            captured_at=now,
            session=PercentMeter(used_percent=result.session_percent) if result.session_percent is not None else None,
            week=PercentMeter(used_percent=result.week_percent) if result.week_percent is not None else None,
            consumption=digest,
            session_window=QuotaWindow(duration=SESSION_DURATION, resets_at=result.session_resets_at),
            week_window=QuotaWindow(duration=WEEK_DURATION, resets_at=result.week_resets_at),
        )
        return ProviderReading(
            usage=usage,
            identity=IdentityCard(provider_id=self.provider_id, display_name=self._profile.display_name, login_method="CLI"),
            status_summary="Updated just now",
            captured_at=now,
            confidence=ReadingConfidence.LOW,
            source=ReadingSource.CLI,
        )
