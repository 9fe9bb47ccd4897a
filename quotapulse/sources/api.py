import asyncio
from datetime import datetime
from typing import Callable

from quotapulse.budget.expense import ExpenseAnalyzer
from quotapulse.models import (
    IdentityCard,
    ProviderProfile,
    ProviderReading,
    ReadingConfidence,
    ReadingSource,
    UsagePulse,
    utcnow,
)
from quotapulse.observability.logger import get_logger
from quotapulse.providers.base import UsageFetcher, UsageSnapshot
from quotapulse.sources.base import SignalSource, SourceUnavailable, safe_digest
from quotapulse.usage.formatter import format_relative_time

log = get_logger("sources.api")


class ApiUsageSource(SignalSource):
    """Reads the provider's authenticated usage endpoint. Most trusted when it works."""

    def __init__(
        self,
        profile: ProviderProfile,
        fetcher: UsageFetcher,
        expense: ExpenseAnalyzer | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._profile = profile
        self.fetcher = fetcher
        self.expense = expense
        self._clock = clock

    @property
    def profile(self) -> ProviderProfile:
        return self._profile

    async def _fetch(self) -> UsageSnapshot | str:
        try:
            return await self.fetcher.fetch()
        except SourceUnavailable as e:
            return str(e)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning("api_fetch_failed", provider=self.provider_id, error=str(e))
            return f"{self._profile.display_name} usage unavailable"

    async def read(self) -> ProviderReading:
        # The network call and the log digest are independent
        fetched, digest = await asyncio.gather(self._fetch(), safe_digest(self.expense, self.provider_id))
        now = self._clock()

        if isinstance(fetched, str):
            return ProviderReading.unavailable(fetched, now, ReadingSource.API)

        identity = IdentityCard(
            provider_id=self.provider_id,
            display_name=self._profile.display_name,
            email=fetched.account,
            plan=fetched.plan,
            login_method=fetched.login_method,
        )
        if not fetched.has_usage:
            return ProviderReading.unavailable(
                f"No {self._profile.display_name} usage data available", now, ReadingSource.API, identity
            )

        usage = UsagePulse(
            provider_id=self.provider_id,
            captured_at=fetched.fetched_at,
            session=fetched.session,
            week=fetched.week,
            spending_bucket=fetched.bucket,
            consumption=digest,
            session_window=fetched.session_window,
            week_window=fetched.week_window,
        )
        return ProviderReading(
            usage=usage,
            identity=identity,
            status_summary=f"Updated {format_relative_time(fetched.fetched_at, now)}",
            captured_at=fetched.fetched_at,
            confidence=ReadingConfidence.HIGH,
            source=ReadingSource.API,
        )
