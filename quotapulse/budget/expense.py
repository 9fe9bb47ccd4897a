import asyncio
import time
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Callable

from quotapulse.budget.digestor import LogDigestor
from quotapulse.budget.models import DEFAULT_WINDOW_DAYS, ConsumptionDigest, ConsumptionSlice, TokenLedger
from quotapulse.observability.logger import get_logger

log = get_logger("expense")


def build_digest(
    slices: list[ConsumptionSlice],
    today: date,
    window_days: int,
    now: datetime,
) -> ConsumptionDigest:
    if not slices:
        return ConsumptionDigest.none(window_days, now)

    today_tokens = TokenLedger.empty()
    today_cost = Decimal("0")
    rolling_tokens = TokenLedger.empty()
    rolling_cost = Decimal("0")
    for s in slices:
        rolling_tokens = rolling_tokens.combine(s.tokens)
        rolling_cost += s.cost_usd
        if s.day == today:
            today_tokens = today_tokens.combine(s.tokens)
            today_cost += s.cost_usd

    return ConsumptionDigest(
        today_tokens=today_tokens,
        today_cost_usd=today_cost,
        rolling_tokens=rolling_tokens,
        rolling_cost_usd=rolling_cost,
        rolling_window_days=window_days,
        daily_breakdown=tuple(slices),
        computed_at=now,
    )


class ExpenseAnalyzer:
    """Today and rolling-window cost per provider, computed from local logs.

    Concurrent requests for the same provider share one digest run, and a
    finished digest is reused for `cache_seconds` so that every source of a
    provider can attach cost within one refresh cycle without re-reading the
    logs.
    """

    def __init__(
        self,
        digestors: dict[str, LogDigestor],
        window_days: int = DEFAULT_WINDOW_DAYS,
        cache_seconds: float = 60.0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.digestors = digestors
        self.window_days = window_days
        self.cache_seconds = cache_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cache: dict[str, tuple[float, ConsumptionDigest]] = {}
        self._inflight: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, int] = {}

    def supports(self, provider_id: str) -> bool:
        return provider_id in self.digestors

    def invalidate(self, provider_id: str | None = None):
        if provider_id is None:
            self._cache.clear()
        else:
            self._cache.pop(provider_id, None)

    async def analyze(self, provider_id: str) -> ConsumptionDigest:
        digestor = self.digestors.get(provider_id)
        if digestor is None:
            return ConsumptionDigest.none(self.window_days, self._clock())

        cached = self._cache.get(provider_id)
        if cached is not None and cached[0] > time.monotonic():
            return cached[1]

        task = self._inflight.get(provider_id)
        if task is None:
            task = asyncio.ensure_future(self._compute(provider_id, digestor))
            self._inflight[provider_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(provider_id, None))

        self._waiters[provider_id] = self._waiters.get(provider_id, 0) + 1
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # Stop the shared run only once nobody is waiting for it
            if self._waiters.get(provider_id, 0) <= 1 and not task.done():
                task.cancel()
            raise
        finally:
            self._waiters[provider_id] = self._waiters.get(provider_id, 1) - 1

    async def _compute(self, provider_id: str, digestor: LogDigestor) -> ConsumptionDigest:
        now = self._clock()
        today = now.date()
        since = today - timedelta(days=self.window_days - 1)
        slices = await digestor.digest_async(since, today)
        digest = build_digest(slices, today, self.window_days, self._clock())
        if self.cache_seconds > 0:
            self._cache[provider_id] = (time.monotonic() + self.cache_seconds, digest)
        log.info(
            "digest_computed",
            provider=provider_id,
            today_cost=str(digest.today_cost_usd),
            rolling_cost=str(digest.rolling_cost_usd),
            slices=len(digest.daily_breakdown),
        )
        return digest
