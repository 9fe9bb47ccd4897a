import asyncio
import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

import httpx
from pydantic import BaseModel

from quotapulse.models import MonetaryBucket, PercentMeter, QuotaWindow, utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.providers.base import UsageFetcher, UsageSnapshot, number, title_words
from quotapulse.sources.base import CredentialLookup, SourceUnavailable
from quotapulse.usage.logs import get_dict, parse_timestamp

log = get_logger("providers.claude")

SESSION_DURATION = timedelta(hours=5)
WEEK_DURATION = timedelta(days=7)
OAUTH_BETA = "oauth-2025-04-20"
# Converted overage ceilings above this are reported in the wrong unit
PLAUSIBLE_CEILING_USD = Decimal("500")


class ClaudeCredentials(BaseModel):
    access_token: str
    expires_at: datetime | None = None
    subscription_type: str | None = None
    rate_limit_tier: str | None = None


def load_claude_credentials(config_dirs: list[Path]) -> ClaudeCredentials | None:
    """First `.credentials.json` with a `claudeAiOauth.accessToken`."""
    for config_dir in config_dirs:
        path = config_dir / ".credentials.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            continue
        except (OSError, ValueError) as e:
            log.warning("credentials_unreadable", path=str(path), error=str(e))
            continue
        oauth = get_dict(data, "claudeAiOauth") if isinstance(data, dict) else None
        if not oauth or not isinstance(oauth.get("accessToken"), str):
            continue
        expires_ms = number(oauth.get("expiresAt"))
        return ClaudeCredentials(
            access_token=oauth["accessToken"],
            expires_at=datetime.fromtimestamp(expires_ms / 1000, tz=timezone.utc) if expires_ms else None,
            subscription_type=oauth.get("subscriptionType"),
            rate_limit_tier=oauth.get("rateLimitTier"),
        )
    return None


def normalize_overage(used: Decimal, limit: Decimal, tier: str | None) -> tuple[Decimal, Decimal]:
    """Convert cents to dollars, with a second /100 for tiers that over-report."""
    used_usd = used / 100
    limit_usd = limit / 100
    is_enterprise = bool(tier) and "enterprise" in tier.lower()
    if not is_enterprise and limit_usd > PLAUSIBLE_CEILING_USD:
        used_usd /= 100
        limit_usd /= 100
    return used_usd, limit_usd


def _window(body: dict, key: str, duration: timedelta) -> tuple[PercentMeter | None, QuotaWindow]:
    section = get_dict(body, key) or {}
    utilization = number(section.get("utilization"))
    meter = PercentMeter(used_percent=max(0.0, min(100.0, utilization))) if utilization is not None else None
    return meter, QuotaWindow(duration=duration, resets_at=parse_timestamp(section.get("resets_at")))


def parse_claude_usage(body: dict, credentials: ClaudeCredentials | None, fetched_at: datetime) -> UsageSnapshot:
    session, session_window = _window(body, "five_hour", SESSION_DURATION)
    week, week_window = _window(body, "seven_day", WEEK_DURATION)

    bucket = None
    extra = get_dict(body, "extra_usage")
    if extra and extra.get("is_enabled") is True:
        used = number(extra.get("used_credits"))
        limit = number(extra.get("monthly_limit"))
        if used is not None and limit is not None:
            tier = None
            if credentials is not None:
                tier = " ".join(filter(None, [credentials.subscription_type, credentials.rate_limit_tier]))
            spent, cap = normalize_overage(Decimal(str(used)), Decimal(str(limit)), tier)
            bucket = MonetaryBucket.for_overage_spend(spent, cap)

    return UsageSnapshot(
        fetched_at=fetched_at,
        session=session,
        week=week,
        session_window=session_window,
        week_window=week_window,
        bucket=bucket,
        plan=title_words(credentials.subscription_type if credentials else None),
        login_method="OAuth",
    )


class ClaudeOAuthFetcher(UsageFetcher):
    name = "Claude"
    base_url = "https://api.anthropic.com"
    usage_path = "/api/oauth/usage"

    def __init__(
        self,
        config_dirs: list[Path],
        credentials: CredentialLookup | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
        credential_key: str = "claude",
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.config_dirs = config_dirs
        self.credential_key = credential_key
        self._lookup = credentials
        self._clock = clock

    async def _resolve(self) -> tuple[str, ClaudeCredentials | None]:
        stored = await asyncio.to_thread(load_claude_credentials, self.config_dirs)
        supplied = self._lookup(self.credential_key) if self._lookup else None
        if supplied and supplied.strip():
            return supplied.strip(), stored
        if stored is None:
            raise SourceUnavailable("Claude credentials not found")
        if stored.expires_at is not None and stored.expires_at <= self._clock():
            raise SourceUnavailable("Claude login expired")
        return stored.access_token, stored

    async def fetch(self) -> UsageSnapshot:
        token, stored = await self._resolve()
        body = await self._get_json(
            self.usage_path,
            headers={"Authorization": f"Bearer {token}", "anthropic-beta": OAUTH_BETA},
        )
        return parse_claude_usage(body, stored, self._clock())
