import asyncio
import calendar
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Sequence

import httpx
from pydantic import BaseModel

from quotapulse.models import CountMeter, QuotaWindow, utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.providers.base import UsageFetcher, UsageSnapshot, number, title_words
from quotapulse.sources.base import CredentialLookup, SourceUnavailable
from quotapulse.usage.logs import get_dict, get_str, parse_timestamp

log = get_logger("providers.copilot")

USAGE_PATHS = ("copilot_internal/user", "user/copilot/usage")
RETRY_DELAYS = (0.25, 0.8)
DEFAULT_MONTH = timedelta(days=30)

STATUS_MESSAGES = {
    401: "Copilot token rejected",
    403: "Copilot access denied for this token",
    429: "Copilot usage rate limited",
}


class CopilotQuota(BaseModel):
    entitlement: float
    remaining: float
    unlimited: bool = False

    @property
    def used(self) -> float:
        return max(0.0, self.entitlement - self.remaining)


def _quota(snapshots: dict, key: str) -> CopilotQuota | None:
    section = get_dict(snapshots, key)
    if section is None:
        return None
    entitlement = number(section.get("entitlement"))
    remaining = number(section.get("remaining"))
    unlimited = section.get("unlimited") is True
    if entitlement is None or remaining is None:
        if not unlimited:
            return None
        entitlement, remaining = 0.0, 0.0
    return CopilotQuota(entitlement=entitlement, remaining=remaining, unlimited=unlimited)


def pick_quota(*candidates: CopilotQuota | None) -> CopilotQuota | None:
    for quota in candidates:
        if quota is not None and not quota.unlimited:
            return quota
    return None


def _one_month_before(moment: datetime) -> datetime:
    year, month = (moment.year, moment.month - 1) if moment.month > 1 else (moment.year - 1, 12)
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def monthly_window(resets_at: datetime | None) -> QuotaWindow:
    if resets_at is None:
        return QuotaWindow(duration=DEFAULT_MONTH, resets_at=None)
    return QuotaWindow(duration=resets_at - _one_month_before(resets_at), resets_at=resets_at)


def parse_copilot_usage(body: dict, fetched_at: datetime) -> UsageSnapshot:
    snapshots = get_dict(body, "quota_snapshots") or {}
    premium = _quota(snapshots, "premium_interactions")
    chat = _quota(snapshots, "chat")
    completions = _quota(snapshots, "completions")

    # Paid plans meter premium requests first; the free plan meters chat first
    primary = pick_quota(premium, chat)
    secondary = pick_quota(chat if chat is not primary else None, completions)
    if primary is None and secondary is None:
        raise SourceUnavailable("No Copilot usage data available")

    resets_at = parse_timestamp(body.get("quota_reset_date_utc") or body.get("quota_reset_date"))
    window = monthly_window(resets_at)
    user = get_dict(body, "user") or {}

    return UsageSnapshot(
        fetched_at=fetched_at,
        session=CountMeter(consumed=primary.used, entitlement=primary.entitlement) if primary else None,
        week=CountMeter(consumed=secondary.used, entitlement=secondary.entitlement) if secondary else None,
        session_window=window if primary else None,
        week_window=window if secondary else None,
        plan=title_words(get_str(body, "copilot_plan") or get_str(body, "plan"), default="Copilot"),
        account=get_str(body, "login") or get_str(user, "login"),
        login_method="Token",
    )


class CopilotUsageFetcher(UsageFetcher):
    name = "Copilot"
    base_url = "https://api.github.com/"
    default_headers = {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}

    def __init__(
        self,
        credentials: CredentialLookup | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self._lookup = credentials
        self._clock = clock
        self.retry_delays = tuple(retry_delays)
        self._sleep = sleep

    async def fetch(self) -> UsageSnapshot:
        token = self._lookup("copilot") if self._lookup else None
        if not token or not token.strip():
            raise SourceUnavailable("Copilot token not configured")

        headers = {"Authorization": f"Bearer {token.strip()}"}
        for path in USAGE_PATHS:
            body = await self._fetch_path(path, headers)
            if body is not None:
                return parse_copilot_usage(body, self._clock())
        raise SourceUnavailable("Copilot usage endpoint unavailable or token lacks Copilot access")

    async def _fetch_path(self, path: str, headers: dict) -> dict | None:
        """Body of a successful response, or None when the path does not exist."""
        attempts = len(self.retry_delays) + 1
        for attempt in range(attempts):
            try:
                response = await self._get_client().get(path, headers=headers)
            except httpx.HTTPError as e:
                log.warning("copilot_attempt_failed", path=path, attempt=attempt + 1, error=str(e))
                if attempt < len(self.retry_delays):
                    await self._sleep(self.retry_delays[attempt])
                    continue
                raise SourceUnavailable("Copilot usage request failed") from e

            if response.status_code == 404:
                return None
            if response.status_code in STATUS_MESSAGES:
                raise SourceUnavailable(STATUS_MESSAGES[response.status_code])
            if not response.is_success:
                log.warning("copilot_request_status", path=path, status=response.status_code)
                raise SourceUnavailable("Copilot usage request failed")
            try:
                body = response.json()
            except ValueError as e:
                raise SourceUnavailable("Copilot usage response could not be parsed") from e
            if not isinstance(body, dict):
                raise SourceUnavailable("Copilot usage response could not be parsed")
            return body
        return None
