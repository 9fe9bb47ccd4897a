import asyncio
import json
from datetime import datetime, timedelta
from decimal import Decimal
from pathlib import Path
from typing import Callable

import httpx
from pydantic import BaseModel

from quotapulse.models import MonetaryBucket, PercentMeter, QuotaWindow, utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.providers.base import UsageFetcher, UsageSnapshot, number, title_words
from quotapulse.sources.base import CredentialLookup, SourceUnavailable
from quotapulse.usage.logs import get_dict, get_str, parse_timestamp

log = get_logger("providers.codex")

SESSION_DURATION = timedelta(hours=5)
WEEK_DURATION = timedelta(days=7)


class CodexCredentials(BaseModel):
    access_token: str
    account_id: str | None = None


def load_codex_credentials(codex_home: Path) -> CodexCredentials | None:
    path = codex_home / "auth.json"
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        log.warning("credentials_unreadable", path=str(path), error=str(e))
        return None
    if not isinstance(data, dict):
        return None

    tokens = get_dict(data, "tokens")
    if tokens is not None:
        access = get_str(tokens, "access_token")
        if access:
            return CodexCredentials(access_token=access, account_id=get_str(tokens, "account_id"))
        return None

    legacy_key = get_str(data, "OPENAI_API_KEY")
    if legacy_key:
        return CodexCredentials(access_token=legacy_key)
    return None


def _window(rate_limit: dict, key: str, default: timedelta) -> tuple[PercentMeter | None, QuotaWindow]:
    section = get_dict(rate_limit, key) or {}
    used = number(section.get("used_percent"))
    seconds = number(section.get("limit_window_seconds"))
    duration = timedelta(seconds=seconds) if seconds and seconds > 0 else default
    meter = PercentMeter(used_percent=max(0.0, min(100.0, used))) if used is not None else None
    return meter, QuotaWindow(duration=duration, resets_at=parse_timestamp(number(section.get("reset_at"))))


def parse_codex_usage(body: dict, fetched_at: datetime) -> UsageSnapshot:
    rate_limit = get_dict(body, "rate_limit") or {}
    session, session_window = _window(rate_limit, "primary_window", SESSION_DURATION)
    week, week_window = _window(rate_limit, "secondary_window", WEEK_DURATION)

    bucket = None
    credits = get_dict(body, "credits")
    if credits is not None:
        balance = number(credits.get("balance"))
        if balance is not None and balance > 0:
            bucket = MonetaryBucket.for_prepaid_balance(Decimal(str(balance)))

    return UsageSnapshot(
        fetched_at=fetched_at,
        session=session,
        week=week,
        session_window=session_window,
        week_window=week_window,
        bucket=bucket,
        plan=title_words(get_str(body, "plan_type")),
        account=get_str(body, "email"),
        login_method="ChatGPT",
    )


class CodexOAuthFetcher(UsageFetcher):
    name = "Codex"
    base_url = "https://chatgpt.com/backend-api/"
    usage_path = "wham/usage"

    def __init__(
        self,
        codex_home: Path,
        credentials: CredentialLookup | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        super().__init__(timeout=timeout, transport=transport)
        self.codex_home = codex_home
        self._lookup = credentials
        self._clock = clock

    async def _resolve(self) -> CodexCredentials:
        stored = await asyncio.to_thread(load_codex_credentials, self.codex_home)
        supplied = self._lookup("codex") if self._lookup else None
        if supplied and supplied.strip():
            return CodexCredentials(access_token=supplied.strip(), account_id=stored.account_id if stored else None)
        if stored is None:
            raise SourceUnavailable("Codex credentials not found")
        return stored

    async def fetch(self) -> UsageSnapshot:
        creds = await self._resolve()
        headers = {"Authorization": f"Bearer {creds.access_token}"}
        if creds.account_id:
            headers["ChatGPT-Account-Id"] = creds.account_id
        body = await self._get_json(self.usage_path, headers=headers)
        return parse_codex_usage(body, self._clock())
