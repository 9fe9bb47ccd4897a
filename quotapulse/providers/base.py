import math
from abc import ABC, abstractmethod
from datetime import datetime

import httpx
from pydantic import BaseModel

from quotapulse.models import MonetaryBucket, QuotaWindow, UsageMeter
from quotapulse.observability.logger import get_logger
from quotapulse.sources.base import SourceUnavailable

log = get_logger("providers")

USER_AGENT = "quotapulse"


class UsageSnapshot(BaseModel):
    """What a provider's usage endpoint reported, already normalized."""

    model_config = {"frozen": True}

    fetched_at: datetime
    session: UsageMeter | None = None
    week: UsageMeter | None = None
    session_window: QuotaWindow | None = None
    week_window: QuotaWindow | None = None
    bucket: MonetaryBucket | None = None
    plan: str | None = None
    account: str | None = None
    login_method: str | None = None

    @property
    def has_usage(self) -> bool:
        return self.session is not None or self.week is not None or self.bucket is not None


class UsageFetcher(ABC):
    """Calls one provider's usage endpoint over HTTP.

    `fetch()` raises SourceUnavailable with a user-facing message on any
    failure.
    """

    name: str = "base"
    base_url: str = ""
    default_headers: dict = {}

    def __init__(self, timeout: float = 10.0, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers={"User-Agent": USER_AGENT, "Accept": "application/json", **self.default_headers},
                transport=self._transport,
            )
        return self._client

    async def aclose(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _get_json(self, path: str, headers: dict) -> dict:
        try:
            response = await self._get_client().get(path, headers=headers)
        except httpx.HTTPError as e:
            log.warning("usage_request_failed", provider=self.name, error=str(e))
            raise SourceUnavailable(f"{self.name} usage request failed") from e

        if response.status_code == 401:
            raise SourceUnavailable(f"{self.name} credentials rejected")
        if not response.is_success:
            log.warning("usage_request_status", provider=self.name, status=response.status_code)
            raise SourceUnavailable(f"{self.name} usage request failed ({response.status_code})")

        try:
            body = response.json()
        except ValueError as e:
            raise SourceUnavailable(f"{self.name} usage response could not be parsed") from e
        if not isinstance(body, dict):
            raise SourceUnavailable(f"{self.name} usage response could not be parsed")
        return body

    @abstractmethod
    async def fetch(self) -> UsageSnapshot:
        pass


def number(value) -> float | None:
    """A JSON number (or numeric string) as float; None otherwise."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
    elif not isinstance(value, (int, float)):
        return None
    try:
        result = float(value)
    except (ValueError, OverflowError):
        return None
    return result if math.isfinite(result) else None


def title_words(text: str | None, default: str | None = None) -> str | None:
    """`individual_pro` -> `Individual Pro`, `max` -> `Max`."""
    if not text or not text.strip():
        return default
    return " ".join(w[:1].upper() + w[1:].lower() for w in text.replace("_", " ").split())
