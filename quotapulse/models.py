from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, BeforeValidator, Field, PlainSerializer

from quotapulse.budget.models import ConsumptionDigest
from quotapulse.usage.pace import UsagePace, calculate_pace


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReadingConfidence(IntEnum):
    UNKNOWN = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3


def _confidence_from_name(value):
    if isinstance(value, str):
        return ReadingConfidence[value.upper()]
    return value


Confidence = Annotated[
    ReadingConfidence,
    BeforeValidator(_confidence_from_name),
    PlainSerializer(lambda c: c.name.lower(), return_type=str, when_used="json"),
]


class ReadingSource(str, Enum):
    UNKNOWN = "unknown"
    CLI = "cli"
    LOCAL_LOG = "local_log"
    COOKIE = "cookie"
    WEB_PROBE = "web_probe"
    API = "api"


class RefreshTrigger(str, Enum):
    INITIAL = "initial"
    SCHEDULED = "scheduled"
    MANUAL = "manual"
    SILENT = "silent"


class BucketKind(str, Enum):
    OVERAGE_SPEND = "overage_spend"
    PREPAID_BALANCE = "prepaid_balance"


class ProviderProfile(BaseModel):
    model_config = {"frozen": True}

    provider_id: str
    display_name: str
    brand_color_hex: str


class IdentityCard(BaseModel):
    model_config = {"frozen": True}

    provider_id: str
    display_name: str | None = None
    email: str | None = None
    org: str | None = None
    plan: str | None = None
    login_method: str | None = None


class QuotaWindow(BaseModel):
    model_config = {"frozen": True}

    duration: timedelta
    resets_at: datetime | None = None


class MonetaryBucket(BaseModel):
    """Either overage spend against a cap, or a prepaid balance (consumed is 0)."""

    model_config = {"frozen": True}

    kind: BucketKind
    consumed: Decimal
    ceiling: Decimal
    currency_symbol: str = "$"
    cycle_ends_at: datetime | None = None

    @classmethod
    def for_overage_spend(cls, spent: Decimal, cap: Decimal, currency: str = "$") -> "MonetaryBucket":
        return cls(kind=BucketKind.OVERAGE_SPEND, consumed=spent, ceiling=cap, currency_symbol=currency)

    @classmethod
    def for_prepaid_balance(cls, remaining: Decimal, currency: str = "$") -> "MonetaryBucket":
        return cls(kind=BucketKind.PREPAID_BALANCE, consumed=Decimal("0"), ceiling=remaining, currency_symbol=currency)

    @property
    def available(self) -> Decimal:
        return max(Decimal("0"), self.ceiling - self.consumed)

    @property
    def fill_ratio(self) -> float:
        if self.ceiling <= 0:
            return 0.0
        return max(0.0, min(1.0, float(self.consumed / self.ceiling)))


# --- Meters ---
#
# A meter is the used/limit value of one quota window. The unit is carried
# explicitly so consumers never have to guess whether `used` is a percentage.


class PercentMeter(BaseModel):
    model_config = {"frozen": True}

    kind: Literal["percent"] = "percent"
    used_percent: float

    @property
    def used(self) -> float:
        return self.used_percent

    @property
    def limit(self) -> float:
        return 100.0

    @property
    def percent(self) -> float:
        return self.used_percent


class TokenMeter(BaseModel):
    model_config = {"frozen": True}

    kind: Literal["tokens"] = "tokens"
    tokens: int = Field(ge=0)
    ceiling: int | None = None

    @property
    def used(self) -> float:
        return float(self.tokens)

    @property
    def limit(self) -> float | None:
        return float(self.ceiling) if self.ceiling else None

    @property
    def percent(self) -> float | None:
        if not self.ceiling:
            return None
        return self.tokens / self.ceiling * 100


class CountMeter(BaseModel):
    """Requests or interactions counted against an entitlement."""

    model_config = {"frozen": True}

    kind: Literal["count"] = "count"
    consumed: float = Field(ge=0)
    entitlement: float

    @property
    def used(self) -> float:
        return self.consumed

    @property
    def limit(self) -> float | None:
        return self.entitlement if self.entitlement > 0 else None

    @property
    def percent(self) -> float | None:
        if self.entitlement <= 0:
            return None
        return self.consumed / self.entitlement * 100


UsageMeter = Annotated[Union[PercentMeter, TokenMeter, CountMeter], Field(discriminator="kind")]


class UsagePulse(BaseModel):
    model_config = {"frozen": True}

    provider_id: str
    captured_at: datetime
    session: UsageMeter | None = None
    week: UsageMeter | None = None
    spending_bucket: MonetaryBucket | None = None
    consumption: ConsumptionDigest | None = None
    session_window: QuotaWindow | None = None
    week_window: QuotaWindow | None = None

    @property
    def session_used(self) -> float | None:
        return self.session.used if self.session else None

    @property
    def session_limit(self) -> float | None:
        return self.session.limit if self.session else None

    @property
    def week_used(self) -> float | None:
        return self.week.used if self.week else None

    @property
    def week_limit(self) -> float | None:
        return self.week.limit if self.week else None

    def session_pace(self, now: datetime | None = None) -> UsagePace | None:
        return _pace(self.session, self.session_window, now)

    def week_pace(self, now: datetime | None = None) -> UsagePace | None:
        return _pace(self.week, self.week_window, now)

    def with_consumption(self, digest: ConsumptionDigest | None) -> "UsagePulse":
        return self.model_copy(update={"consumption": digest})


def _pace(meter, window: QuotaWindow | None, now: datetime | None) -> UsagePace | None:
    if meter is None or window is None:
        return None
    percent = meter.percent
    if percent is None:
        return None
    return calculate_pace(percent, window.resets_at, window.duration, now)


class ProviderReading(BaseModel):
    model_config = {"frozen": True}

    usage: UsagePulse | None = None
    identity: IdentityCard | None = None
    status_summary: str | None = None
    captured_at: datetime
    confidence: Confidence = ReadingConfidence.UNKNOWN
    source: ReadingSource = ReadingSource.UNKNOWN

    @classmethod
    def no_data(cls, captured_at: datetime, status: str = "No data") -> "ProviderReading":
        return cls(status_summary=status, captured_at=captured_at, confidence=ReadingConfidence.UNKNOWN)

    @classmethod
    def unavailable(
        cls,
        status: str,
        captured_at: datetime,
        source: ReadingSource,
        identity: IdentityCard | None = None,
    ) -> "ProviderReading":
        return cls(
            identity=identity,
            status_summary=status,
            captured_at=captured_at,
            confidence=ReadingConfidence.LOW,
            source=source,
        )


class PulseState(BaseModel):
    """Everything known about all providers after a refresh.

    Never mutated; a full refresh replaces it and a silent refresh merges one
    reading into a copy.
    """

    model_config = {"frozen": True}

    providers: dict[str, ProviderReading] = Field(default_factory=dict)
    last_refresh: datetime | None = None
    errors: tuple[str, ...] = ()
    is_refreshing: bool = False
    trigger: RefreshTrigger = RefreshTrigger.INITIAL

    @classmethod
    def empty(cls) -> "PulseState":
        return cls(is_refreshing=True)

    def with_reading(self, provider_id: str, reading: ProviderReading, now: datetime) -> "PulseState":
        providers = dict(self.providers)
        providers[provider_id] = reading
        return PulseState(
            providers=providers,
            last_refresh=now,
            errors=self.errors,
            is_refreshing=False,
            trigger=RefreshTrigger.SILENT,
        )
