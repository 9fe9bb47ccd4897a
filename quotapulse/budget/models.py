from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, Field

DEFAULT_WINDOW_DAYS = 30


class TokenLedger(BaseModel):
    """Token counts split by pricing category.

    `cached_input` are prompt tokens served from cache, `cache_write_input`
    are prompt tokens written to cache. `standard_input` excludes both.
    """

    model_config = {"frozen": True}

    standard_input: int = Field(default=0, ge=0)
    cached_input: int = Field(default=0, ge=0)
    cache_write_input: int = Field(default=0, ge=0)
    generated_output: int = Field(default=0, ge=0)

    @classmethod
    def empty(cls) -> "TokenLedger":
        return cls()

    @property
    def total_consumed(self) -> int:
        return self.standard_input + self.cached_input + self.cache_write_input + self.generated_output

    @property
    def net_input(self) -> int:
        return self.standard_input + self.cache_write_input

    @property
    def is_empty(self) -> bool:
        return self.total_consumed == 0

    def combine(self, other: "TokenLedger") -> "TokenLedger":
        return TokenLedger(
            standard_input=self.standard_input + other.standard_input,
            cached_input=self.cached_input + other.cached_input,
            cache_write_input=self.cache_write_input + other.cache_write_input,
            generated_output=self.generated_output + other.generated_output,
        )

    def __add__(self, other: "TokenLedger") -> "TokenLedger":
        return self.combine(other)


class ConsumptionSlice(BaseModel):
    model_config = {"frozen": True}

    day: date
    model: str
    tokens: TokenLedger
    cost_usd: Decimal = Decimal("0")


class ConsumptionDigest(BaseModel):
    model_config = {"frozen": True}

    today_tokens: TokenLedger = Field(default_factory=TokenLedger.empty)
    today_cost_usd: Decimal = Decimal("0")
    rolling_tokens: TokenLedger = Field(default_factory=TokenLedger.empty)
    rolling_cost_usd: Decimal = Decimal("0")
    rolling_window_days: int = DEFAULT_WINDOW_DAYS
    daily_breakdown: tuple[ConsumptionSlice, ...] = ()
    computed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def none(cls, window_days: int = DEFAULT_WINDOW_DAYS, now: datetime | None = None) -> "ConsumptionDigest":
        return cls(rolling_window_days=window_days, computed_at=now or datetime.now(timezone.utc))

    @property
    def has_data(self) -> bool:
        return bool(self.daily_breakdown)
