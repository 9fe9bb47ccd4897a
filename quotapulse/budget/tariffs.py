import re
from decimal import Decimal

from pydantic import BaseModel

from quotapulse.budget.models import TokenLedger
from quotapulse.observability.logger import get_logger

log = get_logger("tariffs")


class RateCard(BaseModel):
    """Per-token USD rates for one model, optionally tiered at a single threshold.

    Above-tier rates apply only to the tokens past `tier_threshold`, per category.
    """

    model_config = {"frozen": True}

    input_rate: Decimal
    output_rate: Decimal
    cache_read_rate: Decimal
    cache_write_rate: Decimal = Decimal("0")

    tier_threshold: int | None = None
    input_rate_above_tier: Decimal | None = None
    output_rate_above_tier: Decimal | None = None
    cache_read_rate_above_tier: Decimal | None = None
    cache_write_rate_above_tier: Decimal | None = None

    def compute_cost(self, ledger: TokenLedger) -> Decimal:
        return (
            self._tiered(ledger.standard_input, self.input_rate, self.input_rate_above_tier)
            + self._tiered(ledger.generated_output, self.output_rate, self.output_rate_above_tier)
            + self._tiered(ledger.cached_input, self.cache_read_rate, self.cache_read_rate_above_tier)
            + self._tiered(ledger.cache_write_input, self.cache_write_rate, self.cache_write_rate_above_tier)
        )

    def _tiered(self, tokens: int, base: Decimal, above: Decimal | None) -> Decimal:
        if tokens <= 0:
            return Decimal("0")
        if self.tier_threshold is None or above is None:
            return tokens * base
        below_count = min(tokens, self.tier_threshold)
        above_count = max(0, tokens - self.tier_threshold)
        return below_count * base + above_count * above


def _card(input_per_m: str, output_per_m: str, cache_read_per_m: str, cache_write_per_m: str = "0", **tier) -> RateCard:
    """Build a card from per-million prices, the way vendors publish them."""
    per_token = Decimal("1000000")
    fields = {
        "input_rate": Decimal(input_per_m) / per_token,
        "output_rate": Decimal(output_per_m) / per_token,
        "cache_read_rate": Decimal(cache_read_per_m) / per_token,
        "cache_write_rate": Decimal(cache_write_per_m) / per_token,
    }
    if tier:
        fields["tier_threshold"] = tier["threshold"]
        fields["input_rate_above_tier"] = Decimal(tier["input"]) / per_token
        fields["output_rate_above_tier"] = Decimal(tier["output"]) / per_token
        fields["cache_read_rate_above_tier"] = Decimal(tier["cache_read"]) / per_token
        fields["cache_write_rate_above_tier"] = Decimal(tier["cache_write"]) / per_token
    return RateCard(**fields)


# USD per 1M tokens: input, output, cache read, cache write
PRICING: dict[str, dict[str, RateCard]] = {
    "claude": {
        "claude-haiku-4-5": _card("1", "5", "0.1", "1.25"),
        "claude-sonnet-4-5": _card(
            "3", "15", "0.3", "3.75",
            threshold=200_000, input="6", output="22.5", cache_read="0.6", cache_write="7.5",
        ),
        "claude-opus-4-5": _card("5", "25", "0.5", "6.25"),
        "claude-opus-4-1": _card("15", "75", "1.5", "18.75"),
        "claude-opus-4": _card("15", "75", "1.5", "18.75"),
        "claude-sonnet-4": _card("3", "15", "0.3", "3.75"),
        "claude-3-7-sonnet": _card("3", "15", "0.3", "3.75"),
        "claude-3-5-haiku": _card("0.8", "4", "0.08", "1"),
    },
    "codex": {
        "gpt-5": _card("1.25", "10", "0.125"),
        "gpt-5.1": _card("1.25", "10", "0.125"),
        "gpt-5.2": _card("1.75", "14", "0.175"),
        "gpt-5-mini": _card("0.25", "2", "0.025"),
        "gpt-5-nano": _card("0.05", "0.4", "0.005"),
        "gpt-4.1": _card("2", "8", "0.5"),
        "o3": _card("10", "40", "2.5"),
        "o4-mini": _card("1.1", "4.4", "0.275"),
    },
}

# Conservative estimates for models not listed above
FALLBACK_PRICING: dict[str, RateCard] = {
    "claude": _card("3", "15", "0.3", "3.75"),
    "codex": _card("1.5", "12", "0.15"),
}

_VENDOR_PREFIXES = ("us.anthropic.", "eu.anthropic.", "anthropic.", "anthropic/", "openai/")
_DATE_SUFFIX = re.compile(r"-\d{8}$")
_CODEX_SUFFIX = re.compile(r"-codex.*$", re.IGNORECASE)


def normalize_model(raw: str) -> str:
    """Strip vendor prefixes, release-date and `-codex` suffixes from a model id."""
    name = raw.strip().lower()
    for prefix in _VENDOR_PREFIXES:
        if name.startswith(prefix):
            name = name[len(prefix):]
            break
    name = _DATE_SUFFIX.sub("", name)
    return _CODEX_SUFFIX.sub("", name) or name


def find_rate(family: str, raw_model: str | None) -> RateCard:
    """Look up the rate card for a model, falling back to the family default."""
    table = PRICING.get(family, {})
    fallback = FALLBACK_PRICING.get(family, FALLBACK_PRICING["claude"])
    if not raw_model:
        return fallback

    card = table.get(normalize_model(raw_model))
    if card is not None:
        return card

    # Normalization can strip too much (e.g. a dated id that is itself listed)
    card = table.get(raw_model.strip().lower())
    if card is not None:
        return card

    log.debug("tariff_fallback", family=family, model=raw_model)
    return fallback


def compute_cost(family: str, raw_model: str | None, ledger: TokenLedger) -> Decimal:
    return find_rate(family, raw_model).compute_cost(ledger)
