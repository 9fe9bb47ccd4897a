from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from quotapulse.budget.models import ConsumptionSlice, TokenLedger
from quotapulse.budget.tariffs import compute_cost
from quotapulse.core.blocking import CancelToken, run_cancellable
from quotapulse.observability.logger import get_logger
from quotapulse.usage.layouts import LogLayout

log = get_logger("digestor")


@dataclass
class _Accumulator:
    model: str
    standard_input: int = 0
    cached_input: int = 0
    cache_write_input: int = 0
    generated_output: int = 0
    cost: Decimal = Decimal("0")

    def add(self, ledger: TokenLedger, cost: Decimal):
        self.standard_input += ledger.standard_input
        self.cached_input += ledger.cached_input
        self.cache_write_input += ledger.cache_write_input
        self.generated_output += ledger.generated_output
        self.cost += cost

    def to_ledger(self) -> TokenLedger:
        return TokenLedger(
            standard_input=self.standard_input,
            cached_input=self.cached_input,
            cache_write_input=self.cache_write_input,
            generated_output=self.generated_output,
        )


class LogDigestor:
    """Per-day, per-model token and cost slices from a provider's session logs."""

    def __init__(self, layout: LogLayout):
        self.layout = layout

    async def digest_async(self, since: date, until: date) -> list[ConsumptionSlice]:
        return await run_cancellable(lambda cancel: self.digest(since, until, cancel))

    def digest(self, since: date, until: date, cancel: CancelToken | None = None) -> list[ConsumptionSlice]:
        strategy = self.layout.new_strategy()
        # Keyed by (day, lower-cased model); model ids compare case-insensitively
        aggregates: dict[tuple[date, str], _Accumulator] = {}

        files = self.layout.files_for_days(since, until)
        for path in files:
            if cancel is not None:
                cancel.raise_if_cancelled()
            for event in strategy.events(path, cancel):
                day = event.timestamp.date()
                if day < since or day > until or not event.model:
                    continue
                cost = compute_cost(strategy.family, event.model, event.ledger)
                key = (day, event.model.lower())
                accumulator = aggregates.get(key)
                if accumulator is None:
                    accumulator = aggregates[key] = _Accumulator(model=event.model)
                accumulator.add(event.ledger, cost)

        slices = [
            ConsumptionSlice(day=day, model=acc.model, tokens=acc.to_ledger(), cost_usd=acc.cost)
            for (day, _), acc in aggregates.items()
        ]
        slices.sort(key=lambda s: s.model.lower())
        slices.sort(key=lambda s: s.day, reverse=True)

        log.debug("digest_complete", provider=self.layout.provider_id, files=len(files), slices=len(slices))
        return slices
