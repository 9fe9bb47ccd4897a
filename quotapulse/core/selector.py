import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Iterable, Sequence

from quotapulse.models import ProviderReading, utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.sources.base import SignalSource

log = get_logger("selector")


def _rank(reading: ProviderReading):
    return reading.confidence, reading.usage is not None


def pick_best(readings: Iterable[ProviderReading]) -> ProviderReading | None:
    """Highest confidence wins.

    On a tie a reading with usage beats a failed read, then the later
    capture wins, then the first seen.
    """
    best = None
    for reading in readings:
        if best is None or _rank(reading) > _rank(best):
            best = reading
        elif _rank(reading) == _rank(best) and reading.captured_at > best.captured_at:
            best = reading
    return best


class SourceSelector(ABC):
    @abstractmethod
    async def select(self, provider_id: str, sources: Sequence[SignalSource]) -> ProviderReading:
        pass


class ConfidenceSelector(SourceSelector):
    """Reads every source of a provider concurrently and keeps the most trustworthy reading."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock

    async def select(self, provider_id: str, sources: Sequence[SignalSource]) -> ProviderReading:
        results = await asyncio.gather(*(s.read() for s in sources), return_exceptions=True)

        readings = []
        for source, result in zip(sources, results):
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception):
                log.warning(
                    "source_failed",
                    provider=provider_id,
                    source=type(source).__name__,
                    error=str(result),
                )
                continue
            readings.append(result)

        best = pick_best(readings)
        if best is None:
            return ProviderReading.no_data(self._clock())

        log.debug(
            "source_selected",
            provider=provider_id,
            confidence=best.confidence.name.lower(),
            source=best.source.value,
            candidates=len(readings),
        )
        return best
