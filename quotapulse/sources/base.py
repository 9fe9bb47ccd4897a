import asyncio
from abc import ABC, abstractmethod
from typing import Callable

from quotapulse.budget.expense import ExpenseAnalyzer
from quotapulse.budget.models import ConsumptionDigest
from quotapulse.models import ProviderProfile, ProviderReading
from quotapulse.observability.logger import get_logger

log = get_logger("sources")

# Returns the opaque credential the host application stored for a provider
CredentialLookup = Callable[[str], "str | None"]


class SourceUnavailable(Exception):
    """A source could not produce data; the message is shown as the reading status."""


class SignalSource(ABC):
    """One way of learning a provider's usage.

    `read()` always returns a reading. Failures become LOW-confidence readings
    with an explanatory status; only cancellation escapes.
    """

    @property
    @abstractmethod
    def profile(self) -> ProviderProfile:
        pass

    @property
    def provider_id(self) -> str:
        return self.profile.provider_id

    @abstractmethod
    async def read(self) -> ProviderReading:
        pass


async def safe_digest(expense: ExpenseAnalyzer | None, provider_id: str) -> ConsumptionDigest | None:
    """Cost digest for a provider; a failure here never fails the reading."""
    if expense is None or not expense.supports(provider_id):
        return None
    try:
        return await expense.analyze(provider_id)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        log.warning("digest_failed", provider=provider_id, error=str(e))
        return None
