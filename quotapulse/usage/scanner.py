from datetime import datetime, timedelta, timezone
from typing import Callable

from pydantic import BaseModel

from quotapulse.core.blocking import CancelToken, run_cancellable
from quotapulse.observability.logger import get_logger
from quotapulse.usage.layouts import LogLayout

log = get_logger("usage_scanner")

SESSION_WINDOW = timedelta(hours=5)
WEEK_WINDOW = timedelta(days=7)


class UsageLogResult(BaseModel):
    model_config = {"frozen": True}

    session_tokens: int = 0
    week_tokens: int = 0
    latest_timestamp: datetime | None = None
    session_start: datetime | None = None
    latest_session_id: str | None = None

    @property
    def has_data(self) -> bool:
        return self.latest_timestamp is not None


class UsageLogScanner:
    """Windowed token totals from a provider's local session logs.

    Dedupe and cumulative-totals bookkeeping live only for one scan.
    """

    def __init__(
        self,
        layout: LogLayout,
        session_window: timedelta = SESSION_WINDOW,
        week_window: timedelta = WEEK_WINDOW,
        clock: Callable[[], datetime] | None = None,
    ):
        self.layout = layout
        self.session_window = session_window
        self.week_window = week_window
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def scan_async(self) -> UsageLogResult:
        return await run_cancellable(self.scan)

    def scan(self, cancel: CancelToken | None = None) -> UsageLogResult:
        now = self._clock()
        session_cutoff = now - self.session_window
        week_cutoff = now - self.week_window

        strategy = self.layout.new_strategy()
        session_tokens = 0
        week_tokens = 0
        latest: datetime | None = None
        latest_session: str | None = None
        # First in-window event per session, to estimate when the active session began
        first_in_window: dict[str, datetime] = {}

        files = self.layout.files_modified_since(week_cutoff - timedelta(days=1))
        for path in files:
            if cancel is not None:
                cancel.raise_if_cancelled()
            for event in strategy.events(path, cancel):
                total = event.ledger.total_consumed
                if event.timestamp >= week_cutoff:
                    week_tokens += total
                if event.timestamp >= session_cutoff:
                    session_tokens += total
                    known = first_in_window.get(event.session_id)
                    if known is None or event.timestamp < known:
                        first_in_window[event.session_id] = event.timestamp
                if latest is None or event.timestamp > latest:
                    latest = event.timestamp
                    latest_session = event.session_id

        session_start = first_in_window.get(latest_session) if latest_session else None
        log.debug(
            "usage_scan_complete",
            provider=self.layout.provider_id,
            files=len(files),
            session_tokens=session_tokens,
            week_tokens=week_tokens,
        )
        return UsageLogResult(
            session_tokens=session_tokens,
            week_tokens=week_tokens,
            latest_timestamp=latest,
            session_start=session_start,
            latest_session_id=latest_session,
        )
