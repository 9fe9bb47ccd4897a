import asyncio
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Sequence

from quotapulse.core.broadcaster import PulseBroadcaster
from quotapulse.core.selector import SourceSelector
from quotapulse.core.snapshot import SnapshotWriter
from quotapulse.models import ProviderReading, PulseState, RefreshTrigger, utcnow
from quotapulse.observability.logger import get_logger
from quotapulse.sources.base import SignalSource

log = get_logger("orchestrator")

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=5)


class PulseOrchestrator:
    """Periodically refreshes every provider and publishes the resulting state.

    Full refreshes never overlap: they queue on a single gate. A silent
    single-provider refresh only runs when the gate is free.
    """

    def __init__(
        self,
        sources: Sequence[SignalSource],
        selector: SourceSelector,
        broadcaster: PulseBroadcaster,
        snapshot_writer: SnapshotWriter | None = None,
        refresh_interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.sources = list(sources)
        self.selector = selector
        self.broadcaster = broadcaster
        self.snapshot_writer = snapshot_writer
        self._clock = clock
        self._refresh_interval = refresh_interval
        self._gate = asyncio.Lock()
        self._interval_changed = asyncio.Event()
        self._running = True
        self._has_loaded = False
        self._state = PulseState.empty()

    @property
    def state(self) -> PulseState:
        return self._state

    @property
    def refresh_interval(self) -> timedelta:
        return self._refresh_interval

    @property
    def has_loaded(self) -> bool:
        return self._has_loaded

    def _group_sources(self) -> dict[str, list[SignalSource]]:
        groups: dict[str, list[SignalSource]] = defaultdict(list)
        for source in self.sources:
            groups[source.provider_id].append(source)
        return dict(groups)

    def _publish(self, state: PulseState):
        self._state = state
        self.broadcaster.publish(state)

    def _shows_loading(self, trigger: RefreshTrigger) -> bool:
        if trigger == RefreshTrigger.MANUAL:
            return True
        return trigger == RefreshTrigger.INITIAL and not self._has_loaded

    async def _select_or_placeholder(self, provider_id: str, sources: list[SignalSource]) -> ProviderReading:
        try:
            return await self.selector.select(provider_id, sources)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error("provider_select_failed", provider=provider_id, error=str(e))
            return ProviderReading.no_data(self._clock())

    async def refresh_once(self, trigger: RefreshTrigger = RefreshTrigger.MANUAL):
        """Refresh every provider. Waits for any refresh already in progress."""
        async with self._gate:
            if self._shows_loading(trigger):
                self._publish(self._state.model_copy(update={"is_refreshing": True, "trigger": trigger}))

            log.info("refresh_start", trigger=trigger.value)
            try:
                groups = self._group_sources()
                ids = list(groups)
                readings = await asyncio.gather(
                    *(self._select_or_placeholder(pid, groups[pid]) for pid in ids)
                )
                state = PulseState(
                    providers=dict(zip(ids, readings)),
                    last_refresh=self._clock(),
                    errors=(),
                    is_refreshing=False,
                    trigger=trigger,
                )
                self._has_loaded = True
                self._publish(state)
                if self.snapshot_writer is not None:
                    await self.snapshot_writer.write(state)
                log.info("refresh_complete", trigger=trigger.value, providers=len(ids))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("refresh_failed", trigger=trigger.value, error=str(e))
                self._publish(
                    PulseState(
                        providers=dict(self._state.providers),
                        last_refresh=self._clock(),
                        errors=(str(e) or type(e).__name__,),
                        is_refreshing=not self._has_loaded,
                        trigger=trigger,
                    )
                )

    async def refresh_provider(self, provider_id: str):
        """Re-read one provider in the background. A no-op while a full refresh runs."""
        if self._gate.locked():
            log.debug("silent_refresh_skipped", provider=provider_id)
            return

        async with self._gate:
            sources = [s for s in self.sources if s.provider_id == provider_id]
            if not sources:
                log.warning("silent_refresh_unknown_provider", provider=provider_id)
                return
            try:
                reading = await self.selector.select(provider_id, sources)
                self._publish(self._state.with_reading(provider_id, reading, self._clock()))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.warning("silent_refresh_failed", provider=provider_id, error=str(e))

    def update_refresh_interval(self, interval: timedelta | float):
        """Apply a new interval to the idle wait immediately, without refreshing."""
        if not isinstance(interval, timedelta):
            interval = timedelta(seconds=interval)
        if interval <= timedelta(0):
            raise ValueError("refresh interval must be positive")
        self._refresh_interval = interval
        self._interval_changed.set()
        log.info("refresh_interval_updated", seconds=interval.total_seconds())

    async def _wait_for_tick(self) -> bool:
        """Sleep one interval. False if the interval changed first."""
        self._interval_changed.clear()
        try:
            await asyncio.wait_for(self._interval_changed.wait(), timeout=self._refresh_interval.total_seconds())
            return False
        except asyncio.TimeoutError:
            return True

    async def run(self):
        log.info("orchestrator_starting", interval=self._refresh_interval.total_seconds(), sources=len(self.sources))
        await self.refresh_once(RefreshTrigger.INITIAL)

        while self._running:
            if await self._wait_for_tick():
                await self.refresh_once(RefreshTrigger.SCHEDULED)
            else:
                log.debug("refresh_timer_restarted")

        log.info("orchestrator_stopped")

    def stop(self):
        self._running = False
        self._interval_changed.set()
