import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
from quotapulse.core.broadcaster import PulseBroadcaster
from quotapulse.core.orchestrator import PulseOrchestrator
from quotapulse.core.selector import SourceSelector
from quotapulse.models import ProviderReading, ReadingConfidence, ReadingSource, RefreshTrigger
from quotapulse.sources import catalog
from quotapulse.sources.base import SignalSource

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _reading(status: str) -> ProviderReading:
    return ProviderReading(
        status_summary=status,
        captured_at=NOW,
        confidence=ReadingConfidence.HIGH,
        source=ReadingSource.API,
    )


class ProfileSource(SignalSource):
    """Only its provider id matters; the selectors below never call `read`."""

    def __init__(self, profile):
        self._profile = profile

    @property
    def profile(self):
        return self._profile

    async def read(self):
        raise AssertionError("selector stub should not read sources")


class BrokenSource(ProfileSource):
    @property
    def provider_id(self):
        raise RuntimeError("source registry corrupted")


class ScriptedSelector(SourceSelector):
    """Returns `<provider>:<call number>` readings, optionally holding each call on a gate."""

    def __init__(self, gate: asyncio.Event | None = None):
        self.gate = gate
        self.calls = 0
        self.active = 0
        self.max_active = 0

    async def select(self, provider_id, sources):
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0.01)
            return _reading(f"{provider_id}:{self.calls}")
        finally:
            self.active -= 1


async def _wait_until(predicate, timeout: float = 2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
class TestPulseOrchestrator:
    @pytest.fixture
    def sources(self):
        return [ProfileSource(catalog.CLAUDE), ProfileSource(catalog.CODEX), ProfileSource(catalog.CLAUDE)]

    @pytest.fixture
    def broadcaster(self):
        return PulseBroadcaster()

    @pytest.fixture
    def published(self, broadcaster):
        states = []
        broadcaster.subscribe(states.append)
        return states

    def _orchestrator(self, sources, selector, broadcaster, **kwargs):
        return PulseOrchestrator(sources, selector, broadcaster, clock=lambda: NOW, **kwargs)

    async def test_refresh_publishes_one_reading_per_provider(self, sources, broadcaster, published):
        selector = ScriptedSelector()
        orchestrator = self._orchestrator(sources, selector, broadcaster)

        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        state = published[-1]
        assert set(state.providers) == {"claude", "codex"}
        assert state.is_refreshing is False
        assert state.errors == ()
        assert state.last_refresh == NOW
        assert state.trigger == RefreshTrigger.SCHEDULED
        assert selector.calls == 2
        assert orchestrator.has_loaded
        assert orchestrator.state is state

    async def test_manual_refresh_shows_loading_first(self, sources, broadcaster, published):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster)
        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)
        published.clear()

        await orchestrator.refresh_once(RefreshTrigger.MANUAL)

        assert [s.is_refreshing for s in published] == [True, False]
        # The loading state still carries the last known readings
        assert set(published[0].providers) == {"claude", "codex"}

    async def test_initial_refresh_shows_loading_until_first_load(self, sources, broadcaster, published):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster)

        await orchestrator.refresh_once(RefreshTrigger.INITIAL)
        await orchestrator.refresh_once(RefreshTrigger.INITIAL)

        assert [s.is_refreshing for s in published] == [True, False, False]

    async def test_scheduled_refresh_is_quiet(self, sources, broadcaster, published):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster)

        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        assert len(published) == 1

    async def test_full_refreshes_never_overlap(self, sources, broadcaster):
        selector = ScriptedSelector()
        orchestrator = self._orchestrator(sources, selector, broadcaster)

        await asyncio.gather(*(orchestrator.refresh_once() for _ in range(3)))

        assert selector.calls == 6
        # Two providers select concurrently within one refresh, never more
        assert selector.max_active == 2

    async def test_snapshot_written_after_publish(self, sources, broadcaster, published):
        writer = AsyncMock()
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster, snapshot_writer=writer)

        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        writer.write.assert_awaited_once_with(published[-1])

    async def test_snapshot_failure_surfaces_as_error(self, sources, broadcaster, published):
        writer = AsyncMock()
        writer.write.side_effect = OSError("disk full")
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster, snapshot_writer=writer)

        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        state = published[-1]
        assert state.errors == ("disk full",)
        assert set(state.providers) == {"claude", "codex"}
        assert state.is_refreshing is False

    async def test_failure_before_first_load_stays_loading(self, broadcaster, published):
        orchestrator = self._orchestrator([BrokenSource(catalog.CLAUDE)], ScriptedSelector(), broadcaster)

        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        state = published[-1]
        assert state.errors == ("source registry corrupted",)
        assert state.providers == {}
        assert state.is_refreshing is True
        assert not orchestrator.has_loaded

    async def test_failure_keeps_previous_readings(self, sources, broadcaster, published):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster)
        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)
        previous = orchestrator.state.providers

        orchestrator.sources.append(BrokenSource(catalog.COPILOT))
        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        state = published[-1]
        assert state.providers == previous
        assert state.errors == ("source registry corrupted",)
        assert state.is_refreshing is False

    async def test_selector_failure_becomes_placeholder(self, sources, broadcaster, published):
        selector = AsyncMock(spec=SourceSelector)
        selector.select.side_effect = RuntimeError("selector broke")
        orchestrator = self._orchestrator(sources, selector, broadcaster)

        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)

        state = published[-1]
        assert state.errors == ()
        assert state.providers["claude"].confidence == ReadingConfidence.UNKNOWN

    async def test_silent_refresh_merges_one_provider(self, sources, broadcaster, published):
        selector = ScriptedSelector()
        orchestrator = self._orchestrator(sources, selector, broadcaster)
        await orchestrator.refresh_once(RefreshTrigger.SCHEDULED)
        codex_before = orchestrator.state.providers["codex"]

        await orchestrator.refresh_provider("claude")

        state = published[-1]
        assert state.trigger == RefreshTrigger.SILENT
        assert state.providers["claude"].status_summary == "claude:3"
        assert state.providers["codex"] is codex_before
        assert state.is_refreshing is False

    async def test_silent_refresh_skipped_while_full_refresh_runs(self, sources, broadcaster, published):
        gate = asyncio.Event()
        selector = ScriptedSelector(gate)
        orchestrator = self._orchestrator(sources, selector, broadcaster)

        full = asyncio.ensure_future(orchestrator.refresh_once(RefreshTrigger.SCHEDULED))
        await _wait_until(lambda: selector.calls == 2)

        await orchestrator.refresh_provider("claude")
        assert selector.calls == 2

        gate.set()
        await full
        assert published[-1].trigger == RefreshTrigger.SCHEDULED

    async def test_silent_refresh_unknown_provider(self, sources, broadcaster, published):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster)

        await orchestrator.refresh_provider("gemini")

        assert published == []

    async def test_silent_refresh_failure_is_swallowed(self, sources, broadcaster, published):
        selector = AsyncMock(spec=SourceSelector)
        selector.select.side_effect = RuntimeError("nope")
        orchestrator = self._orchestrator(sources, selector, broadcaster)

        await orchestrator.refresh_provider("claude")

        assert published == []

    async def test_interval_must_be_positive(self, sources, broadcaster):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster)

        with pytest.raises(ValueError):
            orchestrator.update_refresh_interval(0)
        with pytest.raises(ValueError):
            orchestrator.update_refresh_interval(timedelta(seconds=-5))

        orchestrator.update_refresh_interval(90)
        assert orchestrator.refresh_interval == timedelta(seconds=90)

    async def test_interval_change_restarts_wait_without_refreshing(self, sources, broadcaster, published):
        selector = ScriptedSelector()
        orchestrator = self._orchestrator(sources, selector, broadcaster, refresh_interval=timedelta(hours=1))
        loop_task = asyncio.ensure_future(orchestrator.run())
        try:
            await _wait_until(lambda: orchestrator.has_loaded)
            calls_after_initial = selector.calls

            orchestrator.update_refresh_interval(timedelta(hours=2))
            await asyncio.sleep(0.05)
            assert selector.calls == calls_after_initial

            orchestrator.update_refresh_interval(0.05)
            await _wait_until(lambda: selector.calls > calls_after_initial)
        finally:
            orchestrator.stop()
            await asyncio.wait_for(loop_task, timeout=1)

    async def test_stop_ends_run_loop(self, sources, broadcaster):
        orchestrator = self._orchestrator(sources, ScriptedSelector(), broadcaster, refresh_interval=timedelta(hours=1))
        loop_task = asyncio.ensure_future(orchestrator.run())
        await _wait_until(lambda: orchestrator.has_loaded)

        orchestrator.stop()

        await asyncio.wait_for(loop_task, timeout=1)
