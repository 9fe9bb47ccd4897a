import json
import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from quotapulse.core.snapshot import JsonSnapshotWriter
from quotapulse.models import (
    MonetaryBucket,
    PercentMeter,
    ProviderReading,
    PulseState,
    QuotaWindow,
    ReadingConfidence,
    ReadingSource,
    RefreshTrigger,
    TokenMeter,
    UsagePulse,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def _state() -> PulseState:
    usage = UsagePulse(
        provider_id="claude",
        captured_at=NOW,
        session=PercentMeter(used_percent=42),
        week=TokenMeter(tokens=120_000),
        spending_bucket=MonetaryBucket.for_overage_spend(Decimal("12.50"), Decimal("50")),
        session_window=QuotaWindow(duration=timedelta(hours=5), resets_at=NOW + timedelta(hours=3)),
    )
    reading = ProviderReading(
        usage=usage,
        status_summary="Updated just now",
        captured_at=NOW,
        confidence=ReadingConfidence.HIGH,
        source=ReadingSource.API,
    )
    return PulseState(providers={"claude": reading}, last_refresh=NOW, trigger=RefreshTrigger.SCHEDULED)


@pytest.mark.asyncio
class TestJsonSnapshotWriter:
    async def test_write_then_read(self, tmp_path):
        writer = JsonSnapshotWriter(tmp_path / "snapshots" / "pulse.json")
        state = _state()

        await writer.write(state)

        assert writer.read() == state

    async def test_confidence_written_by_name(self, tmp_path):
        path = tmp_path / "pulse.json"
        await JsonSnapshotWriter(path).write(_state())

        payload = json.loads(path.read_text())
        assert payload["providers"]["claude"]["confidence"] == "high"
        assert payload["providers"]["claude"]["usage"]["session"]["kind"] == "percent"

    async def test_replaces_existing_file(self, tmp_path):
        path = tmp_path / "pulse.json"
        path.write_text("stale")

        await JsonSnapshotWriter(path).write(_state())

        assert json.loads(path.read_text())["trigger"] == "scheduled"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["pulse.json"]

    async def test_failed_replace_leaves_no_temp_file(self, tmp_path, monkeypatch):
        path = tmp_path / "pulse.json"
        path.write_text("previous")

        def fail_replace(src, dst):
            raise OSError("read-only filesystem")

        monkeypatch.setattr(os, "replace", fail_replace)

        with pytest.raises(OSError):
            await JsonSnapshotWriter(path).write(_state())

        assert path.read_text() == "previous"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["pulse.json"]


class TestSnapshotRead:
    def test_missing_file(self, tmp_path):
        assert JsonSnapshotWriter(tmp_path / "absent.json").read() is None
