"""Composition root. The host application (tray, widget, CLI) enters
`pulse_runtime()` and talks to the returned runtime; nothing here is global.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta

from quotapulse.config import Settings, settings as default_settings
from quotapulse.core.broadcaster import PulseBroadcaster
from quotapulse.core.orchestrator import PulseOrchestrator
from quotapulse.core.selector import ConfidenceSelector
from quotapulse.core.snapshot import JsonSnapshotWriter
from quotapulse.observability.logger import get_logger, setup_logging
from quotapulse.sources.base import CredentialLookup
from quotapulse.sources.factory import SourceBundle, build_sources

log = get_logger("main")


@dataclass
class PulseRuntime:
    orchestrator: PulseOrchestrator
    broadcaster: PulseBroadcaster
    bundle: SourceBundle


def build_runtime(settings: Settings, credentials: CredentialLookup | None = None) -> PulseRuntime:
    bundle = build_sources(settings, credentials)
    broadcaster = PulseBroadcaster()
    orchestrator = PulseOrchestrator(
        sources=bundle.sources,
        selector=ConfidenceSelector(),
        broadcaster=broadcaster,
        snapshot_writer=JsonSnapshotWriter(settings.resolved_snapshot_path),
        refresh_interval=timedelta(seconds=settings.refresh_interval_seconds),
    )
    return PulseRuntime(orchestrator=orchestrator, broadcaster=broadcaster, bundle=bundle)


@asynccontextmanager
async def pulse_runtime(settings: Settings | None = None, credentials: CredentialLookup | None = None):
    """Start the refresh loop for the lifetime of the block."""
    settings = settings or default_settings
    setup_logging(settings.log_level, settings.log_json)
    log.info("quotapulse_starting", providers=sorted(settings.enabled_providers))

    runtime = build_runtime(settings, credentials)
    loop_task = asyncio.create_task(runtime.orchestrator.run())
    try:
        yield runtime
    finally:
        log.info("quotapulse_shutting_down")
        runtime.orchestrator.stop()
        loop_task.cancel()
        try:
            await loop_task
        except asyncio.CancelledError:
            pass
        await runtime.bundle.aclose()
