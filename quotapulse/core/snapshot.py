import asyncio
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from quotapulse.models import PulseState
from quotapulse.observability.logger import get_logger

log = get_logger("snapshot")


class SnapshotWriter(ABC):
    @abstractmethod
    async def write(self, state: PulseState):
        pass


class JsonSnapshotWriter(SnapshotWriter):
    """Persists the latest state as JSON, replacing the file atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)

    async def write(self, state: PulseState):
        await asyncio.to_thread(self._write_sync, state.model_dump_json(indent=2))
        log.debug("snapshot_written", path=str(self.path), providers=len(state.providers))

    def _write_sync(self, payload: str):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".pulse-", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def read(self) -> PulseState | None:
        """Load the last persisted state, if any."""
        try:
            return PulseState.model_validate_json(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
