"""Discovery of multicc profiles.

multicc runs several Claude Code accounts side by side, each with its own
config directory. Its `config.json` (schema version 1) lists them:

    {"version": 1, "profiles": {"work": {"configDir": "...", "authType": "oauth"}}}

Any problem with the file means "no profiles", never an error.
"""

import json
import os
from pathlib import Path

from pydantic import BaseModel

from quotapulse.observability.logger import get_logger

log = get_logger("providers.multicc")

SUPPORTED_VERSION = 1


class MulticcProfile(BaseModel):
    model_config = {"frozen": True}

    name: str
    config_dir: Path
    auth_type: str = "oauth"
    description: str | None = None


def default_multicc_dir() -> Path:
    env_dir = os.environ.get("MULTICC_DIR", "").strip()
    if env_dir:
        return Path(env_dir).expanduser()
    return Path.home() / ".multicc"


def _text(value) -> str | None:
    return value if isinstance(value, str) else None


def read_multicc_profiles(config_path: Path) -> list[MulticcProfile]:
    if not config_path.is_file():
        log.debug("multicc_config_missing", path=str(config_path))
        return []

    try:
        data = json.loads(config_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        log.error("multicc_config_unreadable", path=str(config_path), error=str(e))
        return []

    if not isinstance(data, dict):
        return []
    version = data.get("version")
    if isinstance(version, bool) or version != SUPPORTED_VERSION:
        log.warning("multicc_config_unsupported_version", path=str(config_path), version=version)
        return []

    entries = data.get("profiles")
    if not isinstance(entries, dict):
        return []

    profiles = []
    for name, entry in entries.items():
        if not isinstance(entry, dict):
            continue
        config_dir = _text(entry.get("configDir"))
        if not config_dir or not config_dir.strip():
            log.warning("multicc_profile_without_config_dir", profile=name)
            continue
        directory = Path(config_dir.strip()).expanduser()
        if not directory.is_dir():
            log.warning("multicc_profile_dir_missing", profile=name, config_dir=str(directory))
            continue
        profiles.append(
            MulticcProfile(
                name=name,
                config_dir=directory,
                auth_type=_text(entry.get("authType")) or "oauth",
                description=_text(entry.get("description")),
            )
        )

    log.info("multicc_profiles_discovered", count=len(profiles))
    return profiles


class MulticcDiscovery:
    """Cached view of the multicc profiles on this machine."""

    def __init__(self, multicc_dir: Path | None = None):
        self.multicc_dir = multicc_dir or default_multicc_dir()
        self.is_detected = False
        self.profiles: list[MulticcProfile] = []
        self.refresh()

    @property
    def config_path(self) -> Path:
        return self.multicc_dir / "config.json"

    def refresh(self) -> list[MulticcProfile]:
        self.is_detected = self.config_path.is_file()
        self.profiles = read_multicc_profiles(self.config_path) if self.is_detected else []
        return self.profiles

    def select(self, name: str | None) -> list[MulticcProfile]:
        """All profiles, or just the named one (case-insensitive); empty when it is not found."""
        if name is None or not name.strip():
            return list(self.profiles)
        wanted = name.strip().lower()
        return [p for p in self.profiles if p.name.lower() == wanted]
