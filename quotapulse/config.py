import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Refresh cadence
    refresh_interval_seconds: int = 300

    # Data
    data_dir: str = str(Path.home() / ".local" / "share" / "quotapulse")
    snapshot_path: str | None = None  # Falls back to <data_dir>/snapshots/pulse.json

    # Providers
    claude_enabled: bool = True
    codex_enabled: bool = True
    copilot_enabled: bool = False

    # Log locations (same env vars the assistants themselves honour)
    claude_config_dir: str | None = Field(default=None, validation_alias="CLAUDE_CONFIG_DIR")  # Comma-separated
    codex_home: str | None = Field(default=None, validation_alias="CODEX_HOME")

    # multicc (several Claude accounts, one config dir each)
    multicc_enabled: bool = True
    multicc_dir: str | None = Field(default=None, validation_alias="MULTICC_DIR")
    multicc_profile: str | None = None  # Track only this profile; all profiles when unset

    # CLI probes
    cli_probe_enabled: bool = True
    claude_cli_command: str = "claude"
    codex_cli_command: str = "codex"
    cli_probe_timeout_seconds: float = 15.0

    # Network
    http_timeout_seconds: float = 10.0

    # Cost
    cost_window_days: int = 30
    digest_cache_seconds: float = 60.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    model_config = {"env_file": ".env", "extra": "ignore", "populate_by_name": True}

    @property
    def resolved_snapshot_path(self) -> Path:
        if self.snapshot_path:
            return Path(self.snapshot_path).expanduser()
        return Path(self.data_dir).expanduser() / "snapshots" / "pulse.json"

    @property
    def claude_config_dirs(self) -> list[Path]:
        if not self.claude_config_dir:
            return []
        return [Path(p.strip()).expanduser() for p in self.claude_config_dir.split(",") if p.strip()]

    @property
    def codex_home_dir(self) -> Path:
        if self.codex_home and self.codex_home.strip():
            return Path(self.codex_home.strip()).expanduser()
        return Path(os.path.expanduser("~")) / ".codex"

    @property
    def multicc_home(self) -> Path:
        if self.multicc_dir and self.multicc_dir.strip():
            return Path(self.multicc_dir.strip()).expanduser()
        return Path(os.path.expanduser("~")) / ".multicc"

    @property
    def enabled_providers(self) -> set[str]:
        enabled = set()
        if self.claude_enabled:
            enabled.add("claude")
        if self.codex_enabled:
            enabled.add("codex")
        if self.copilot_enabled:
            enabled.add("copilot")
        return enabled


settings = Settings()
