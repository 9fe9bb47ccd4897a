from pathlib import Path

import pytest
from quotapulse.config import Settings

PROVIDER_ENV = (
    "CLAUDE_ENABLED",
    "CODEX_ENABLED",
    "COPILOT_ENABLED",
    "CLAUDE_CONFIG_DIR",
    "CODEX_HOME",
    "MULTICC_DIR",
    "MULTICC_ENABLED",
    "MULTICC_PROFILE",
    "SNAPSHOT_PATH",
    "REFRESH_INTERVAL_SECONDS",
)


class TestSettings:
    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for name in PROVIDER_ENV:
            monkeypatch.delenv(name, raising=False)

    def test_defaults(self):
        settings = Settings(_env_file=None)

        assert settings.refresh_interval_seconds == 300
        assert settings.enabled_providers == {"claude", "codex"}
        assert settings.claude_config_dirs == []
        assert settings.cost_window_days == 30
        assert settings.multicc_enabled is True
        assert settings.multicc_profile is None

    def test_snapshot_path_under_data_dir(self, tmp_path):
        settings = Settings(_env_file=None, data_dir=str(tmp_path))
        assert settings.resolved_snapshot_path == tmp_path / "snapshots" / "pulse.json"

    def test_explicit_snapshot_path(self, tmp_path):
        settings = Settings(_env_file=None, snapshot_path=str(tmp_path / "state.json"))
        assert settings.resolved_snapshot_path == tmp_path / "state.json"

    def test_claude_config_dirs_comma_separated(self, monkeypatch):
        monkeypatch.setenv("CLAUDE_CONFIG_DIR", "/opt/claude-a, /opt/claude-b ,")

        settings = Settings(_env_file=None)

        assert settings.claude_config_dirs == [Path("/opt/claude-a"), Path("/opt/claude-b")]

    def test_codex_home_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CODEX_HOME", str(tmp_path))
        assert Settings(_env_file=None).codex_home_dir == tmp_path

    def test_multicc_dir(self, monkeypatch, tmp_path):
        assert Settings(_env_file=None).multicc_home == Path.home() / ".multicc"
        monkeypatch.setenv("MULTICC_DIR", str(tmp_path))
        assert Settings(_env_file=None).multicc_home == tmp_path

    def test_codex_home_default(self):
        assert Settings(_env_file=None).codex_home_dir == Path.home() / ".codex"

    def test_env_overrides(self, monkeypatch):
        monkeypatch.setenv("REFRESH_INTERVAL_SECONDS", "60")
        monkeypatch.setenv("COPILOT_ENABLED", "true")
        monkeypatch.setenv("CODEX_ENABLED", "false")

        settings = Settings(_env_file=None)

        assert settings.refresh_interval_seconds == 60
        assert settings.enabled_providers == {"claude", "copilot"}
