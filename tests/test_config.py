"""Tests for environment-driven configuration."""
from pathlib import Path

import pytest

from notetree.config import NotetreeConfig
from notetree.exceptions import ConfigurationError, ErrorCode


@pytest.fixture
def clean_env(monkeypatch):
    for key in (
        "NOTETREE_BASE_DIR",
        "NOTETREE_DATABASE_PATH",
        "NOTETREE_LOG_LEVEL",
        "NOTETREE_METRICS_FILE",
        "NOTETREE_ADAPTER_TIMEOUT",
        "NOTETREE_FOLDER_TEMP_PREFIX",
        "NOTETREE_NOTE_TEMP_PREFIX",
    ):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestDefaults:
    def test_defaults(self, clean_env):
        cfg = NotetreeConfig()
        assert cfg.database_path == Path("data/db/notetree.db")
        assert cfg.log_level == "INFO"
        assert cfg.metrics_file is None
        assert cfg.adapter_timeout_seconds == 30
        assert cfg.folder_temp_prefix == "temp-folder"
        assert cfg.note_temp_prefix == "temp-note"

    def test_environment_overrides(self, clean_env, tmp_path):
        clean_env.setenv("NOTETREE_DATABASE_PATH", str(tmp_path / "x.db"))
        clean_env.setenv("NOTETREE_LOG_LEVEL", "debug")
        clean_env.setenv("NOTETREE_ADAPTER_TIMEOUT", "2.5")
        clean_env.setenv("NOTETREE_METRICS_FILE", str(tmp_path / "m.json"))
        cfg = NotetreeConfig()
        assert cfg.database_path == tmp_path / "x.db"
        assert cfg.log_level == "DEBUG"
        assert cfg.adapter_timeout_seconds == 2.5
        assert cfg.metrics_file == tmp_path / "m.json"


class TestValidation:
    """Settings the engine cannot run with are rejected."""

    def test_negative_timeout(self, clean_env):
        clean_env.setenv("NOTETREE_ADAPTER_TIMEOUT", "-1")
        with pytest.raises(ConfigurationError) as exc_info:
            NotetreeConfig()
        assert exc_info.value.config_key == "NOTETREE_ADAPTER_TIMEOUT"
        assert exc_info.value.code == ErrorCode.CONFIG_INVALID

    @pytest.mark.parametrize("key", ["NOTETREE_FOLDER_TEMP_PREFIX", "NOTETREE_NOTE_TEMP_PREFIX"])
    def test_blank_prefix(self, clean_env, key):
        clean_env.setenv(key, "  ")
        with pytest.raises(ConfigurationError) as exc_info:
            NotetreeConfig()
        assert exc_info.value.config_key == key

    def test_unknown_log_level_falls_back(self, clean_env):
        clean_env.setenv("NOTETREE_LOG_LEVEL", "chatty")
        assert NotetreeConfig().log_level == "INFO"


class TestPaths:
    def test_relative_paths_use_base_dir(self, clean_env, tmp_path):
        clean_env.setenv("NOTETREE_BASE_DIR", str(tmp_path))
        cfg = NotetreeConfig()
        assert cfg.get_absolute_path(Path("db/x.db")) == tmp_path / "db/x.db"
        assert cfg.get_absolute_path(Path("/abs.db")) == Path("/abs.db")

    def test_db_url_creates_parent(self, clean_env, tmp_path):
        clean_env.setenv("NOTETREE_BASE_DIR", str(tmp_path))
        cfg = NotetreeConfig()
        assert cfg.get_db_url() == f"sqlite:///{tmp_path / 'data/db/notetree.db'}"
        assert (tmp_path / "data" / "db").is_dir()
