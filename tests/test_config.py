"""Tests for paths and service settings."""

from pathlib import Path

import pytest

from taskrail.config import (
    ServiceSettings,
    SettingsLoadError,
    get_db_path,
    get_home_dir,
    get_settings_path,
    load_settings,
)


@pytest.fixture(autouse=True)
def _clear_cache(monkeypatch):
    """Clear lru_cache before and after each test."""
    get_home_dir.cache_clear()
    monkeypatch.delenv("TASKRAIL_HOME", raising=False)
    monkeypatch.delenv("XDG_DATA_HOME", raising=False)
    monkeypatch.delenv("TASKRAIL_RUN_PARALLELISM_LIMIT", raising=False)
    yield
    get_home_dir.cache_clear()


class TestGetHomeDir:
    def test_default_fallback(self):
        assert get_home_dir() == Path.home() / ".taskrail"

    def test_taskrail_home_override(self, monkeypatch):
        monkeypatch.setenv("TASKRAIL_HOME", "/tmp/custom-tr")
        get_home_dir.cache_clear()
        assert get_home_dir() == Path("/tmp/custom-tr")

    def test_xdg_data_home_fallback(self, monkeypatch):
        monkeypatch.setenv("XDG_DATA_HOME", "/tmp/xdg-data")
        get_home_dir.cache_clear()
        assert get_home_dir() == Path("/tmp/xdg-data/taskrail")

    def test_taskrail_home_takes_precedence_over_xdg(self, monkeypatch):
        monkeypatch.setenv("TASKRAIL_HOME", "/tmp/custom-tr")
        monkeypatch.setenv("XDG_DATA_HOME", "/tmp/xdg-data")
        get_home_dir.cache_clear()
        assert get_home_dir() == Path("/tmp/custom-tr")


class TestDerivedPaths:
    def test_paths(self, monkeypatch):
        monkeypatch.setenv("TASKRAIL_HOME", "/tmp/tr")
        get_home_dir.cache_clear()
        assert get_db_path() == Path("/tmp/tr/taskrail.db")
        assert get_settings_path() == Path("/tmp/tr/settings.yaml")


class TestLoadSettings:
    def test_missing_file_gives_defaults(self, tmp_path):
        settings = load_settings(tmp_path / "settings.yaml")
        assert settings == ServiceSettings()
        assert settings.run_parallelism_limit == 0
        assert settings.event_poll_seconds == 0.5

    def test_reads_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("run_parallelism_limit: 4\nevent_poll_seconds: 0.1\n")
        settings = load_settings(path)
        assert settings.run_parallelism_limit == 4
        assert settings.event_poll_seconds == 0.1

    def test_default_location(self, tmp_path, monkeypatch):
        monkeypatch.setenv("TASKRAIL_HOME", str(tmp_path))
        get_home_dir.cache_clear()
        (tmp_path / "settings.yaml").write_text("default_namespace: ops\n")
        assert load_settings().default_namespace == "ops"

    def test_env_overrides_file(self, tmp_path, monkeypatch):
        path = tmp_path / "settings.yaml"
        path.write_text("run_parallelism_limit: 4\n")
        monkeypatch.setenv("TASKRAIL_RUN_PARALLELISM_LIMIT", "9")
        assert load_settings(path).run_parallelism_limit == 9

    @pytest.mark.parametrize("value", ["lots", "-1"])
    def test_bad_env_value(self, tmp_path, monkeypatch, value):
        monkeypatch.setenv("TASKRAIL_RUN_PARALLELISM_LIMIT", value)
        with pytest.raises(SettingsLoadError, match="TASKRAIL_RUN_PARALLELISM_LIMIT"):
            load_settings(tmp_path / "settings.yaml")

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("event_poll_seconds: 0\n")
        with pytest.raises(SettingsLoadError, match="Validation failed"):
            load_settings(path)

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("run_parallelism_limit: [oops\n")
        with pytest.raises(SettingsLoadError, match="Invalid YAML"):
            load_settings(path)

    def test_validation_error_names_field(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("event_poll_seconds: 0\nrun_parallelism_limit: -1\n")
        with pytest.raises(SettingsLoadError) as exc:
            load_settings(path)
        message = str(exc.value)
        assert "(2 errors)" in message
        assert "  event_poll_seconds: " in message
        assert "  run_parallelism_limit: " in message
