"""Tests for path utilities."""

from pathlib import Path

from carddav_sync.utils.paths import (
    CONFIG_DIR_ENV_VAR,
    DEFAULT_CONFIG_DIR,
    resolve_config_dir,
    resolve_in_config_dir,
)


class TestResolveConfigDir:
    """Test resolve_config_dir function."""

    def test_default_config_dir_is_in_home(self):
        assert DEFAULT_CONFIG_DIR == Path.home() / ".carddav-sync"

    def test_explicit_path_wins(self, tmp_path, monkeypatch):
        """Explicit paths take priority over the environment."""
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, "/somewhere/else")
        assert resolve_config_dir(str(tmp_path)) == tmp_path.resolve()
        assert resolve_config_dir(tmp_path) == tmp_path.resolve()

    def test_environment_variable(self, tmp_path, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, str(tmp_path))
        assert resolve_config_dir() == tmp_path.resolve()

    def test_empty_environment_variable_uses_default(self, monkeypatch):
        monkeypatch.setenv(CONFIG_DIR_ENV_VAR, "")
        assert resolve_config_dir() == DEFAULT_CONFIG_DIR.resolve()

    def test_tilde_is_expanded(self, monkeypatch):
        monkeypatch.delenv(CONFIG_DIR_ENV_VAR, raising=False)
        assert resolve_config_dir("~/contacts") == (Path.home() / "contacts").resolve()

    def test_result_is_absolute(self):
        assert resolve_config_dir("relative/dir").is_absolute()


class TestResolveInConfigDir:
    """Test resolve_in_config_dir function."""

    def test_default_used_when_unset(self, tmp_path):
        assert resolve_in_config_dir(None, "sync.db", tmp_path) == tmp_path / "sync.db"
        assert resolve_in_config_dir("", "sync.db", tmp_path) == tmp_path / "sync.db"

    def test_relative_value(self, tmp_path):
        assert resolve_in_config_dir("data/a.db", "sync.db", tmp_path) == tmp_path / "data/a.db"

    def test_absolute_value(self, tmp_path):
        target = tmp_path / "elsewhere.db"
        assert resolve_in_config_dir(str(target), "sync.db", Path("/unused")) == target
