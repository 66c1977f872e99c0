"""Tests for config file reading and writing."""

from pathlib import Path

import pytest

from sqlsync.domain.config import (
    AppConfig,
    DatabaseConfig,
    MeilisearchConfig,
    SyncConfig,
    TableConfig,
    TypoToleranceConfig,
)
from sqlsync.domain.exceptions import ConfigError
from sqlsync.shared.config_io import (
    app_config_to_data,
    config_data_to_app_config,
    get_global_config_path,
    load_config,
    load_config_data,
    merge_config_data,
    save_config,
)


class TestGlobalConfigPath:
    """Tests for get_global_config_path()."""

    def test_xdg_config_home(self, monkeypatch, tmp_path: Path) -> None:
        """XDG_CONFIG_HOME is honored on POSIX platforms."""
        monkeypatch.setattr("platform.system", lambda: "Linux")
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
        assert get_global_config_path() == tmp_path / "sqlsync" / "config.toml"

    def test_home_fallback(self, monkeypatch) -> None:
        """Without XDG_CONFIG_HOME the path is under ~/.config."""
        monkeypatch.setattr("platform.system", lambda: "Linux")
        monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
        assert get_global_config_path() == Path.home() / ".config" / "sqlsync" / "config.toml"

    def test_windows_appdata(self, monkeypatch, tmp_path: Path) -> None:
        """APPDATA is used on Windows."""
        monkeypatch.setattr("platform.system", lambda: "Windows")
        monkeypatch.setenv("APPDATA", str(tmp_path))
        assert get_global_config_path() == tmp_path / "sqlsync" / "config.toml"


class TestMergeConfigData:
    """Tests for merge_config_data()."""

    def test_section_keys_merged(self) -> None:
        """Override keys replace base keys within a section."""
        merged = merge_config_data(
            {"meilisearch": {"host": "a", "api_key": "k"}},
            {"meilisearch": {"host": "b"}, "database": {"connection_string": "x"}},
        )
        assert merged == {
            "meilisearch": {"host": "b", "api_key": "k"},
            "database": {"connection_string": "x"},
        }

    def test_table_lists_replaced(self) -> None:
        """Table lists are not concatenated."""
        merged = merge_config_data(
            {"database": {"tables": [{"name": "a"}]}},
            {"database": {"tables": [{"name": "b"}]}},
        )
        assert merged["database"]["tables"] == [{"name": "b"}]


class TestLoadConfigData:
    """Tests for load_config_data()."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config_data(tmp_path / "missing.toml")

    def test_invalid_toml(self, tmp_path: Path) -> None:
        """Malformed TOML raises ValueError."""
        path = tmp_path / "bad.toml"
        path.write_text("= nope")
        with pytest.raises(ValueError, match="Invalid TOML"):
            load_config_data(path)


class TestConfigDataConversion:
    """Tests for dict to AppConfig conversion."""

    def test_typo_tolerance_must_be_table(self) -> None:
        """typo_tolerance is a sub-table, not a bool."""
        data = {
            "database": {
                "connection_string": "app.db",
                "tables": [{"name": "users", "typo_tolerance": False}],
            }
        }
        with pytest.raises(ConfigError, match="must be a table"):
            config_data_to_app_config(data)

    def test_unknown_table_key(self) -> None:
        """Unknown keys inside a table entry are reported with the table name."""
        data = {
            "database": {
                "connection_string": "app.db",
                "tables": [{"name": "users", "index": "people"}],
            }
        }
        with pytest.raises(ConfigError, match=r"database\.tables\.users"):
            config_data_to_app_config(data)


class TestSaveConfig:
    """Tests for writing config files."""

    def test_saved_config_loads_back(self, tmp_path: Path) -> None:
        """A saved config loads to an equal AppConfig."""
        config = AppConfig(
            meilisearch=MeilisearchConfig(host="http://search:7700", api_key="secret"),
            database=DatabaseConfig(
                connection_string="app.db",
                poll_interval_seconds=10.0,
                tables=[
                    TableConfig(
                        name="users",
                        primary_key="id",
                        index_name="users",
                        fields_to_index=["id", "name"],
                        typo_tolerance=TypoToleranceConfig(enabled=False),
                    )
                ],
            ),
            sync=SyncConfig(state_path="state.db"),
        )
        path = tmp_path / "nested" / "sqlsync.toml"

        save_config(config, path)

        assert load_config(path) == config

    def test_none_values_omitted(self) -> None:
        """TOML has no null, so unset options are left out."""
        data = app_config_to_data(
            AppConfig(
                meilisearch=MeilisearchConfig(),
                database=DatabaseConfig(
                    connection_string="app.db", tables=[TableConfig(name="users")]
                ),
            )
        )
        assert "api_key" not in data["meilisearch"]
        assert "state_path" not in data["sync"]
        assert data["database"]["tables"] == [
            {"name": "users", "fields_to_index": [], "watch_for_changes": True}
        ]
