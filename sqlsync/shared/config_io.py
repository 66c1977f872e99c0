"""Configuration I/O utilities for reading and writing TOML config files.

This module handles serialization/deserialization of AppConfig to/from TOML.
"""

import os
import platform
import tomllib  # Built-in Python 3.11+
from dataclasses import fields
from pathlib import Path
from typing import Any

import tomli_w

from sqlsync.domain.config import (
    AppConfig,
    DatabaseConfig,
    MeilisearchConfig,
    SyncConfig,
    TableConfig,
    TypoToleranceConfig,
)
from sqlsync.domain.exceptions import ConfigError


def get_global_config_path() -> Path:
    """Get the path to the global config file.

    The location is platform-dependent:
    - Linux/macOS: $XDG_CONFIG_HOME/sqlsync/config.toml or ~/.config/sqlsync/config.toml
    - Windows: %APPDATA%/sqlsync/config.toml

    Returns:
        Path to the global config file (may not exist)
    """
    if platform.system() == "Windows":
        appdata = os.environ.get("APPDATA", "")
        if appdata:
            return Path(appdata) / "sqlsync" / "config.toml"
        return Path.home() / ".config" / "sqlsync" / "config.toml"
    xdg_config = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg_config:
        return Path(xdg_config) / "sqlsync" / "config.toml"
    return Path.home() / ".config" / "sqlsync" / "config.toml"


def load_config_data(path: Path) -> dict[str, Any]:
    """Load raw TOML data from a config file.

    Args:
        path: Path to config.toml file

    Returns:
        Dictionary with parsed TOML data

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is malformed
    """
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in config file: {e}") from e


def merge_config_data(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Merge two config dictionaries, with override values taking precedence.

    Performs a shallow merge at the section level: keys of a section present
    in override replace the same keys of the base section. Table lists are
    not merged; an override list replaces the base list.

    Args:
        base: Base configuration dictionary
        override: Override configuration dictionary (takes precedence)

    Returns:
        Merged configuration dictionary
    """
    result: dict[str, Any] = {}

    for section in set(base.keys()) | set(override.keys()):
        base_section = base.get(section, {})
        override_section = override.get(section, {})

        if isinstance(base_section, dict) and isinstance(override_section, dict):
            result[section] = {**base_section, **override_section}
        elif section in override:
            result[section] = override_section
        else:
            result[section] = base_section

    return result


def _check_keys(section: str, data: dict[str, Any], cls: type) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ConfigError(
            f"Unknown key(s) in [{section}]: {', '.join(unknown)}",
            hint=f"Valid keys: {', '.join(sorted(allowed))}",
        )


def _table_from_data(data: dict[str, Any]) -> TableConfig:
    name = data.get("name", "<unnamed>")
    _check_keys(f"database.tables.{name}", data, TableConfig)
    values = dict(data)
    typo = values.pop("typo_tolerance", None)
    if typo is not None:
        if not isinstance(typo, dict):
            raise ConfigError(f"typo_tolerance of table '{name}' must be a table")
        _check_keys(f"database.tables.{name}.typo_tolerance", typo, TypoToleranceConfig)
        values["typo_tolerance"] = TypoToleranceConfig(**typo)
    return TableConfig(**values)


def config_data_to_app_config(data: dict[str, Any]) -> AppConfig:
    """Convert raw config data dictionary to AppConfig.

    Args:
        data: Dictionary with config sections

    Returns:
        Validated AppConfig instance

    Raises:
        ConfigError: If a section is missing, has unknown keys or invalid values
    """
    unknown_sections = sorted(set(data) - {"meilisearch", "database", "sync"})
    if unknown_sections:
        raise ConfigError(f"Unknown config section(s): {', '.join(unknown_sections)}")
    if "database" not in data:
        raise ConfigError(
            "Missing [database] section",
            hint="Run 'sqlsync generate' to create a config from an existing database",
        )

    meili_data = dict(data.get("meilisearch", {}))
    database_data = dict(data["database"])
    sync_data = dict(data.get("sync", {}))

    try:
        _check_keys("meilisearch", meili_data, MeilisearchConfig)
        _check_keys("sync", sync_data, SyncConfig)
        tables = [_table_from_data(table) for table in database_data.pop("tables", [])]
        _check_keys("database", database_data, DatabaseConfig)
        return AppConfig(
            meilisearch=MeilisearchConfig(**meili_data),
            database=DatabaseConfig(tables=tables, **database_data),
            sync=SyncConfig(**sync_data),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def load_config(path: Path) -> AppConfig:
    """Load configuration from a TOML file.

    Args:
        path: Path to config.toml file

    Returns:
        Parsed AppConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file is malformed
        ConfigError: If config values are invalid
    """
    return config_data_to_app_config(load_config_data(path))


def _drop_none(data: dict[str, Any]) -> dict[str, Any]:
    # TOML has no null
    return {key: value for key, value in data.items() if value is not None}


def app_config_to_data(config: AppConfig) -> dict[str, Any]:
    """Convert AppConfig to a TOML-serializable dictionary."""
    tables = []
    for table in config.database.tables:
        entry = _drop_none(
            {
                "name": table.name,
                "primary_key": table.primary_key,
                "index_name": table.index_name,
                "fields_to_index": list(table.fields_to_index),
                "watch_for_changes": table.watch_for_changes,
                "searchable_attributes": table.searchable_attributes,
                "ranking_rules": table.ranking_rules,
                "poll_interval_seconds": table.poll_interval_seconds,
                "batch_size": table.batch_size,
                "max_concurrent_batches": table.max_concurrent_batches,
            }
        )
        if table.typo_tolerance is not None:
            entry["typo_tolerance"] = {"enabled": table.typo_tolerance.enabled}
        tables.append(entry)

    return {
        "meilisearch": _drop_none(
            {
                "host": config.meilisearch.host,
                "api_key": config.meilisearch.api_key,
                "timeout_seconds": config.meilisearch.timeout_seconds,
                "wait_for_tasks": config.meilisearch.wait_for_tasks,
                "task_timeout_seconds": config.meilisearch.task_timeout_seconds,
            }
        ),
        "database": {
            "type": config.database.type,
            "connection_string": config.database.connection_string,
            "poll_interval_seconds": config.database.poll_interval_seconds,
            "connection_pool_size": config.database.connection_pool_size,
            "max_concurrent_batches": config.database.max_concurrent_batches,
            "document_batch_size": config.database.document_batch_size,
            "tables": tables,
        },
        "sync": _drop_none(
            {
                "max_attempts": config.sync.max_attempts,
                "base_backoff_seconds": config.sync.base_backoff_seconds,
                "max_backoff_seconds": config.sync.max_backoff_seconds,
                "backoff_jitter": config.sync.backoff_jitter,
                "batch_delay_seconds": config.sync.batch_delay_seconds,
                "max_text_length": config.sync.max_text_length,
                "state_path": config.sync.state_path,
            }
        ),
    }


def save_config(config: AppConfig, path: Path) -> None:
    """Save configuration to a TOML file.

    Args:
        config: AppConfig to save
        path: Destination path for config.toml
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("wb") as f:
        tomli_w.dump(app_config_to_data(config), f)
