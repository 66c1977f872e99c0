"""TOML-based configuration provider.

Config loading priority (highest to lowest):
1. Explicit: the file passed with --config
2. Global: ~/.config/sqlsync/config.toml (user defaults)
3. Built-in defaults
"""

import logging
from pathlib import Path

from sqlsync.domain.config import AppConfig
from sqlsync.domain.exceptions import ConfigError
from sqlsync.shared.config_io import (
    config_data_to_app_config,
    get_global_config_path,
    load_config_data,
    merge_config_data,
)

logger = logging.getLogger(__name__)


class TomlConfigProvider:
    """Configuration provider that loads from TOML files.

    Implements config cascade:
    1. Load global config if present
    2. Load the explicit config file (required)
    3. Explicit values override global values (section-level merge)
    4. Missing values fall back to built-in defaults

    An unreadable global config is ignored with a warning. Any problem with
    the explicit config is a ConfigError.
    """

    def __init__(self, global_path: Path | None = None) -> None:
        self.global_path = global_path or get_global_config_path()

    def load(self, config_path: Path) -> AppConfig:
        """Load and validate configuration.

        Args:
            config_path: Path to the config file given on the command line.

        Returns:
            Validated AppConfig.

        Raises:
            ConfigError: If the config file is missing, malformed or invalid.
        """
        data: dict = {}
        if self.global_path.exists():
            try:
                data = load_config_data(self.global_path)
                logger.debug("Loaded global config from %s", self.global_path)
            except (FileNotFoundError, ValueError) as e:
                logger.warning(
                    "Failed to parse global config at %s: %s. Ignoring global config.",
                    self.global_path,
                    e,
                )

        try:
            local_data = load_config_data(config_path)
        except FileNotFoundError as e:
            raise ConfigError(
                str(e), hint="Run 'sqlsync generate' to create a config file"
            ) from e
        except ValueError as e:
            raise ConfigError(str(e)) from e
        logger.debug("Loaded config from %s", config_path)

        return config_data_to_app_config(merge_config_data(data, local_data))
