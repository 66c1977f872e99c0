"""Factory for wiring the sync engine from configuration.

Keeps the CLI layer free from direct adapter construction.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Self

if TYPE_CHECKING:
    from sqlsync.adapters.config.toml_config_provider import TomlConfigProvider
    from sqlsync.adapters.meilisearch.client import MeilisearchIndex
    from sqlsync.adapters.sqlite.database_adapter import SQLiteDatabaseAdapter
    from sqlsync.adapters.sqlite.state_repository import SQLiteStateRepository
    from sqlsync.core.sync.scheduler import PollScheduler
    from sqlsync.domain.config import AppConfig
    from sqlsync.ports.reporting import CycleReporter

logger = logging.getLogger(__name__)


class ConfigFactory:
    """Factory for creating config providers."""

    def create_config_provider(self) -> TomlConfigProvider:
        from sqlsync.adapters.config.toml_config_provider import TomlConfigProvider

        return TomlConfigProvider()


def create_database_adapter(
    connection_string: str, pool_size: int = 5
) -> SQLiteDatabaseAdapter:
    """Open a pooled SQLite adapter for a connection string."""
    from sqlsync.adapters.sqlite.connection_pool import (
        SQLiteConnectionPool,
        resolve_database_path,
    )
    from sqlsync.adapters.sqlite.database_adapter import SQLiteDatabaseAdapter

    pool = SQLiteConnectionPool(resolve_database_path(connection_string), size=pool_size)
    return SQLiteDatabaseAdapter(pool)


@dataclass
class SyncEngine:
    """A wired scheduler together with the resources it owns."""

    scheduler: PollScheduler
    database: SQLiteDatabaseAdapter
    index: MeilisearchIndex
    state_repository: SQLiteStateRepository | None = None

    def close(self) -> None:
        self.database.close()
        self.index.close()
        if self.state_repository is not None:
            self.state_repository.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        self.close()
        return False


class SyncEngineFactory:
    """Builds the database adapter, index client and scheduler for a config.

    Args:
        config: Validated application config.
        sleep: Sleep function handed to the dispatcher and index client.
    """

    def __init__(
        self, config: AppConfig, sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self._config = config
        self._sleep = sleep

    def create_search_index(self) -> MeilisearchIndex:
        from sqlsync.adapters.meilisearch.client import IndexSettings, MeilisearchIndex

        settings = {
            table.target_index: IndexSettings.from_table_config(table)
            for table in self._config.database.tables
        }
        return MeilisearchIndex(self._config.meilisearch, settings, sleep=self._sleep)

    def create_state_repository(self) -> SQLiteStateRepository | None:
        if not self._config.sync.state_path:
            return None
        from sqlsync.adapters.sqlite.state_repository import SQLiteStateRepository

        return SQLiteStateRepository(Path(self._config.sync.state_path).expanduser())

    def create_engine(self, reporter: CycleReporter | None = None) -> SyncEngine:
        """Wire a scheduler with every configured table registered."""
        from sqlsync.core.sync.dispatcher import BatchDispatcher, RetryPolicy
        from sqlsync.core.sync.scheduler import PollScheduler

        database = create_database_adapter(
            self._config.database.connection_string,
            self._config.database.connection_pool_size,
        )
        index = self.create_search_index()
        state_repository = self.create_state_repository()
        dispatcher = BatchDispatcher(
            index, RetryPolicy.from_config(self._config.sync), sleep=self._sleep
        )
        scheduler = PollScheduler(
            database, dispatcher, state_repository=state_repository, reporter=reporter
        )
        for registration in self._config.registrations():
            scheduler.register_table(registration)
        logger.debug("Engine wired for %d table(s)", len(self._config.database.tables))
        return SyncEngine(scheduler, database, index, state_repository)
