"""Generate use case: build a starter config from an existing database.

Every table with a single-column primary key becomes a synchronized table
indexing all of its columns. Tables without a usable key are skipped.
"""

import logging
from dataclasses import dataclass, field

from sqlsync.domain.config import (
    AppConfig,
    DatabaseConfig,
    MeilisearchConfig,
    TableConfig,
)
from sqlsync.ports.database import DatabaseAdapter

logger = logging.getLogger(__name__)


@dataclass
class GenerateRequest:
    """Request to generate a config.

    Attributes:
        connection_string: Database connection string to store in the config
        meilisearch_host: Meilisearch base URL
        meilisearch_api_key: Optional Meilisearch API key
        poll_interval_seconds: Poll interval for every table
    """

    connection_string: str
    meilisearch_host: str
    meilisearch_api_key: str | None = None
    poll_interval_seconds: float = 60.0


@dataclass
class GenerateResponse:
    """Generated config and the tables left out of it."""

    config: AppConfig
    skipped_tables: dict[str, str] = field(default_factory=dict)


class GenerateConfigUseCase:
    """Introspects a database and proposes a sync config."""

    def __init__(self, database: DatabaseAdapter) -> None:
        self.database = database

    def execute(self, request: GenerateRequest) -> GenerateResponse:
        tables: list[TableConfig] = []
        skipped: dict[str, str] = {}

        for name in self.database.get_all_tables():
            schema = self.database.get_schema(name)
            if not schema.primary_key:
                reason = "no primary key"
            elif len(schema.primary_key) > 1:
                reason = f"composite primary key ({', '.join(schema.primary_key)})"
            else:
                tables.append(
                    TableConfig(
                        name=name,
                        primary_key=schema.primary_key[0],
                        index_name=name,
                        fields_to_index=[],
                        watch_for_changes=True,
                    )
                )
                continue
            logger.warning("Skipping table '%s': %s", name, reason)
            skipped[name] = reason

        config = AppConfig(
            meilisearch=MeilisearchConfig(
                host=request.meilisearch_host, api_key=request.meilisearch_api_key
            ),
            database=DatabaseConfig(
                connection_string=request.connection_string,
                poll_interval_seconds=request.poll_interval_seconds,
                tables=tables,
            ),
        )
        return GenerateResponse(config=config, skipped_tables=skipped)
