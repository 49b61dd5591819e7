"""Open the configured event store."""

import structlog

from balance_log.config import StoreConfig
from balance_log.storage.base import EventStore
from balance_log.storage.duckdb_store import DuckDBEventStore
from balance_log.storage.postgres_store import PostgresEventStore

logger = structlog.get_logger(__name__)


def open_store(config: StoreConfig) -> EventStore:
    """
    Build the store named by config.backend.

    DuckDB stores create their schema on open (unless read-only);
    PostgreSQL schemas are created explicitly with init_schema().
    """
    logger.debug("opening_event_store", backend=config.backend, table=config.table)

    if config.backend == "postgres":
        return PostgresEventStore(
            dsn=config.postgres_dsn,
            table=config.table,
            connect_timeout_seconds=config.connect_timeout_seconds,
            statement_timeout_seconds=config.timeout_seconds,
        )

    return DuckDBEventStore(
        db_path=config.duckdb_path,
        table=config.table,
        read_only=config.read_only,
        timeout_seconds=config.timeout_seconds,
    )
