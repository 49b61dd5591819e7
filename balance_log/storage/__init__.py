"""
Storage layer for balance updates.

- EventStore: the append / range-query contract
- DuckDBEventStore: embedded default medium
- PostgresEventStore: shared server medium
"""

from balance_log.storage.base import EventStore
from balance_log.storage.duckdb_store import DuckDBEventStore
from balance_log.storage.postgres_store import PostgresEventStore

__all__ = ["EventStore", "DuckDBEventStore", "PostgresEventStore"]
