"""
Append-only log of exchange balance updates.

Producers (the venue account-feed listener) append records; consumers
(audit, reconciliation) read them back by time range or id.

- EventRecord / new_event_record: the record model
- EventStore: append / query contract, DuckDB and PostgreSQL media
- BalanceUpdateRecorder: batching background writer for producers
"""

from balance_log.cancellation import CancellationToken
from balance_log.config import StoreConfig, load_config
from balance_log.errors import (
    EventStoreError,
    InvalidPayload,
    InvalidRange,
    InvalidRecord,
    NotFound,
    QueryCancelled,
    RecorderError,
    StorageUnavailable,
)
from balance_log.models import EventRecord, new_event_record
from balance_log.recorder import BalanceUpdateRecorder
from balance_log.storage import DuckDBEventStore, EventStore, PostgresEventStore
from balance_log.storage.factory import open_store

__all__ = [
    "BalanceUpdateRecorder",
    "CancellationToken",
    "DuckDBEventStore",
    "EventRecord",
    "EventStore",
    "EventStoreError",
    "InvalidPayload",
    "InvalidRange",
    "InvalidRecord",
    "NotFound",
    "PostgresEventStore",
    "QueryCancelled",
    "RecorderError",
    "StorageUnavailable",
    "StoreConfig",
    "load_config",
    "new_event_record",
    "open_store",
]
