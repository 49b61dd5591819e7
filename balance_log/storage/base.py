"""
Event store contract.

Every medium exposes the same narrow surface:
- append / append_batch for producers (the venue feed listener)
- query_by_time_range / get_by_id for consumers (audit, reconciliation)

Concurrency control is the medium's job. Implementations only have to map
the medium's guarantees and failures onto this contract.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional, Sequence

from balance_log.cancellation import CancellationToken
from balance_log.errors import InvalidRange, InvalidRecord
from balance_log.models import (
    EventRecord,
    dump_payload,
    normalize_payload,
    to_utc,
    validate_insert_time,
    validate_version,
)


class EventStore(ABC):
    """Append-only store of balance update records."""

    table: str

    @abstractmethod
    def init_schema(self) -> None:
        """Create the table, id generator and insert_time index if missing."""

    @abstractmethod
    def append(
        self,
        record: EventRecord,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> int:
        """
        Durably write one record and return its id.

        The row is committed before this returns. Concurrent appends never
        share an id. If the call fails, no row was written.
        """

    @abstractmethod
    def append_batch(
        self,
        records: Sequence[EventRecord],
        cancellation_token: Optional[CancellationToken] = None,
    ) -> list[int]:
        """Write several records in one transaction; ids come back in input order."""

    @abstractmethod
    def query_by_time_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> list[EventRecord]:
        """
        Records with start <= insert_time <= end, ordered by (insert_time, id).

        A None bound is open-ended. No match is an empty list, not an error.
        """

    @abstractmethod
    def get_by_id(self, record_id: int) -> EventRecord:
        """Point lookup; raises NotFound when the id was never assigned."""

    @abstractmethod
    def stats(self) -> dict[str, Any]:
        """Row count plus id and insert_time bounds."""

    @abstractmethod
    def close(self) -> None:
        """Release the medium handle."""

    def __enter__(self) -> "EventStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def validate_range(
    start: Optional[datetime],
    end: Optional[datetime],
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Check query bounds and normalize them to UTC."""
    for name, bound in (("start", start), ("end", end)):
        if bound is None:
            continue
        if not isinstance(bound, datetime):
            raise InvalidRange(f"{name} must be a datetime, got {type(bound).__name__}")
        if bound.tzinfo is None or bound.utcoffset() is None:
            raise InvalidRange(f"{name} must be timezone-aware")

    start = to_utc(start) if start is not None else None
    end = to_utc(end) if end is not None else None

    if start is not None and end is not None and start > end:
        raise InvalidRange(f"start {start.isoformat()} is after end {end.isoformat()}")

    return start, end


def ensure_unpersisted(record: EventRecord) -> EventRecord:
    if not isinstance(record, EventRecord):
        raise InvalidRecord(f"expected EventRecord, got {type(record).__name__}")
    if record.is_persisted:
        raise InvalidRecord(f"record already persisted with id {record.id}")
    return record


def validate_record_id(record_id: int) -> int:
    if isinstance(record_id, bool) or not isinstance(record_id, int):
        raise InvalidRecord(f"record id must be an integer, got {record_id!r}")
    return record_id


def range_filters(
    start: Optional[datetime],
    end: Optional[datetime],
    placeholder: str,
) -> tuple[str, list[datetime]]:
    """Build the WHERE clause for a time range (empty when fully open)."""
    filters = []
    params = []

    if start is not None:
        filters.append(f"insert_time >= {placeholder}")
        params.append(start)

    if end is not None:
        filters.append(f"insert_time <= {placeholder}")
        params.append(end)

    where = f"WHERE {' AND '.join(filters)}" if filters else ""
    return where, params


def write_values(record: EventRecord) -> tuple[Optional[datetime], Optional[int], str]:
    """
    Validate a record at write time and return (insert_time, version, json text).

    Records can be built without new_event_record, so nothing is trusted.
    """
    ensure_unpersisted(record)
    payload_text = dump_payload(normalize_payload(record.payload))
    version = validate_version(record.version)
    insert_time = None
    if record.insert_time is not None:
        insert_time = validate_insert_time(record.insert_time)
    return insert_time, version, payload_text
