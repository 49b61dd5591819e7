"""
PostgreSQL event store tests.

Run against fake psycopg2 connections: they check the SQL that is sent,
the transaction handling, and how driver errors are translated.
"""

from datetime import datetime, timedelta, timezone

import psycopg2
import psycopg2.errors
import pytest

from balance_log.cancellation import CancellationToken
from balance_log.errors import (
    ConfigError,
    EventStoreError,
    InvalidPayload,
    InvalidRange,
    NotFound,
    QueryCancelled,
    StorageUnavailable,
)
from balance_log.models import EventRecord, new_event_record
from balance_log.storage import postgres_store
from balance_log.storage.postgres_store import PostgresEventStore

T1 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
T2 = T1 + timedelta(minutes=1)


class FakeCursor:
    def __init__(self, fetch_rows=None, fetch_one_rows=None, error=None):
        self.fetch_rows = fetch_rows or []
        self.fetch_one_rows = list(fetch_one_rows or [])
        self.error = error
        self.executed = []
        self.closed = False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        if self.error is not None:
            raise self.error

    def fetchall(self):
        return self.fetch_rows

    def fetchone(self):
        if self.fetch_one_rows:
            return self.fetch_one_rows.pop(0)
        return None

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, cursor):
        self.cursor_obj = cursor
        self.committed = False
        self.rolled_back = False
        self.cancelled = False
        self.closed = False

    def cursor(self):
        return self.cursor_obj

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True

    def cancel(self):
        self.cancelled = True

    def close(self):
        self.closed = True


def make_store(cursor):
    conn = FakeConnection(cursor)
    return PostgresEventStore(connection_factory=lambda: conn), conn


def test_append_inserts_with_server_default_time():
    cursor = FakeCursor(fetch_one_rows=[(1,)])
    store, conn = make_store(cursor)

    record_id = store.append(new_event_record({"asset": "BTC", "free": "1.5"}))

    sql, params = cursor.executed[0]
    assert record_id == 1
    assert "INSERT INTO balance_updates (insert_time, version, json)" in sql
    assert "COALESCE(%s, now())" in sql
    assert "%s::jsonb" in sql
    assert "RETURNING id" in sql
    assert params == (None, None, '{"asset": "BTC", "free": "1.5"}')
    assert conn.committed is True
    assert conn.closed is True


def test_append_passes_caller_time_and_version():
    cursor = FakeCursor(fetch_one_rows=[(7,)])
    store, _ = make_store(cursor)
    local = T1.astimezone(timezone(timedelta(hours=9)))

    store.append(new_event_record({"asset": "ETH"}, version=2, insert_time=local))

    _, params = cursor.executed[0]
    assert params[0] == T1
    assert params[0].utcoffset() == timedelta(0)
    assert params[1] == 2


def test_append_batch_uses_one_transaction():
    cursor = FakeCursor(fetch_one_rows=[(10,), (11,), (12,)])
    store, conn = make_store(cursor)

    ids = store.append_batch([new_event_record({"i": i}) for i in range(3)])

    assert ids == [10, 11, 12]
    assert len(cursor.executed) == 3
    assert conn.committed is True


def test_empty_batch_does_not_connect():
    connections = []
    store = PostgresEventStore(connection_factory=lambda: connections.append(1))

    assert store.append_batch([]) == []
    assert connections == []


def test_query_builds_bounded_ordered_select():
    cursor = FakeCursor(
        fetch_rows=[
            (1, T1, None, {"asset": "BTC"}),
            (2, T2, 3, {"asset": "ETH"}),
        ]
    )
    store, conn = make_store(cursor)

    records = store.query_by_time_range(T1, T2)

    sql, params = cursor.executed[0]
    assert "WHERE insert_time >= %s AND insert_time <= %s" in sql
    assert "ORDER BY insert_time, id" in sql
    assert params == (T1, T2)
    assert [r.id for r in records] == [1, 2]
    assert records[0].version is None
    assert records[1].payload == {"asset": "ETH"}
    assert records[1].insert_time == T2
    assert conn.closed is True


def test_query_open_range_has_no_where_clause():
    cursor = FakeCursor(fetch_rows=[])
    store, _ = make_store(cursor)

    assert store.query_by_time_range() == []

    sql, params = cursor.executed[0]
    assert "WHERE" not in sql
    assert params == ()


def test_query_decodes_json_text_rows():
    cursor = FakeCursor(fetch_rows=[(5, T1, 1, '{"asset": "SOL"}')])
    store, _ = make_store(cursor)

    records = store.query_by_time_range(end=T2)

    assert records[0].payload == {"asset": "SOL"}


def test_invalid_range_rejected_before_connecting():
    connections = []
    store = PostgresEventStore(connection_factory=lambda: connections.append(1))

    with pytest.raises(InvalidRange):
        store.query_by_time_range(T2, T1)

    assert connections == []


def test_get_by_id_found_and_missing():
    cursor = FakeCursor(fetch_one_rows=[(4, T1, None, {"asset": "BTC"})])
    store, _ = make_store(cursor)

    record = store.get_by_id(4)
    assert record.id == 4
    assert cursor.executed[0][1] == (4,)

    with pytest.raises(NotFound):
        store.get_by_id(9999)


def test_operational_error_is_storage_unavailable():
    cursor = FakeCursor(error=psycopg2.OperationalError("server closed the connection unexpectedly"))
    store, conn = make_store(cursor)

    with pytest.raises(StorageUnavailable):
        store.append(new_event_record({"asset": "BTC"}))

    assert conn.rolled_back is True
    assert conn.committed is False
    assert conn.closed is True


def test_statement_timeout_is_storage_unavailable():
    cursor = FakeCursor(error=psycopg2.errors.QueryCanceled("canceling statement due to statement timeout"))
    store, _ = make_store(cursor)

    with pytest.raises(StorageUnavailable):
        store.query_by_time_range(T1, T2)


def test_caller_cancellation_is_query_cancelled():
    token = CancellationToken()

    class CancellingCursor(FakeCursor):
        def execute(self, sql, params=None):
            token.cancel()
            raise psycopg2.errors.QueryCanceled("canceling statement due to user request")

    store, conn = make_store(CancellingCursor())

    with pytest.raises(QueryCancelled):
        store.query_by_time_range(T1, T2, cancellation_token=token)

    assert conn.cancelled is True
    assert conn.rolled_back is True


def test_data_error_on_append_is_invalid_payload():
    cursor = FakeCursor(error=psycopg2.DataError("invalid input syntax for type json"))
    store, _ = make_store(cursor)

    with pytest.raises(InvalidPayload):
        store.append(new_event_record({"asset": "BTC"}))


def test_other_driver_errors_are_store_errors():
    cursor = FakeCursor(error=psycopg2.ProgrammingError('relation "balance_updates" does not exist'))
    store, _ = make_store(cursor)

    with pytest.raises(EventStoreError):
        store.stats()


def test_connect_failure_is_storage_unavailable(monkeypatch):
    seen = {}

    def refuse(dsn, **kwargs):
        seen["dsn"] = dsn
        seen.update(kwargs)
        raise psycopg2.OperationalError("could not connect to server: Connection refused")

    monkeypatch.setattr(postgres_store.psycopg2, "connect", refuse)
    store = PostgresEventStore(
        dsn="postgresql://localhost/balances",
        connect_timeout_seconds=3,
        statement_timeout_seconds=2.5,
    )

    with pytest.raises(StorageUnavailable):
        store.get_by_id(1)

    assert seen["dsn"] == "postgresql://localhost/balances"
    assert seen["connect_timeout"] == 3
    assert seen["options"] == "-c statement_timeout=2500"


def test_dsn_or_factory_required():
    with pytest.raises(ConfigError):
        PostgresEventStore()


def test_init_schema_runs_ddl():
    cursor = FakeCursor()
    store, conn = make_store(cursor)

    store.init_schema()

    statements = [sql for sql, _ in cursor.executed]
    assert "GENERATED BY DEFAULT AS IDENTITY" in statements[0]
    assert "balance_updates__insert_time_idx" in statements[1]
    assert conn.committed is True


def test_stats():
    cursor = FakeCursor(fetch_one_rows=[(2, 1, 2, T1, T2)])
    store, _ = make_store(cursor)

    stats = store.stats()

    assert stats["backend"] == "postgres"
    assert stats["count"] == 2
    assert stats["first_insert_time"] == T1
    assert stats["last_insert_time"] == T2


def test_unencodable_payload_rejected_before_connecting():
    connections = []
    store = PostgresEventStore(connection_factory=lambda: connections.append(1))

    with pytest.raises(InvalidPayload):
        store.append(EventRecord(payload={"a": "\ud800"}))

    assert connections == []
