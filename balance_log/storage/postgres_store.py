"""
PostgreSQL-backed balance update log.

Used where the feed listener and its consumers live on different hosts.
The table is the production balance_updates layout (identity id,
timestamptz insert_time, nullable version, jsonb json) and every call runs
in its own short transaction on its own connection.
"""

import json
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, Optional, Protocol, Sequence, cast
import structlog

import psycopg2
import psycopg2.errors

from balance_log.cancellation import CancellationToken
from balance_log.errors import (
    ConfigError,
    EventStoreError,
    InvalidPayload,
    NotFound,
    QueryCancelled,
    StorageUnavailable,
)
from balance_log.models import EventRecord, to_utc
from balance_log.storage.base import (
    EventStore,
    range_filters,
    validate_range,
    validate_record_id,
    write_values,
)
from balance_log.storage.schema import DEFAULT_TABLE_NAME, postgres_ddl, validate_table_name

logger = structlog.get_logger(__name__)


class CursorProtocol(Protocol):
    def execute(self, sql: str, params: Optional[Sequence[object]] = None) -> None: ...

    def fetchall(self) -> list[tuple[object, ...]]: ...

    def fetchone(self) -> Optional[tuple[object, ...]]: ...

    def close(self) -> None: ...


class ConnectionProtocol(Protocol):
    def cursor(self) -> CursorProtocol: ...

    def commit(self) -> None: ...

    def rollback(self) -> None: ...

    def cancel(self) -> None: ...

    def close(self) -> None: ...


class PostgresEventStore(EventStore):
    def __init__(
        self,
        dsn: str = "",
        table: str = DEFAULT_TABLE_NAME,
        connect_timeout_seconds: float = 5.0,
        statement_timeout_seconds: Optional[float] = None,
        connection_factory: Optional[Callable[[], ConnectionProtocol]] = None,
    ) -> None:
        self._dsn: str = dsn
        self.table = validate_table_name(table)
        self.connect_timeout_seconds = connect_timeout_seconds
        self.statement_timeout_seconds = statement_timeout_seconds
        self._connection_factory: Optional[Callable[[], ConnectionProtocol]] = (
            connection_factory
        )

        if not dsn and connection_factory is None:
            raise ConfigError("dsn is required when no connection_factory is provided")

        logger.info(
            "postgres_event_store_initialized",
            table=self.table,
            statement_timeout=statement_timeout_seconds,
        )

    def _connect(self) -> ConnectionProtocol:
        if self._connection_factory is not None:
            return self._connection_factory()

        kwargs: dict[str, Any] = {"connect_timeout": max(1, int(self.connect_timeout_seconds))}
        if self.statement_timeout_seconds:
            kwargs["options"] = f"-c statement_timeout={int(self.statement_timeout_seconds * 1000)}"

        try:
            return cast(
                ConnectionProtocol,
                cast(object, psycopg2.connect(self._dsn, **kwargs)),
            )
        except psycopg2.OperationalError as e:
            logger.error("postgres_connect_failed", error=str(e))
            raise StorageUnavailable(f"cannot connect to postgres: {e}") from e

    @contextmanager
    def _transaction(
        self,
        operation: str,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> Iterator[CursorProtocol]:
        """
        One connection, one transaction.

        Commits when the block finishes, rolls back and translates the
        driver error otherwise.
        """
        if cancellation_token is not None:
            cancellation_token.raise_if_cancellation_requested()

        conn = self._connect()
        unregister = None
        if cancellation_token is not None:
            unregister = cancellation_token.register_handler(conn.cancel)

        cursor = conn.cursor()
        try:
            yield cursor
            conn.commit()
        except psycopg2.Error as e:
            self._rollback(conn)
            raise self._translate(e, operation, cancellation_token) from e
        except BaseException:
            self._rollback(conn)
            raise
        finally:
            if unregister is not None:
                unregister()
            cursor.close()
            conn.close()

    def _rollback(self, conn: ConnectionProtocol) -> None:
        try:
            conn.rollback()
        except psycopg2.Error as e:
            # Connection already broken; the server discards the transaction
            logger.warning("postgres_rollback_failed", error=str(e))

    def _translate(
        self,
        error: psycopg2.Error,
        operation: str,
        cancellation_token: Optional[CancellationToken],
    ) -> EventStoreError:
        if isinstance(error, psycopg2.errors.QueryCanceled):
            if cancellation_token is not None and cancellation_token.is_cancellation_requested:
                logger.info("postgres_operation_cancelled", operation=operation)
                return QueryCancelled(f"{operation} cancelled")
            logger.error(
                "postgres_operation_timeout",
                operation=operation,
                timeout=self.statement_timeout_seconds,
            )
            return StorageUnavailable(f"{operation} timed out: {error}")

        if isinstance(error, (psycopg2.OperationalError, psycopg2.InterfaceError)):
            logger.error("postgres_unavailable", operation=operation, error=str(error))
            return StorageUnavailable(f"{operation} failed: {error}")

        if isinstance(error, psycopg2.DataError) and operation == "append":
            return InvalidPayload(f"medium rejected payload: {error}")

        logger.error("postgres_operation_failed", operation=operation, error=str(error))
        return EventStoreError(f"{operation} failed: {error}")

    def init_schema(self) -> None:
        with self._transaction("init_schema") as cursor:
            for statement in postgres_ddl(self.table):
                cursor.execute(statement)
        logger.info("postgres_schema_initialized", table=self.table)

    def append(
        self,
        record: EventRecord,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> int:
        return self.append_batch([record], cancellation_token)[0]

    def append_batch(
        self,
        records: Sequence[EventRecord],
        cancellation_token: Optional[CancellationToken] = None,
    ) -> list[int]:
        rows = [write_values(record) for record in records]
        if not rows:
            return []

        ids: list[int] = []
        with self._transaction("append", cancellation_token) as cursor:
            for insert_time, version, payload_text in rows:
                cursor.execute(
                    f"""
                    INSERT INTO {self.table} (insert_time, version, json)
                    VALUES (COALESCE(%s, now()), %s, %s::jsonb)
                    RETURNING id
                    """,
                    (insert_time, version, payload_text),
                )
                row = cursor.fetchone()
                if row is None:
                    raise EventStoreError("insert returned no id")
                ids.append(cast(int, row[0]))

        logger.debug(
            "balance_updates_appended",
            count=len(ids),
            first_id=ids[0],
            last_id=ids[-1],
        )
        return ids

    def query_by_time_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> list[EventRecord]:
        start, end = validate_range(start, end)
        where, params = range_filters(start, end, "%s")

        with self._transaction("query_by_time_range", cancellation_token) as cursor:
            cursor.execute(
                f"""
                SELECT id, insert_time, version, json
                FROM {self.table}
                {where}
                ORDER BY insert_time, id
                """,
                tuple(params),
            )
            rows = cursor.fetchall()

        if cancellation_token is not None:
            cancellation_token.raise_if_cancellation_requested()

        return [_record_from_row(row) for row in rows]

    def get_by_id(self, record_id: int) -> EventRecord:
        record_id = validate_record_id(record_id)

        with self._transaction("get_by_id") as cursor:
            cursor.execute(
                f"""
                SELECT id, insert_time, version, json
                FROM {self.table}
                WHERE id = %s
                """,
                (record_id,),
            )
            row = cursor.fetchone()

        if row is None:
            raise NotFound(record_id)
        return _record_from_row(row)

    def stats(self) -> dict[str, Any]:
        with self._transaction("stats") as cursor:
            cursor.execute(
                f"""
                SELECT count(*), min(id), max(id), min(insert_time), max(insert_time)
                FROM {self.table}
                """
            )
            row = cursor.fetchone() or (0, None, None, None, None)

        count, min_id, max_id, first, last = row
        return {
            "backend": "postgres",
            "table": self.table,
            "count": count,
            "min_id": min_id,
            "max_id": max_id,
            "first_insert_time": to_utc(cast(datetime, first)) if first is not None else None,
            "last_insert_time": to_utc(cast(datetime, last)) if last is not None else None,
        }

    def close(self) -> None:
        # Connections are per call; nothing is held between calls
        logger.info("postgres_event_store_closed", table=self.table)


def _record_from_row(row: tuple[object, ...]) -> EventRecord:
    record_id, insert_time, version, payload = row
    # psycopg2 decodes jsonb itself unless the typecaster was unregistered
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    return EventRecord(
        payload=cast(Any, payload),
        version=cast(Optional[int], version),
        insert_time=to_utc(cast(datetime, insert_time)),
        id=cast(int, record_id),
    )
