"""
DuckDB-backed balance update log.

DuckDB is the default durable medium:
- Single file, no server to run next to the feed listener
- MVCC, so readers see committed rows only and never block writers
- Sequence-generated ids that are never handed out twice

The connection is owned by the store. Each thread talks to the database
through its own cursor; appends are serialized so ids are committed in the
order they are handed out.
"""

import json
import threading
import time
import weakref
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any, Iterator, Optional, Sequence
import structlog

import duckdb
import pandas as pd

from balance_log.cancellation import CancellationToken
from balance_log.errors import (
    EventStoreError,
    InvalidPayload,
    NotFound,
    QueryCancelled,
    StorageUnavailable,
)
from balance_log.models import EventRecord, records_to_frame, to_utc
from balance_log.storage.base import (
    EventStore,
    range_filters,
    validate_range,
    validate_record_id,
    write_values,
)
from balance_log.storage.deadlines import DeadlineScheduler
from balance_log.storage.schema import DEFAULT_TABLE_NAME, duckdb_ddl, validate_table_name

logger = structlog.get_logger(__name__)

IN_MEMORY = ":memory:"


class DuckDBEventStore(EventStore):
    """
    Append-only balance update table in DuckDB.

    Design principles:
    - Append and read only, no UPDATE or DELETE statements anywhere
    - Writers serialized in-process, readers lock-free
    - Every datetime in and out is UTC-aware
    """

    def __init__(
        self,
        db_path: str = IN_MEMORY,
        table: str = DEFAULT_TABLE_NAME,
        read_only: bool = False,
        timeout_seconds: Optional[float] = None,
    ):
        """
        Open (and, unless read-only, initialize) the store.

        Args:
            db_path: Path to the DuckDB file, or ":memory:"
            table: Table name
            read_only: Open in read-only mode (for consumers)
            timeout_seconds: Bound on any single call to the database
        """
        self.db_path = str(db_path)
        self.table = validate_table_name(table)
        self.read_only = read_only
        self.timeout_seconds = timeout_seconds

        if self.db_path != IN_MEMORY:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        try:
            self.conn = duckdb.connect(self.db_path, read_only=read_only)
        except duckdb.Error as e:
            logger.error("duckdb_open_failed", path=self.db_path, error=str(e))
            raise StorageUnavailable(f"cannot open {self.db_path}: {e}") from e

        self._local = threading.local()
        self._cursors: list[duckdb.DuckDBPyConnection] = []
        self._cursors_lock = Lock()
        self._write_lock = Lock()
        self._deadlines = DeadlineScheduler(f"duckdb-deadlines-{self.table}")
        self._closed = False

        if not read_only:
            self.init_schema()

        logger.info(
            "duckdb_event_store_initialized",
            path=self.db_path,
            table=self.table,
            read_only=read_only,
        )

    def init_schema(self) -> None:
        cursor = self._cursor()
        with self._write_locked("init_schema") as remaining, \
                self._guarded(cursor, None, "init_schema", remaining):
            for statement in duckdb_ddl(self.table):
                cursor.execute(statement)
        logger.info("duckdb_schema_initialized", table=self.table)

    # =========================================================================
    # Write path
    # =========================================================================

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
        # Validate everything before the medium is touched
        rows = [write_values(record) for record in records]
        if not rows:
            return []

        cursor = self._cursor()
        ids: list[int] = []

        with self._write_locked("append") as remaining, \
                self._guarded(cursor, cancellation_token, "append", remaining):
            cursor.begin()
            try:
                for insert_time, version, payload_text in rows:
                    cursor.execute(
                        self._insert_sql(insert_time is not None),
                        _params(insert_time, version, payload_text),
                    )
                    ids.append(cursor.fetchone()[0])
                cursor.commit()
            except BaseException:
                self._rollback(cursor)
                raise

        logger.debug(
            "balance_updates_appended",
            count=len(ids),
            first_id=ids[0],
            last_id=ids[-1],
        )
        return ids

    def _insert_sql(self, with_insert_time: bool) -> str:
        if with_insert_time:
            return f"""
                INSERT INTO {self.table} (insert_time, version, "json")
                VALUES (?, ?, ?)
                RETURNING id
            """
        return f"""
            INSERT INTO {self.table} (version, "json")
            VALUES (?, ?)
            RETURNING id
        """

    def _rollback(self, cursor: duckdb.DuckDBPyConnection) -> None:
        try:
            cursor.rollback()
        except duckdb.Error as e:
            # The transaction is already gone (e.g. the statement was interrupted)
            logger.warning("duckdb_rollback_failed", error=str(e))

    # =========================================================================
    # Read path
    # =========================================================================

    def query_by_time_range(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        cancellation_token: Optional[CancellationToken] = None,
    ) -> list[EventRecord]:
        start, end = validate_range(start, end)
        where, params = range_filters(start, end, "?")

        query = f"""
            SELECT id, insert_time, version, "json"
            FROM {self.table}
            {where}
            ORDER BY insert_time, id
        """

        cursor = self._cursor()
        with self._guarded(cursor, cancellation_token, "query_by_time_range"):
            rows = cursor.execute(query, params).fetchall()

        # A cancelled query never hands back a result
        if cancellation_token is not None:
            cancellation_token.raise_if_cancellation_requested()

        return [_record_from_row(row) for row in rows]

    def query_frame(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> pd.DataFrame:
        """Same as query_by_time_range, tabulated for analysis."""
        return records_to_frame(self.query_by_time_range(start, end))

    def get_by_id(self, record_id: int) -> EventRecord:
        record_id = validate_record_id(record_id)
        cursor = self._cursor()

        with self._guarded(cursor, None, "get_by_id"):
            row = cursor.execute(
                f"""
                    SELECT id, insert_time, version, "json"
                    FROM {self.table}
                    WHERE id = ?
                """,
                [record_id],
            ).fetchone()

        if row is None:
            raise NotFound(record_id)
        return _record_from_row(row)

    def stats(self) -> dict[str, Any]:
        cursor = self._cursor()
        with self._guarded(cursor, None, "stats"):
            count, min_id, max_id, first, last = cursor.execute(
                f"""
                    SELECT count(*), min(id), max(id), min(insert_time), max(insert_time)
                    FROM {self.table}
                """
            ).fetchone()

        return {
            "backend": "duckdb",
            "table": self.table,
            "count": count,
            "min_id": min_id,
            "max_id": max_id,
            "first_insert_time": to_utc(first) if first is not None else None,
            "last_insert_time": to_utc(last) if last is not None else None,
        }

    # =========================================================================
    # Connection handling
    # =========================================================================

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        """Per-thread cursor; DuckDB connections must not be shared across threads."""
        if self._closed:
            raise StorageUnavailable(f"store {self.db_path} is closed")

        holder = getattr(self._local, "holder", None)
        if holder is not None:
            return holder.cursor

        with self._cursors_lock:
            if self._closed:
                raise StorageUnavailable(f"store {self.db_path} is closed")
            try:
                cursor = self.conn.cursor()
                cursor.execute("SET TimeZone = 'UTC'")
            except duckdb.Error as e:
                raise StorageUnavailable(f"cannot open cursor on {self.db_path}: {e}") from e
            self._cursors.append(cursor)

        # The holder dies with the thread's locals, which releases the cursor
        holder = _CursorHolder(cursor)
        weakref.finalize(holder, self._release_cursor, cursor).atexit = False
        self._local.holder = holder
        return cursor

    def _release_cursor(self, cursor: duckdb.DuckDBPyConnection) -> None:
        with self._cursors_lock:
            if not any(c is cursor for c in self._cursors):
                return
            self._cursors = [c for c in self._cursors if c is not cursor]
        try:
            cursor.close()
        except duckdb.Error as e:
            logger.warning("duckdb_cursor_close_failed", error=str(e))

    @contextmanager
    def _write_locked(self, operation: str) -> Iterator[Optional[float]]:
        """
        Hold the write lock, waiting at most timeout_seconds for it.

        Yields the part of the timeout left for the statement itself.
        """
        if not self.timeout_seconds:
            with self._write_lock:
                yield None
            return

        started = time.monotonic()
        if not self._write_lock.acquire(timeout=self.timeout_seconds):
            logger.error("duckdb_write_lock_timeout", operation=operation, timeout=self.timeout_seconds)
            raise StorageUnavailable(
                f"{operation} timed out after {self.timeout_seconds}s waiting for another writer"
            )
        try:
            yield max(self.timeout_seconds - (time.monotonic() - started), 0.001)
        finally:
            self._write_lock.release()

    @contextmanager
    def _guarded(
        self,
        cursor: duckdb.DuckDBPyConnection,
        cancellation_token: Optional[CancellationToken],
        operation: str,
        timeout: Optional[float] = None,
    ) -> Iterator[None]:
        """
        Run a database call under the timeout and cancellation token.

        Both interrupt the running statement. DuckDB errors are translated
        into the store's error taxonomy here and nowhere else.

        Args:
            timeout: Seconds before the statement is interrupted; defaults
                to timeout_seconds
        """
        if cancellation_token is not None:
            cancellation_token.raise_if_cancellation_requested()

        cancel_deadline = None
        timeout = timeout or self.timeout_seconds
        if timeout:
            cancel_deadline = self._deadlines.schedule(timeout, cursor.interrupt)

        unregister = None
        if cancellation_token is not None:
            unregister = cancellation_token.register_handler(cursor.interrupt)

        try:
            yield
        except duckdb.InterruptException as e:
            if cancellation_token is not None and cancellation_token.is_cancellation_requested:
                logger.info("duckdb_operation_cancelled", operation=operation)
                raise QueryCancelled(f"{operation} cancelled") from e
            logger.error("duckdb_operation_timeout", operation=operation, timeout=self.timeout_seconds)
            raise StorageUnavailable(
                f"{operation} timed out after {self.timeout_seconds}s"
            ) from e
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            logger.error("duckdb_unavailable", operation=operation, error=str(e))
            raise StorageUnavailable(f"{operation} failed: {e}") from e
        except duckdb.ConversionException as e:
            raise InvalidPayload(f"medium rejected payload: {e}") from e
        except duckdb.Error as e:
            logger.error("duckdb_operation_failed", operation=operation, error=str(e))
            raise EventStoreError(f"{operation} failed: {e}") from e
        finally:
            if cancel_deadline is not None:
                cancel_deadline()
            if unregister is not None:
                unregister()

    def close(self) -> None:
        """Close every cursor and the database connection."""
        with self._cursors_lock:
            if self._closed:
                return
            self._closed = True
            for cursor in self._cursors:
                cursor.close()
            self._cursors.clear()
            self.conn.close()

        self._deadlines.stop()

        logger.info("duckdb_event_store_closed", path=self.db_path)


def _params(insert_time: Optional[datetime], version: Optional[int], payload_text: str) -> list:
    if insert_time is None:
        return [version, payload_text]
    return [insert_time, version, payload_text]


def _record_from_row(row: tuple) -> EventRecord:
    record_id, insert_time, version, payload_text = row
    return EventRecord(
        payload=json.loads(payload_text),
        version=version,
        insert_time=to_utc(insert_time),
        id=record_id,
    )


class _CursorHolder:
    """Thread-local owner of a cursor; see DuckDBEventStore._cursor."""

    __slots__ = ("cursor", "__weakref__")

    def __init__(self, cursor: duckdb.DuckDBPyConnection):
        self.cursor = cursor
