"""
Background recorder for balance updates.

The feed listener should not wait on disk for every account update. It
hands payloads to the recorder, which validates them immediately and lets a
worker thread write them in batches with append_batch.

Failures are never dropped silently: every failed batch is logged and
counted, and close() raises RecorderError if anything was lost.
"""

import queue
import threading
from datetime import datetime
from threading import Lock
from typing import Any, Optional
import structlog

from balance_log.errors import EventStoreError, RecorderError
from balance_log.models import EventRecord, Payload, new_event_record
from balance_log.storage.base import EventStore

logger = structlog.get_logger(__name__)

_STOP = object()


class BalanceUpdateRecorder:
    """
    Queue-backed batching writer in front of an EventStore.

    Usage:
        with BalanceUpdateRecorder(store) as recorder:
            recorder.record({"asset": "BTC", "free": "1.5"}, version=1)
    """

    def __init__(self, store: EventStore, max_batch_size: int = 500):
        """
        Start the recorder.

        Args:
            store: Store that receives the batches
            max_batch_size: Most records written in one transaction
        """
        if max_batch_size < 1:
            raise ValueError(f"max_batch_size must be >= 1, got {max_batch_size}")

        self.store = store
        self.max_batch_size = max_batch_size

        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._lock = Lock()
        self._closed = False
        self._recorded_events = 0
        self._failed_events = 0
        self._last_error: Optional[BaseException] = None

        self._worker = threading.Thread(
            target=self._run,
            name="balance-update-recorder",
            daemon=True,
        )
        self._worker.start()

        logger.info("balance_update_recorder_started", max_batch_size=max_batch_size)

    def record(
        self,
        payload: Payload,
        version: Optional[int] = None,
        insert_time: Optional[datetime] = None,
    ) -> None:
        """
        Validate and enqueue one balance update.

        Raises:
            InvalidPayload / InvalidRecord: synchronously, nothing is queued
            EventStoreError: if the recorder is closed
        """
        record = new_event_record(payload, version=version, insert_time=insert_time)
        with self._lock:
            if self._closed:
                raise EventStoreError("recorder is closed")
            self._queue.put(record)

    def flush(self) -> None:
        """Block until everything queued so far has been written or has failed."""
        self._queue.join()

    @property
    def recorded_events(self) -> int:
        return self._recorded_events

    @property
    def failed_events(self) -> int:
        return self._failed_events

    @property
    def last_error(self) -> Optional[BaseException]:
        return self._last_error

    def close(self) -> None:
        """
        Drain the queue and stop the worker.

        Raises:
            RecorderError: if any batch could not be written
        """
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(_STOP)

        self._worker.join()

        logger.info(
            "balance_update_recorder_stopped",
            recorded=self._recorded_events,
            failed=self._failed_events,
        )

        if self._failed_events:
            raise RecorderError(self._failed_events, self._last_error)

    def __enter__(self) -> "BalanceUpdateRecorder":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # =========================================================================
    # Worker
    # =========================================================================

    def _run(self) -> None:
        stopping = False
        while not stopping:
            batch, stopping = self._next_batch()
            if batch:
                self._write(batch)

    def _next_batch(self) -> tuple[list[EventRecord], bool]:
        """Block for one item, then take whatever else is already queued."""
        batch: list[EventRecord] = []

        item = self._queue.get()
        while True:
            if item is _STOP:
                self._queue.task_done()
                return batch, True

            batch.append(item)
            if len(batch) >= self.max_batch_size:
                return batch, False

            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return batch, False

    def _write(self, batch: list[EventRecord]) -> None:
        try:
            ids = self.store.append_batch(batch)
            self._recorded_events += len(ids)
            logger.debug("balance_update_batch_written", count=len(ids), last_id=ids[-1])
        except Exception as e:
            # Keep the worker alive; the loss is reported by close()
            self._failed_events += len(batch)
            self._last_error = e
            logger.error(
                "balance_update_batch_failed",
                count=len(batch),
                error=str(e),
                error_type=type(e).__name__,
            )
        finally:
            for _ in batch:
                self._queue.task_done()
