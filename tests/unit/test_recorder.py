"""
Tests for the background balance update recorder.
"""

import threading

import pytest

from balance_log.errors import EventStoreError, InvalidPayload, RecorderError, StorageUnavailable
from balance_log.recorder import BalanceUpdateRecorder


class GatedStore:
    """Records batch sizes; the first write blocks until released."""

    def __init__(self):
        self.batches = []
        self.release = threading.Event()
        self.entered = threading.Event()
        self._next_id = 0

    def append_batch(self, records, cancellation_token=None):
        self.entered.set()
        self.release.wait(timeout=10)
        self.batches.append(len(records))
        ids = list(range(self._next_id + 1, self._next_id + len(records) + 1))
        self._next_id += len(records)
        return ids


class BrokenStore:
    def __init__(self):
        self.calls = 0

    def append_batch(self, records, cancellation_token=None):
        self.calls += 1
        raise StorageUnavailable("disk I/O error")


def test_records_are_written_after_flush(duckdb_store, btc_payload, t0):
    recorder = BalanceUpdateRecorder(duckdb_store)

    recorder.record(btc_payload, version=1, insert_time=t0)
    recorder.record({"a": "ETH", "d": "-2.5"})
    recorder.flush()

    records = duckdb_store.query_by_time_range()
    assert len(records) == 2
    assert records[0].payload == btc_payload
    assert recorder.recorded_events == 2

    recorder.close()


def test_invalid_payload_raises_immediately(duckdb_store):
    with BalanceUpdateRecorder(duckdb_store) as recorder:
        with pytest.raises(InvalidPayload):
            recorder.record({})

    assert duckdb_store.stats()["count"] == 0
    assert recorder.failed_events == 0


def test_batches_respect_max_batch_size():
    store = GatedStore()
    recorder = BalanceUpdateRecorder(store, max_batch_size=3)

    # first record occupies the worker; the rest pile up behind it
    recorder.record({"i": 0})
    assert store.entered.wait(timeout=5)
    for i in range(1, 8):
        recorder.record({"i": i})
    store.release.set()

    recorder.close()

    assert store.batches == [1, 3, 3, 1]
    assert recorder.recorded_events == 8


def test_failed_batches_reported_on_close():
    store = BrokenStore()
    recorder = BalanceUpdateRecorder(store)

    recorder.record({"asset": "BTC"})
    recorder.flush()

    assert recorder.failed_events == 1
    assert isinstance(recorder.last_error, StorageUnavailable)

    with pytest.raises(RecorderError) as exc_info:
        recorder.close()

    assert exc_info.value.failed_events == 1
    assert isinstance(exc_info.value.last_error, StorageUnavailable)


def test_record_after_close_rejected(duckdb_store):
    recorder = BalanceUpdateRecorder(duckdb_store)
    recorder.close()

    with pytest.raises(EventStoreError):
        recorder.record({"asset": "BTC"})

    # closing twice is harmless
    recorder.close()


def test_invalid_batch_size():
    with pytest.raises(ValueError):
        BalanceUpdateRecorder(GatedStore(), max_batch_size=0)
