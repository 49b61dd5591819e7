"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import pytest
import os
from datetime import datetime, timezone

from balance_log.logging_config import setup_logging
from balance_log.storage.duckdb_store import DuckDBEventStore

# Keep the test environment independent of a developer's .env / shell
for _var in [v for v in os.environ if v.startswith("BALANCE_LOG_")]:
    del os.environ[_var]
os.environ["ENVIRONMENT"] = "test"

setup_logging("DEBUG")


@pytest.fixture
def duckdb_store(tmp_path):
    """File-backed DuckDB store, closed after the test."""
    store = DuckDBEventStore(str(tmp_path / "balances.duckdb"))
    yield store
    store.close()


@pytest.fixture
def btc_payload():
    """A balance update as the venue's account feed emits it."""
    return {
        "e": "balanceUpdate",
        "E": 1573200697110,
        "a": "BTC",
        "d": "100.00000000",
        "T": 1573200697068,
    }


@pytest.fixture
def t0():
    return datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)
