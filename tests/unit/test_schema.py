"""Tests for table definitions."""

import pytest

from balance_log.errors import ConfigError
from balance_log.storage.schema import (
    duckdb_ddl,
    index_name,
    postgres_ddl,
    validate_table_name,
)


class TestTableName:

    @pytest.mark.parametrize("name", ["balance_updates", "_staging", "binance_balance_updates_v2"])
    def test_plain_identifiers_accepted(self, name):
        assert validate_table_name(name) == name

    @pytest.mark.parametrize(
        "name",
        ["", "Balance", "2fast", "balance-updates", "x; DROP TABLE y", "a" * 64, None],
    )
    def test_anything_else_rejected(self, name):
        with pytest.raises(ConfigError):
            validate_table_name(name)


class TestDDL:

    def test_duckdb_layout(self):
        statements = duckdb_ddl("balance_updates")
        table_sql = statements[1]

        assert "CREATE SEQUENCE IF NOT EXISTS balance_updates_id_seq" in statements[0]
        assert "id BIGINT PRIMARY KEY DEFAULT nextval('balance_updates_id_seq')" in table_sql
        assert "insert_time TIMESTAMPTZ NOT NULL DEFAULT current_timestamp" in table_sql
        assert "version INTEGER," in table_sql
        assert '"json" JSON NOT NULL' in table_sql
        assert statements[2] == (
            "CREATE INDEX IF NOT EXISTS balance_updates__insert_time_idx "
            "ON balance_updates (insert_time)"
        )

    def test_postgres_layout(self):
        table_sql, index_sql = postgres_ddl("balance_updates")

        assert "id bigint PRIMARY KEY GENERATED BY DEFAULT AS IDENTITY" in table_sql
        assert "insert_time timestamp WITH TIME ZONE NOT NULL DEFAULT now()" in table_sql
        assert "version int," in table_sql
        assert "json jsonb NOT NULL" in table_sql
        assert "USING btree (insert_time)" in index_sql
        assert index_name("balance_updates") in index_sql

    def test_ddl_validates_table_name(self):
        with pytest.raises(ConfigError):
            duckdb_ddl("bad name")
        with pytest.raises(ConfigError):
            postgres_ddl("bad name")
