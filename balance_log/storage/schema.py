"""
Table definitions for the balance update log.

One append-only table plus an ascending index on insert_time, the column
every range query filters on. Column names follow the venue-feed table
the log was first deployed with (id, insert_time, version, json).
"""

import re

from balance_log.errors import ConfigError

DEFAULT_TABLE_NAME = "balance_updates"

_IDENTIFIER = re.compile(r"[a-z_][a-z0-9_]{0,62}")

COLUMNS = ("id", "insert_time", "version", "json")


def validate_table_name(name: str) -> str:
    """Table names are interpolated into SQL, so only plain identifiers pass."""
    if not isinstance(name, str) or not _IDENTIFIER.fullmatch(name):
        raise ConfigError(f"invalid table name: {name!r}")
    return name


def index_name(table: str) -> str:
    return f"{table}__insert_time_idx"


def sequence_name(table: str) -> str:
    return f"{table}_id_seq"


def duckdb_ddl(table: str = DEFAULT_TABLE_NAME) -> list[str]:
    """
    DuckDB statements, safe to run on every open.

    Ids come from a sequence rather than an identity column: nextval is
    not rolled back, so an aborted insert leaves a gap and ids are never
    reused.
    """
    table = validate_table_name(table)
    return [
        f"CREATE SEQUENCE IF NOT EXISTS {sequence_name(table)} START 1",
        f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id BIGINT PRIMARY KEY DEFAULT nextval('{sequence_name(table)}'),
                insert_time TIMESTAMPTZ NOT NULL DEFAULT current_timestamp,
                version INTEGER,
                "json" JSON NOT NULL
            )
        """,
        f"CREATE INDEX IF NOT EXISTS {index_name(table)} ON {table} (insert_time)",
    ]


def postgres_ddl(table: str = DEFAULT_TABLE_NAME) -> list[str]:
    """PostgreSQL statements, matching the production balance_updates table."""
    table = validate_table_name(table)
    return [
        f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id bigint PRIMARY KEY GENERATED BY DEFAULT AS IDENTITY,
                insert_time timestamp WITH TIME ZONE NOT NULL DEFAULT now(),
                version int,
                json jsonb NOT NULL
            )
        """,
        f"CREATE INDEX IF NOT EXISTS {index_name(table)} ON {table} USING btree (insert_time)",
    ]
