"""
Command line access to the balance update log.

Usage:
    balance-log init
    balance-log append '{"asset": "BTC", "free": "1.5"}' --version 1
    echo '{"asset": "ETH", "free": "3"}' | balance-log append -
    balance-log get 42
    balance-log query --from 2024-05-01T00:00:00Z --to 2024-05-02T00:00:00Z
    balance-log stats

Exit codes: 0 ok, 1 record not found, 2 store or configuration error.
"""

import argparse
import json
import sys
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TextIO
import structlog

from balance_log.config import load_config
from balance_log.errors import EventStoreError, NotFound
from balance_log.logging_config import setup_logging
from balance_log.models import new_event_record, records_to_frame
from balance_log.storage.base import EventStore
from balance_log.storage.factory import open_store

logger = structlog.get_logger(__name__)

EXIT_OK = 0
EXIT_NOT_FOUND = 1
EXIT_ERROR = 2


def parse_time(value: str) -> datetime:
    """ISO-8601 timestamp; a trailing Z and naive values are read as UTC."""
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="balance-log",
        description="Append-only log of exchange balance updates",
    )
    parser.add_argument("--config", default=None, help="YAML settings file")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")

    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("init", help="Create the table and insert_time index")

    append = commands.add_parser("append", help="Append one balance update")
    append.add_argument("payload", help="JSON document, or - to read it from stdin")
    append.add_argument("--version", dest="schema_version", type=int, default=None,
                        help="Payload schema version")
    append.add_argument("--insert-time", type=parse_time, default=None,
                        help="Arrival time (defaults to now)")

    get = commands.add_parser("get", help="Print one balance update by id")
    get.add_argument("id", type=int)

    query = commands.add_parser("query", help="Print balance updates in a time range")
    query.add_argument("--from", dest="start", type=parse_time, default=None)
    query.add_argument("--to", dest="end", type=parse_time, default=None)
    query.add_argument("--format", choices=("jsonl", "table"), default="jsonl")

    commands.add_parser("stats", help="Print row count and bounds")

    return parser


def _cmd_init(store: EventStore, args: argparse.Namespace, out: TextIO, stdin: TextIO) -> int:
    store.init_schema()
    print(f"schema ready: {store.table}", file=out)
    return EXIT_OK


def _cmd_append(store: EventStore, args: argparse.Namespace, out: TextIO, stdin: TextIO) -> int:
    payload = stdin.read() if args.payload == "-" else args.payload
    record = new_event_record(payload, version=args.schema_version, insert_time=args.insert_time)
    record_id = store.append(record)
    print(record_id, file=out)
    return EXIT_OK


def _cmd_get(store: EventStore, args: argparse.Namespace, out: TextIO, stdin: TextIO) -> int:
    print(store.get_by_id(args.id).to_json(), file=out)
    return EXIT_OK


def _cmd_query(store: EventStore, args: argparse.Namespace, out: TextIO, stdin: TextIO) -> int:
    records = store.query_by_time_range(args.start, args.end)

    if args.format == "table":
        if records:
            print(records_to_frame(records).to_string(index=False), file=out)
        else:
            print("no balance updates in range", file=out)
        return EXIT_OK

    for record in records:
        print(record.to_json(), file=out)
    return EXIT_OK


def _cmd_stats(store: EventStore, args: argparse.Namespace, out: TextIO, stdin: TextIO) -> int:
    print(json.dumps(store.stats(), default=_json_default), file=out)
    return EXIT_OK


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"cannot serialize {type(value).__name__}")


COMMANDS: dict[str, Callable[[EventStore, argparse.Namespace, TextIO, TextIO], int]] = {
    "init": _cmd_init,
    "append": _cmd_append,
    "get": _cmd_get,
    "query": _cmd_query,
    "stats": _cmd_stats,
}


def main(
    argv: Optional[list[str]] = None,
    out: Optional[TextIO] = None,
    stdin: Optional[TextIO] = None,
) -> int:
    out = out or sys.stdout
    stdin = stdin or sys.stdin
    args = build_parser().parse_args(argv)

    # Logs go to stderr before the config (and its log settings) is read
    setup_logging(args.log_level or "INFO")

    try:
        config = load_config(args.config)
        setup_logging(args.log_level or config.log_level, config.json_logs)

        with open_store(config) as store:
            return COMMANDS[args.command](store, args, out, stdin)

    except NotFound as e:
        logger.warning("balance_update_not_found", record_id=e.record_id)
        print(str(e), file=sys.stderr)
        return EXIT_NOT_FOUND
    except EventStoreError as e:
        logger.error("balance_log_command_failed", command=args.command, error=str(e))
        print(f"error: {e}", file=sys.stderr)
        return EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
