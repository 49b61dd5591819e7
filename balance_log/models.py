"""
Balance update event record.

An EventRecord is one balance-update notification as received from the
venue's account feed. The store never looks inside the payload; the only
rules enforced here are the ones the table itself needs: a non-empty JSON
document, an optional non-negative 32-bit version and, if given, a
timezone-aware insert time.
"""

import json
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

import pandas as pd

from balance_log.errors import InvalidPayload, InvalidRecord

Payload = Union[dict[str, Any], list[Any]]

# version is stored in a 32-bit INTEGER column
MAX_VERSION = 2**31 - 1


@dataclass(frozen=True)
class EventRecord:
    """
    An immutable balance update.

    id and insert_time are None until the record has been appended;
    the store hands back a new, persisted record on reads.
    """
    payload: Payload
    version: Optional[int] = None
    insert_time: Optional[datetime] = None
    id: Optional[int] = None

    @property
    def is_persisted(self) -> bool:
        return self.id is not None

    def payload_json(self) -> str:
        """Serialize the payload exactly as it is written to the medium."""
        return dump_payload(self.payload)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "insert_time": self.insert_time.isoformat() if self.insert_time else None,
            "version": self.version,
            "payload": self.payload,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "EventRecord":
        """Create EventRecord from dictionary (as produced by to_dict)."""
        insert_time = d.get("insert_time")
        if isinstance(insert_time, str):
            insert_time = datetime.fromisoformat(insert_time)

        record = new_event_record(
            d["payload"],
            version=d.get("version"),
            insert_time=insert_time,
        )
        if d.get("id") is not None:
            record = replace(record, id=int(d["id"]))
        return record


def new_event_record(
    payload: Union[Payload, str, bytes],
    version: Optional[int] = None,
    insert_time: Optional[datetime] = None,
) -> EventRecord:
    """
    Build an unpersisted record ready for append.

    Args:
        payload: JSON object/array, or JSON text decoding to one
        version: Payload schema revision (None for unversioned)
        insert_time: Arrival time; left unset so the store assigns "now"

    Raises:
        InvalidPayload: payload empty, not structured, or not serializable
        InvalidRecord: version or insert_time out of bounds
    """
    return EventRecord(
        payload=normalize_payload(payload),
        version=validate_version(version),
        insert_time=None if insert_time is None else validate_insert_time(insert_time),
    )


def normalize_payload(payload: Union[Payload, str, bytes]) -> Payload:
    """
    Validate a payload and return a detached copy of it.

    The copy is taken through a JSON round trip, so later mutation of the
    caller's object cannot leak into a record.
    """
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            payload = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidPayload(f"payload is not valid JSON: {e}") from e

    if not isinstance(payload, (dict, list)):
        raise InvalidPayload(
            f"payload must be a JSON object or array, got {type(payload).__name__}"
        )
    if not payload:
        raise InvalidPayload("payload must not be empty")

    return json.loads(dump_payload(payload))


def dump_payload(payload: Payload) -> str:
    try:
        text = json.dumps(payload, ensure_ascii=False, allow_nan=False)
        # lone surrogates survive json.loads but cannot be stored
        text.encode("utf-8")
    except (TypeError, ValueError) as e:
        raise InvalidPayload(f"payload is not JSON serializable: {e}") from e
    return text


def validate_version(version: Optional[int]) -> Optional[int]:
    if version is None:
        return None
    # bool is an int subclass
    if isinstance(version, bool) or not isinstance(version, int):
        raise InvalidRecord(f"version must be an integer, got {version!r}")
    if not 0 <= version <= MAX_VERSION:
        raise InvalidRecord(f"version must be between 0 and {MAX_VERSION}, got {version}")
    return version


def validate_insert_time(insert_time: datetime) -> datetime:
    if not isinstance(insert_time, datetime):
        raise InvalidRecord(f"insert_time must be a datetime, got {type(insert_time).__name__}")
    if insert_time.tzinfo is None or insert_time.utcoffset() is None:
        raise InvalidRecord("insert_time must be timezone-aware")
    return to_utc(insert_time)


def to_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC (naive values are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def records_to_frame(records: Iterable[EventRecord]) -> pd.DataFrame:
    """
    Tabulate records for audit and reconciliation work.

    Columns: id, insert_time, version, payload. Payloads stay unparsed
    Python objects; flattening them is the consumer's call.
    """
    rows = [
        {
            "id": r.id,
            "insert_time": r.insert_time,
            "version": r.version,
            "payload": r.payload,
        }
        for r in records
    ]
    frame = pd.DataFrame(rows, columns=["id", "insert_time", "version", "payload"])
    # keep None for unversioned rows instead of NaN floats
    frame["version"] = frame["version"].astype("Int64")
    return frame
