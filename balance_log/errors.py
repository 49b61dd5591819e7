"""
Error taxonomy for the balance update log.

Callers branch on these, never on driver exceptions:
- InvalidRecord / InvalidPayload: caller bug, never retried
- InvalidRange: caller bug
- NotFound: point lookup miss (distinct from an empty range)
- StorageUnavailable: transient, safe to retry for queries only
- QueryCancelled: the caller asked us to stop
"""

from typing import Optional


class EventStoreError(Exception):
    """Base class for all balance log errors."""


class InvalidRecord(EventStoreError, ValueError):
    """A record could not be built or appended as given."""


class InvalidPayload(InvalidRecord):
    """Payload is empty, not a JSON document, or not serializable."""


class InvalidRange(EventStoreError, ValueError):
    """Time range bounds are malformed (start > end, naive datetimes)."""


class NotFound(EventStoreError, LookupError):
    """No record was ever stored under the requested id."""

    def __init__(self, record_id: int):
        super().__init__(f"no balance update with id {record_id}")
        self.record_id = record_id


class StorageUnavailable(EventStoreError):
    """
    The durable medium could not be reached or did not answer in time.

    Retrying a query is safe. Retrying an append may write a duplicate row,
    since the store does not deduplicate.
    """


class QueryCancelled(EventStoreError):
    """The operation was cancelled by the caller before it produced a result."""


class RecorderError(EventStoreError):
    """One or more queued balance updates could not be written."""

    def __init__(self, failed_events: int, last_error: Optional[BaseException] = None):
        message = f"{failed_events} balance update(s) were not recorded"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)
        self.failed_events = failed_events
        self.last_error = last_error


class ConfigError(EventStoreError, ValueError):
    """Configuration is missing or has an invalid value."""
