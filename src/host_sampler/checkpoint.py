"""Checkpoint model shared by the sampling engines.

A checkpoint is the minimal persisted snapshot (counter values plus the time
they were read) needed to compute the next delta. Checkpoints are stored as
flat, string-keyed maps of primitives so any key/value memory can hold them,
and every engine restores its own shape field by field.
"""

from collections.abc import Mapping
from datetime import datetime
from typing import Any, Protocol

CheckpointValue = dict[str, int | float | str | None]


class MalformedCheckpoint(ValueError):
    """Raised when a persisted checkpoint cannot be restored.

    Engines treat this as a cold start; it never reaches the caller.
    """


class CheckpointStore(Protocol):
    """Key/value memory that survives sampler restarts."""

    def remember(self, key: str, value: CheckpointValue) -> None: ...

    def recall(self, key: str) -> dict[str, Any] | None: ...


def format_timestamp(ts: datetime | str | None) -> str | None:
    """Serialize a timestamp for a checkpoint.

    Raw strings (timestamps that failed to parse on load) are written back as-is.
    """
    if ts is None:
        return None
    if isinstance(ts, datetime):
        return ts.isoformat()
    return str(ts)


def parse_timestamp(value: object) -> datetime | str | None:
    """Parse a checkpoint timestamp, carrying unparsable values through as strings."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return str(value)


def require_mapping(value: object) -> Mapping[str, Any]:
    """Return value if it is a mapping, otherwise raise MalformedCheckpoint."""
    if not isinstance(value, Mapping):
        raise MalformedCheckpoint(f"expected a mapping, got {type(value).__name__}")
    return value


def coerce_int(data: Mapping[str, Any], key: str, default: int = 0) -> int:
    """Read an integer field from a checkpoint.

    Missing keys and nulls yield the default. Numeric strings and floats are
    accepted; anything else raises MalformedCheckpoint.
    """
    value = data.get(key)
    if value is None:
        return default
    # bool is an int subclass but never a valid counter
    if isinstance(value, bool):
        raise MalformedCheckpoint(f"{key}: expected a number, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            pass
    if isinstance(value, (float, str)):
        try:
            return int(float(value))
        except (ValueError, OverflowError):
            raise MalformedCheckpoint(f"{key}: expected a number, got {value!r}") from None
    raise MalformedCheckpoint(f"{key}: expected a number, got {type(value).__name__}")


def coerce_optional_int(data: Mapping[str, Any], key: str) -> int | None:
    """Like coerce_int, but a missing key or null stays None."""
    if data.get(key) is None:
        return None
    return coerce_int(data, key)
