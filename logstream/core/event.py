"""Log event model and record decoding for logstream."""

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ValidationError, field_validator

ERROR_LEVEL = "error"


class ParseError(Exception):
    """Raised when a raw stream record cannot be decoded into a LogEvent.

    Attributes:
        sequence_id: Sequence id of the offending record, if known.
    """

    def __init__(self, message: str, sequence_id: str | None = None):
        self.sequence_id = sequence_id
        super().__init__(message)


class LogEvent(BaseModel):
    """Immutable structured log event.

    Every field is optional: producers send best-effort documents and the
    pipeline stores whatever it gets. ``context`` is opaque and passed
    through untouched. Unknown top-level keys are ignored.
    """

    timestamp: datetime | None = None
    level: str | None = None
    service: str | None = None
    message: str | None = None
    context: dict[str, Any] | None = None

    model_config = {
        "extra": "ignore",
        "frozen": True,
    }

    @field_validator("timestamp")
    @classmethod
    def ensure_utc(cls, v: datetime | None) -> datetime | None:
        """Interpret naive timestamps as UTC and normalize aware ones to UTC."""
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        try:
            return v.astimezone(UTC)
        except OverflowError as e:
            raise ValueError(f"timestamp out of range in UTC: {v.isoformat()}") from e

    @property
    def is_error(self) -> bool:
        return self.level is not None and self.level.casefold() == ERROR_LEVEL

    def to_json_bytes(self) -> bytes:
        """Compact JSON encoding, used to size the event in the batch buffer."""
        return self.model_dump_json(exclude_none=True).encode("utf-8")


@dataclass(frozen=True, slots=True)
class StreamRecord:
    """One opaque record as delivered for a shard."""

    data: bytes
    sequence_id: str


@dataclass(frozen=True, slots=True)
class PendingRecord:
    """A parsed record waiting in a shard's buffer."""

    event: LogEvent
    sequence_id: str
    serialized: bytes

    @property
    def size(self) -> int:
        return len(self.serialized)


def parse_record(data: bytes, sequence_id: str | None = None) -> LogEvent:
    """Decode a raw record as UTF-8 JSON and build a LogEvent.

    Raises:
        ParseError: If the bytes are not UTF-8, not JSON, not a JSON object,
            or carry fields of the wrong type.
    """
    try:
        text = data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ParseError(f"record is not valid UTF-8: {e}", sequence_id) from e

    try:
        return LogEvent.model_validate_json(text)
    except ValidationError as e:
        raise ParseError(
            f"record is not a valid log event ({e.error_count()} errors)", sequence_id
        ) from e
