"""Typed restic JSON events and the line decoder."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

PREVIEW_CHARS = 120


class EventType(str, Enum):
    STATUS = "status"
    SUMMARY = "summary"
    ERROR = "error"
    VERBOSE_STATUS = "verbose_status"
    UNRECOGNIZED = "unrecognized"


class DecodeError(ValueError):
    """Base class for lines that cannot be turned into an event."""


class MalformedLineError(DecodeError):
    """The line is not a JSON object."""

    def __init__(self, line: str, reason: str = "") -> None:
        self.preview = line if len(line) <= PREVIEW_CHARS else line[:PREVIEW_CHARS] + "..."
        self.reason = reason
        super().__init__(f"malformed line ({reason}): {self.preview!r}" if reason else f"malformed line: {self.preview!r}")


class MissingFieldError(DecodeError):
    def __init__(self, kind: EventType, field_name: str) -> None:
        self.kind = kind
        self.field_name = field_name
        super().__init__(f"{kind.value} event is missing required field '{field_name}'")


class InvalidFieldError(DecodeError):
    def __init__(self, kind: EventType, field_name: str, value: Any) -> None:
        self.kind = kind
        self.field_name = field_name
        self.value = value
        super().__init__(f"{kind.value} event has invalid value for '{field_name}': {value!r}")


@dataclass(frozen=True)
class StatusEvent:
    percent_done: float
    seconds_elapsed: Optional[float] = None
    seconds_remaining: Optional[float] = None
    bytes_done: Optional[int] = None
    total_bytes: Optional[int] = None
    files_done: Optional[int] = None
    total_files: Optional[int] = None
    error_count: Optional[int] = None
    current_files: Tuple[str, ...] = ()
    type: EventType = field(default=EventType.STATUS, init=False)


@dataclass(frozen=True)
class SummaryEvent:
    files_new: Optional[int] = None
    files_changed: Optional[int] = None
    files_unmodified: Optional[int] = None
    dirs_new: Optional[int] = None
    dirs_changed: Optional[int] = None
    dirs_unmodified: Optional[int] = None
    data_blobs: Optional[int] = None
    tree_blobs: Optional[int] = None
    data_added: Optional[int] = None
    total_files_processed: Optional[int] = None
    total_bytes_processed: Optional[int] = None
    total_duration: Optional[float] = None
    snapshot_id: Optional[str] = None
    type: EventType = field(default=EventType.SUMMARY, init=False)


@dataclass(frozen=True)
class ErrorEvent:
    item: Optional[str] = None
    message: Optional[str] = None
    during: Optional[str] = None
    type: EventType = field(default=EventType.ERROR, init=False)


@dataclass(frozen=True)
class VerboseStatusEvent:
    action: str
    item: str
    duration: Optional[float] = None
    data_size: Optional[int] = None
    metadata_size: Optional[int] = None
    total_files: Optional[int] = None
    type: EventType = field(default=EventType.VERBOSE_STATUS, init=False)


@dataclass(frozen=True)
class UnrecognizedEvent:
    message_type: Optional[str]
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False)
    type: EventType = field(default=EventType.UNRECOGNIZED, init=False)


Event = Union[StatusEvent, SummaryEvent, ErrorEvent, VerboseStatusEvent, UnrecognizedEvent]


def _as_float(kind: EventType, name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise InvalidFieldError(kind, name, value)
    return float(value)


def _as_int(kind: EventType, name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidFieldError(kind, name, value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise InvalidFieldError(kind, name, value)


def _as_str(kind: EventType, name: str, value: Any) -> str:
    if not isinstance(value, str):
        raise InvalidFieldError(kind, name, value)
    return value


def _as_paths(kind: EventType, name: str, value: Any) -> Tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InvalidFieldError(kind, name, value)
    return tuple(value)


Converter = Callable[[EventType, str, Any], Any]


def _fields(
    kind: EventType,
    record: Mapping[str, Any],
    converters: Dict[str, Converter],
    required: Tuple[str, ...] = (),
) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, convert in converters.items():
        value = record.get(name)
        if value is None:
            if name in required:
                raise MissingFieldError(kind, name)
            continue
        out[name] = convert(kind, name, value)
    return out


_STATUS_FIELDS: Dict[str, Converter] = {
    "percent_done": _as_float,
    "seconds_elapsed": _as_float,
    "seconds_remaining": _as_float,
    "bytes_done": _as_int,
    "total_bytes": _as_int,
    "files_done": _as_int,
    "total_files": _as_int,
    "error_count": _as_int,
    "current_files": _as_paths,
}

_SUMMARY_FIELDS: Dict[str, Converter] = {
    "files_new": _as_int,
    "files_changed": _as_int,
    "files_unmodified": _as_int,
    "dirs_new": _as_int,
    "dirs_changed": _as_int,
    "dirs_unmodified": _as_int,
    "data_blobs": _as_int,
    "tree_blobs": _as_int,
    "data_added": _as_int,
    "total_files_processed": _as_int,
    "total_bytes_processed": _as_int,
    "total_duration": _as_float,
    "snapshot_id": _as_str,
}

_VERBOSE_FIELDS: Dict[str, Converter] = {
    "action": _as_str,
    "item": _as_str,
    "duration": _as_float,
    "data_size": _as_int,
    "metadata_size": _as_int,
    "total_files": _as_int,
}


def _decode_error(record: Mapping[str, Any]) -> ErrorEvent:
    kind = EventType.ERROR
    values = _fields(kind, record, {"item": _as_str, "during": _as_str})
    err = record.get("error")
    # error is normally {"message": ...}; a bare string is accepted too
    if isinstance(err, Mapping):
        message = err.get("message")
        if message is not None:
            values["message"] = _as_str(kind, "error.message", message)
    elif err is not None:
        values["message"] = _as_str(kind, "error", err)
    return ErrorEvent(**values)


def decode(line: Union[bytes, str]) -> Event:
    """Decode one line of ``restic --json`` output.

    Raises a ``DecodeError`` subclass for lines that are not JSON objects or
    that miss/mistype a field the event kind needs. Unknown kinds decode to
    ``UnrecognizedEvent`` so newer restic releases never break the stream.
    """

    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else line
    text = text.strip()
    if not text:
        raise MalformedLineError(text, "empty line")
    try:
        record = json.loads(text)
    except ValueError as exc:
        raise MalformedLineError(text, str(exc)) from exc
    if not isinstance(record, dict):
        raise MalformedLineError(text, "not a JSON object")

    message_type = record.get("message_type")
    if message_type == EventType.STATUS.value:
        return StatusEvent(**_fields(EventType.STATUS, record, _STATUS_FIELDS, required=("percent_done",)))
    if message_type == EventType.SUMMARY.value:
        return SummaryEvent(**_fields(EventType.SUMMARY, record, _SUMMARY_FIELDS))
    if message_type == EventType.ERROR.value:
        return _decode_error(record)
    if message_type == EventType.VERBOSE_STATUS.value:
        return VerboseStatusEvent(
            **_fields(EventType.VERBOSE_STATUS, record, _VERBOSE_FIELDS, required=("action", "item"))
        )
    return UnrecognizedEvent(message_type=message_type if isinstance(message_type, str) else None, raw=record)
