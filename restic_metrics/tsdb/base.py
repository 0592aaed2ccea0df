"""TSDB base abstractions."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Protocol


@dataclass(frozen=True)
class Point:
    """A single timeseries point."""

    measurement: str
    ts: datetime
    tags: Dict[str, str]
    fields: Dict[str, object]


class SinkError(RuntimeError):
    """Raised when a batch cannot be delivered to the store."""


class TimeseriesStore(Protocol):
    """Protocol for TSDB backends."""

    def write_points(self, points: List[Point]) -> None:
        ...
