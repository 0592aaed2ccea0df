"""Dry-run TSDB store: prints line protocol instead of writing it."""

from __future__ import annotations

import sys
from typing import List, Optional, TextIO

from restic_metrics.tsdb.base import Point, TimeseriesStore
from restic_metrics.tsdb.influxdb import point_to_line


class DryRunTimeseriesStore(TimeseriesStore):
    """Never touches the network."""

    def __init__(self, stream: Optional[TextIO] = None) -> None:
        self.stream = stream
        self.batches_written = 0

    def write_points(self, points: List[Point]) -> None:
        out = self.stream or sys.stdout
        for point in points:
            line = point_to_line(point)
            if line is not None:
                out.write(f"-> {line}\n")
        out.flush()
        self.batches_written += 1
