"""Map aggregator state to TSDB points."""

from __future__ import annotations

from dataclasses import fields as dataclass_fields
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from restic_metrics.aggregator import AggregatorState, RecordedError
from restic_metrics.tsdb.base import Point

STATUS_MEASUREMENT = "status_message"
SUMMARY_MEASUREMENT = "summary_message"
ERROR_MEASUREMENT = "error_message"


class PointBuilder:
    """Builds one batch per flush from a read-only view of the state."""

    def __init__(self, host: str, extra_tags: Optional[Mapping[str, str]] = None) -> None:
        self.host = host
        self.extra_tags = {str(k): str(v) for k, v in (extra_tags or {}).items()}

    def snapshot(self, state: AggregatorState, now: datetime) -> List[Point]:
        """Return the heartbeat point plus summary/error points when present."""

        tags = self._tags(state)
        points = [Point(measurement=STATUS_MEASUREMENT, ts=now, tags=tags, fields=_status_fields(state))]
        if state.completed and state.summary is not None:
            summary_tags = dict(tags)
            if state.summary.snapshot_id:
                summary_tags["snapshot_id"] = state.summary.snapshot_id
            points.append(
                Point(
                    measurement=SUMMARY_MEASUREMENT,
                    ts=now,
                    tags=summary_tags,
                    fields=_summary_fields(state),
                )
            )
        points.extend(_error_point(err, tags) for err in state.pending_errors)
        return points

    def _tags(self, state: AggregatorState) -> Dict[str, str]:
        tags = dict(self.extra_tags)
        tags["host"] = self.host
        tags["run"] = str(state.run_number)
        return tags


def _status_fields(state: AggregatorState) -> Dict[str, object]:
    fields: Dict[str, object] = {
        "percent_done": round(state.percent_done * 100.0, 2),
        "bytes_done": state.total_bytes_done,
        "files_done": state.total_files_done,
        "total_bytes": state.total_bytes,
        "total_files": state.total_files,
        "error_count": state.total_error_count,
        "reported_error_count": state.reported_error_count,
        "seconds_elapsed": state.seconds_elapsed,
        "seconds_remaining": state.seconds_remaining,
        "events_applied": state.events_applied,
        "warnings": state.warnings,
        "completed": state.completed,
    }
    if state.current_files:
        fields["current_files"] = ",".join(state.current_files)
    for action, count in sorted(state.action_counts.items()):
        fields[f"files_{action}"] = count

    rate = _rate(state)
    avg_rate = _avg_rate(state)
    if rate is not None:
        fields["bytes_per_second"] = rate
    if avg_rate is not None:
        fields["avg_bytes_per_second"] = avg_rate
    eta = _eta(state, avg_rate)
    if eta is not None:
        fields["eta_seconds"] = eta
    return {k: v for k, v in fields.items() if v is not None}


def _rate(state: AggregatorState) -> Optional[float]:
    if state.prev_bytes_done is None or state.prev_seconds_elapsed is None or state.seconds_elapsed is None:
        return None
    elapsed = state.seconds_elapsed - state.prev_seconds_elapsed
    if elapsed <= 0:
        return None
    return round((state.bytes_done - state.prev_bytes_done) / elapsed, 2)


def _avg_rate(state: AggregatorState) -> Optional[float]:
    if not state.seconds_elapsed or state.seconds_elapsed <= 0:
        return None
    return round(state.bytes_done / state.seconds_elapsed, 2)


def _eta(state: AggregatorState, avg_rate: Optional[float]) -> Optional[float]:
    if state.completed:
        return 0.0
    if state.seconds_remaining is not None:
        return float(state.seconds_remaining)
    if state.total_bytes is None or not avg_rate:
        return None
    return round(max(state.total_bytes - state.bytes_done, 0) / avg_rate, 2)


def _summary_fields(state: AggregatorState) -> Dict[str, object]:
    summary = state.summary
    fields: Dict[str, object] = {}
    if summary is None:
        return fields
    for f in dataclass_fields(summary):
        if f.name in ("type", "snapshot_id"):
            continue
        value = getattr(summary, f.name)
        if value is not None:
            fields[f.name] = value
    if summary.snapshot_id:
        fields["snapshot_id"] = summary.snapshot_id
    fields["error_count"] = state.error_count
    return fields


def _error_point(err: RecordedError, tags: Dict[str, str]) -> Point:
    fields: Dict[str, object] = {
        "item": err.item or "",
        "message": err.message or "",
    }
    if err.during:
        fields["during"] = err.during
    return Point(
        measurement=ERROR_MEASUREMENT,
        ts=datetime.fromtimestamp(err.observed_at, tz=timezone.utc),
        tags=dict(tags),
        fields=fields,
    )
