"""Aggregation of restic events into the current run state."""

from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Tuple

from restic_metrics.events import (
    ErrorEvent,
    Event,
    StatusEvent,
    SummaryEvent,
    UnrecognizedEvent,
    VerboseStatusEvent,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERRORS = 50


class EffectKind(str, Enum):
    UPDATED = "updated"
    IGNORED = "ignored"
    WARNING = "warning"
    RUN_COMPLETED = "run_completed"


@dataclass(frozen=True)
class AppliedEffect:
    kind: EffectKind
    reason: Optional[str] = None


UPDATED = AppliedEffect(EffectKind.UPDATED)
IGNORED = AppliedEffect(EffectKind.IGNORED)
RUN_COMPLETED = AppliedEffect(EffectKind.RUN_COMPLETED)


@dataclass(frozen=True)
class RecordedError:
    observed_at: float
    item: Optional[str]
    message: Optional[str]
    during: Optional[str]


@dataclass
class AggregatorState:
    """Current metric state for one backup run."""

    max_errors: int = DEFAULT_MAX_ERRORS
    run_number: int = 1
    run_started_at: Optional[float] = None
    percent_done: float = 0.0
    seconds_elapsed: Optional[float] = None
    seconds_remaining: Optional[float] = None
    bytes_done: int = 0
    total_bytes: Optional[int] = None
    files_done: int = 0
    total_files: Optional[int] = None
    error_count: int = 0
    reported_error_count: Optional[int] = None
    current_files: Tuple[str, ...] = ()
    last_event_at: Optional[float] = None
    events_applied: int = 0
    warnings: int = 0
    completed: bool = False
    summary: Optional[SummaryEvent] = None
    prev_bytes_done: Optional[int] = None
    prev_seconds_elapsed: Optional[float] = None
    action_counts: Dict[str, int] = field(default_factory=dict)
    carried_bytes: int = 0
    carried_files: int = 0
    carried_errors: int = 0
    pending_errors: Deque[RecordedError] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self.pending_errors = deque(maxlen=self.max_errors)

    @property
    def total_bytes_done(self) -> int:
        return self.carried_bytes + self.bytes_done

    @property
    def total_files_done(self) -> int:
        return self.carried_files + self.files_done

    @property
    def total_error_count(self) -> int:
        return self.carried_errors + self.error_count


class Aggregator:
    """Single-owner aggregator; only the scheduler thread calls ``apply``."""

    def __init__(
        self,
        max_errors: int = DEFAULT_MAX_ERRORS,
        reset_on_summary: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_errors <= 0:
            raise ValueError("max_errors must be positive")
        self.max_errors = max_errors
        self.reset_on_summary = reset_on_summary
        self._clock = clock
        self._state = AggregatorState(max_errors=max_errors)

    @property
    def state(self) -> AggregatorState:
        return self._state

    def apply(self, event: Event) -> AppliedEffect:
        if isinstance(event, UnrecognizedEvent):
            return IGNORED

        now = self._clock()
        if self._state.completed:
            self._start_new_run()
        state = self._state
        if state.run_started_at is None:
            state.run_started_at = now
        state.last_event_at = now
        state.events_applied += 1

        if isinstance(event, StatusEvent):
            return self._apply_status(event)
        if isinstance(event, SummaryEvent):
            return self._apply_summary(event)
        if isinstance(event, ErrorEvent):
            state.error_count += 1
            state.pending_errors.append(
                RecordedError(observed_at=now, item=event.item, message=event.message, during=event.during)
            )
            return UPDATED
        if isinstance(event, VerboseStatusEvent):
            state.action_counts[event.action] = state.action_counts.get(event.action, 0) + 1
            return UPDATED
        raise TypeError(f"Unsupported event type: {type(event).__name__}")

    def acknowledge_flush(self) -> None:
        """Forget errors that were handed to the sink in the last batch."""

        self._state.pending_errors.clear()

    def _apply_status(self, event: StatusEvent) -> AppliedEffect:
        state = self._state
        rejected: List[str] = []

        if event.percent_done >= state.percent_done:
            state.percent_done = min(event.percent_done, 1.0)
        elif (
            event.total_bytes is not None
            and state.total_bytes is not None
            and event.total_bytes > state.total_bytes
        ):
            # the scanner found more data, so the fraction legitimately drops
            logger.debug(
                "percent_done fell from %.4f to %.4f as total_bytes grew to %d",
                state.percent_done,
                event.percent_done,
                event.total_bytes,
            )
            state.percent_done = event.percent_done
        else:
            rejected.append("percent_done")

        if event.bytes_done is not None:
            if event.bytes_done < state.bytes_done:
                rejected.append("bytes_done")
            else:
                # roll the rate sample only when elapsed time advances
                if event.seconds_elapsed is not None and (
                    state.seconds_elapsed is None or event.seconds_elapsed > state.seconds_elapsed
                ):
                    state.prev_bytes_done = state.bytes_done
                    state.prev_seconds_elapsed = state.seconds_elapsed
                state.bytes_done = event.bytes_done

        if event.files_done is not None:
            if event.files_done < state.files_done:
                rejected.append("files_done")
            else:
                state.files_done = event.files_done

        if event.seconds_elapsed is not None:
            state.seconds_elapsed = event.seconds_elapsed
        if event.seconds_remaining is not None:
            state.seconds_remaining = event.seconds_remaining
        if event.total_bytes is not None:
            state.total_bytes = event.total_bytes
        if event.total_files is not None:
            state.total_files = event.total_files
        if event.error_count is not None:
            state.reported_error_count = event.error_count
        state.current_files = event.current_files

        if rejected:
            state.warnings += 1
            reason = "counter went backwards: " + ", ".join(rejected)
            logger.warning("Ignoring status fields (%s) in run %d", reason, state.run_number)
            return AppliedEffect(EffectKind.WARNING, reason)
        return UPDATED

    def _apply_summary(self, event: SummaryEvent) -> AppliedEffect:
        state = self._state
        if event.total_bytes_processed is not None:
            state.bytes_done = max(state.bytes_done, event.total_bytes_processed)
        if event.total_files_processed is not None:
            state.files_done = max(state.files_done, event.total_files_processed)
        if event.total_duration is not None:
            state.seconds_elapsed = event.total_duration
        state.percent_done = 1.0
        state.seconds_remaining = 0.0
        state.current_files = ()
        state.summary = event
        state.completed = True
        logger.info(
            "Run %d completed: snapshot=%s files=%d bytes=%d errors=%d",
            state.run_number,
            event.snapshot_id or "-",
            state.files_done,
            state.bytes_done,
            state.error_count,
        )
        return RUN_COMPLETED

    def _start_new_run(self) -> None:
        old = self._state
        fresh = AggregatorState(max_errors=self.max_errors, run_number=old.run_number + 1)
        if not self.reset_on_summary:
            fresh.carried_bytes = old.total_bytes_done
            fresh.carried_files = old.total_files_done
            fresh.carried_errors = old.total_error_count
            fresh.events_applied = old.events_applied
            fresh.warnings = old.warnings
        # errors from the finished run that were not flushed yet stay reportable
        fresh.pending_errors.extend(old.pending_errors)
        self._state = fresh
        logger.debug("Starting run %d (reset=%s)", fresh.run_number, self.reset_on_summary)
