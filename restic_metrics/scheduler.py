"""Read/aggregate/flush loop driving the exporter."""

from __future__ import annotations

import logging
import math
import threading
import time
from datetime import datetime, timezone
from enum import Enum
from queue import Empty, Queue
from typing import BinaryIO, Callable, Iterable, Optional, Tuple, Union

from restic_metrics.aggregator import Aggregator, AppliedEffect, EffectKind
from restic_metrics.events import DecodeError, UnrecognizedEvent, decode
from restic_metrics.points import PointBuilder
from restic_metrics.tsdb.base import SinkError, TimeseriesStore

logger = logging.getLogger(__name__)

# upper bound for a single wait so stop requests are noticed promptly
WAKE_SLICE_SECONDS = 0.25

_LINE = "line"
_EOF = "eof"
_ERROR = "error"

QueueItem = Tuple[str, Union[bytes, str, BaseException, None]]
LineSource = Union[BinaryIO, Iterable[Union[bytes, str]]]


class SchedulerState(str, Enum):
    READING = "reading"
    FLUSHING = "flushing"
    DRAINING = "draining"
    TERMINATED = "terminated"


class RunOutcome(str, Enum):
    END_OF_STREAM = "end_of_stream"
    RUN_COMPLETED = "run_completed"
    INPUT_ERROR = "input_error"
    INTERRUPTED = "interrupted"


class _LineReader:
    """Moves raw lines from the source into a bounded queue on a daemon thread."""

    def __init__(self, source: LineSource, queue: "Queue[QueueItem]") -> None:
        self._source = source
        self._queue = queue
        self._thread = threading.Thread(target=self._run, name="restic-metrics-reader", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        try:
            for line in self._source:
                # blocks while the queue is full
                self._queue.put((_LINE, line))
        except Exception as exc:  # pylint: disable=broad-except
            self._queue.put((_ERROR, exc))
            return
        self._queue.put((_EOF, None))


class BatchScheduler:
    """Owns the interval timer, the aggregator and termination detection."""

    def __init__(
        self,
        source: LineSource,
        aggregator: Aggregator,
        builder: PointBuilder,
        store: TimeseriesStore,
        interval_seconds: float = 10.0,
        queue_size: int = 1000,
        continue_after_summary: bool = False,
        verbose: bool = False,
        clock: Callable[[], float] = time.monotonic,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if not math.isfinite(interval_seconds) or interval_seconds <= 0:
            raise ValueError("interval_seconds must be a finite number > 0")
        if queue_size <= 0:
            raise ValueError("queue_size must be > 0")
        self.aggregator = aggregator
        self.builder = builder
        self.store = store
        self.interval = float(interval_seconds)
        self.continue_after_summary = continue_after_summary
        self.verbose = verbose
        self._clock = clock
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._queue: "Queue[QueueItem]" = Queue(maxsize=queue_size)
        self._reader = _LineReader(source, self._queue)
        self._stop = threading.Event()
        self._stop_reason: Optional[str] = None

        self.state = SchedulerState.READING
        self.outcome: Optional[RunOutcome] = None
        self.flush_count = 0
        self.sink_failures = 0
        self.lines_read = 0
        self.decode_failures = 0

    def request_stop(self, reason: str = "stop requested") -> None:
        """Ask the loop to drain and terminate; safe from signal handlers."""

        self._stop_reason = reason
        self._stop.set()

    def run(self) -> RunOutcome:
        self._reader.start()
        next_tick = self._clock() + self.interval
        outcome: Optional[RunOutcome] = None

        while outcome is None:
            if self._stop.is_set():
                logger.info("Shutting down: %s", self._stop_reason)
                outcome = RunOutcome.INTERRUPTED
                break

            timeout = min(max(next_tick - self._clock(), 0.0), WAKE_SLICE_SECONDS)
            try:
                kind, payload = self._queue.get(timeout=timeout) if timeout > 0 else self._queue.get_nowait()
            except Empty:
                kind, payload = None, None

            completed = False
            if kind == _LINE:
                completed = self._handle_line(payload)  # type: ignore[arg-type]
            elif kind == _EOF:
                logger.info("End of input after %d line(s)", self.lines_read)
                outcome = RunOutcome.END_OF_STREAM
                break
            elif kind == _ERROR:
                logger.error("Input stream failed: %s", payload)
                outcome = RunOutcome.INPUT_ERROR
                break

            if completed:
                self._flush("run completed")
                if not self.continue_after_summary:
                    outcome = RunOutcome.RUN_COMPLETED
                    break
                self.state = SchedulerState.READING
                continue

            now = self._clock()
            if now >= next_tick:
                self._flush("interval")
                self.state = SchedulerState.READING
                # skip ticks missed during a slow flush instead of bursting
                while next_tick <= self._clock():
                    next_tick += self.interval

        self.state = SchedulerState.DRAINING
        self._flush("draining")
        self.state = SchedulerState.TERMINATED
        self.outcome = outcome
        logger.info(
            "Terminated (%s): lines=%d decode_failures=%d flushes=%d sink_failures=%d",
            outcome.value,
            self.lines_read,
            self.decode_failures,
            self.flush_count,
            self.sink_failures,
        )
        return outcome

    def _handle_line(self, line: Union[bytes, str]) -> bool:
        self.lines_read += 1
        try:
            event = decode(line)
        except DecodeError as exc:
            self.decode_failures += 1
            logger.warning("Skipping line %d: %s", self.lines_read, exc)
            return False

        effect: AppliedEffect = self.aggregator.apply(event)
        if isinstance(event, UnrecognizedEvent):
            logger.debug("Ignoring unrecognized message_type %r", event.message_type)
        elif self.verbose:
            logger.debug("Applied %s event: %s", event.type.value, effect.kind.value)
        return effect.kind == EffectKind.RUN_COMPLETED

    def _flush(self, reason: str) -> None:
        self.state = SchedulerState.FLUSHING
        batch = self.builder.snapshot(self.aggregator.state, self._now())
        self.flush_count += 1
        try:
            self.store.write_points(batch)
        except SinkError as exc:
            self.sink_failures += 1
            logger.error("Flush (%s) failed: %s", reason, exc)
        except Exception as exc:  # pylint: disable=broad-except
            self.sink_failures += 1
            logger.exception("Flush (%s) failed unexpectedly: %s", reason, exc)
        else:
            logger.debug("Flushed %d point(s) (%s)", len(batch), reason)
        finally:
            self.aggregator.acknowledge_flush()
