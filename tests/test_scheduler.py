import json
import threading
import time
from datetime import datetime, timezone

from restic_metrics.aggregator import Aggregator
from restic_metrics.points import PointBuilder
from restic_metrics.scheduler import BatchScheduler, RunOutcome, SchedulerState
from restic_metrics.tsdb.base import SinkError

STATUS = b'{"message_type":"status","percent_done":0.5,"bytes_done":500,"total_bytes":1000}\n'
SUMMARY = b'{"message_type":"summary","total_bytes_processed":1000,"snapshot_id":"abc123"}\n'


class RecordingStore:
    def __init__(self, fail=False):
        self.batches = []
        self.fail = fail

    def write_points(self, points):
        self.batches.append(list(points))
        if self.fail:
            raise SinkError("influx down")


def _now():
    return datetime(2024, 5, 1, tzinfo=timezone.utc)


def _scheduler(source, store, **kwargs):
    kwargs.setdefault("interval_seconds", 10)
    return BatchScheduler(
        source=source,
        aggregator=Aggregator(),
        builder=PointBuilder(host="box"),
        store=store,
        now=_now,
        **kwargs,
    )


def _status(i):
    return json.dumps({"message_type": "status", "percent_done": i / 100, "bytes_done": i * 10}).encode() + b"\n"


def test_status_then_summary_flushes_twice():
    store = RecordingStore()
    sched = _scheduler([STATUS, SUMMARY], store)
    outcome = sched.run()
    assert outcome == RunOutcome.RUN_COMPLETED
    assert sched.state == SchedulerState.TERMINATED
    assert sched.flush_count == 2
    assert len(store.batches) == 2
    status_point = store.batches[0][0]
    assert status_point.fields["percent_done"] == 100.0
    assert any(p.measurement == "summary_message" for p in store.batches[0])
    assert sched.aggregator.state.completed is True


def test_end_of_stream_drains_once():
    store = RecordingStore()
    sched = _scheduler([STATUS], store)
    assert sched.run() == RunOutcome.END_OF_STREAM
    assert sched.flush_count == 1
    assert store.batches[0][0].fields["percent_done"] == 50.0


def test_malformed_lines_do_not_stop_the_loop_or_change_state():
    store = RecordingStore()
    lines = [b"{not json\n", b'{"message_type":"status","bytes_done":"not-a-number"}\n', b'{"message_type":"future_kind","x":1}\n']
    sched = _scheduler(lines, store)
    assert sched.run() == RunOutcome.END_OF_STREAM
    assert sched.lines_read == 3
    assert sched.decode_failures == 2
    state = sched.aggregator.state
    assert state.events_applied == 0
    assert state.bytes_done == 0
    assert state.last_event_at is None


def test_interval_ticks_follow_clock():
    store = RecordingStore()
    holder = {}
    # one processed line == one second of wall time
    lines = [_status(i) for i in range(1, 11)]
    sched = _scheduler(lines, store, interval_seconds=3, clock=lambda: float(holder["s"].lines_read))
    holder["s"] = sched
    assert sched.run() == RunOutcome.END_OF_STREAM
    # ticks at 3, 6 and 9 seconds plus the draining flush
    assert sched.flush_count == 4
    assert len(store.batches) == 4
    # the batch cut at the 3-second tick already holds the third line
    assert [batch[0].fields["bytes_done"] for batch in store.batches] == [30, 60, 90, 100]


def test_sink_failure_is_counted_and_loop_continues():
    store = RecordingStore(fail=True)
    sched = _scheduler([STATUS, SUMMARY], store)
    assert sched.run() == RunOutcome.RUN_COMPLETED
    assert sched.sink_failures == 2
    assert sched.flush_count == 2


def test_errors_are_reported_in_one_batch_only():
    store = RecordingStore()
    err = b'{"message_type":"error","error":{"message":"denied"},"during":"archival","item":"/x"}\n'
    sched = _scheduler([err, SUMMARY], store)
    sched.run()
    first, second = store.batches
    assert [p.measurement for p in first].count("error_message") == 1
    assert [p.measurement for p in second].count("error_message") == 0


def test_continue_after_summary_keeps_reading():
    store = RecordingStore()
    second_run = b'{"message_type":"status","percent_done":0.1,"bytes_done":10}\n'
    sched = _scheduler([STATUS, SUMMARY, second_run], store, continue_after_summary=True)
    assert sched.run() == RunOutcome.END_OF_STREAM
    assert sched.flush_count == 2
    last_status = store.batches[-1][0]
    assert last_status.tags["run"] == "2"
    assert last_status.fields["bytes_done"] == 10


def test_input_error_drains_and_reports():
    def broken():
        yield STATUS
        raise OSError("broken pipe")

    store = RecordingStore()
    sched = _scheduler(broken(), store)
    assert sched.run() == RunOutcome.INPUT_ERROR
    assert sched.flush_count == 1
    assert store.batches[0][0].fields["bytes_done"] == 500


def test_request_stop_interrupts_and_flushes():
    release = threading.Event()

    def blocking():
        yield STATUS
        release.wait(5)

    store = RecordingStore()
    sched = _scheduler(blocking(), store)
    timer = threading.Timer(0.3, sched.request_stop, args=("test",))
    timer.start()
    try:
        assert sched.run() == RunOutcome.INTERRUPTED
    finally:
        release.set()
        timer.cancel()
    assert sched.flush_count == 1
    assert store.batches[0][0].fields["bytes_done"] == 500


class SlowAggregator(Aggregator):
    def apply(self, event):
        time.sleep(0.01)
        return super().apply(event)


def test_full_queue_blocks_reader_without_losing_lines():
    store = RecordingStore()
    lines = [_status(i) for i in range(1, 21)]
    sched = BatchScheduler(
        source=lines,
        aggregator=SlowAggregator(),
        builder=PointBuilder(host="box"),
        store=store,
        interval_seconds=60,
        queue_size=1,
        now=_now,
    )
    assert sched.run() == RunOutcome.END_OF_STREAM
    assert sched.lines_read == 20
    assert sched.aggregator.state.events_applied == 20
    assert store.batches[-1][0].fields["bytes_done"] == 200
