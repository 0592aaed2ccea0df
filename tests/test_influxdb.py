import io
import json
import urllib.error
from datetime import datetime, timezone

import pytest

from restic_metrics.aggregator import Aggregator
from restic_metrics.events import decode
from restic_metrics.points import PointBuilder
from restic_metrics.tsdb import DryRunTimeseriesStore, InfluxDbTimeseriesStore, Point, SinkError, point_to_line
from restic_metrics.tsdb import influxdb

TS = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
TS_NS = 1714564800 * 1_000_000_000


def test_point_to_line_types_and_order():
    point = Point(
        measurement="status_message",
        ts=TS,
        tags={"run": "1", "host": "box"},
        fields={"bytes_done": 10, "percent_done": 50.0, "completed": False, "current_files": "/a,/b"},
    )
    line = point_to_line(point)
    assert line == (
        f'status_message,host=box,run=1 bytes_done=10i,percent_done=50.0,completed=false,current_files="/a,/b" {TS_NS}'
    )


def test_point_to_line_escaping():
    point = Point(
        measurement="my measure,x",
        ts=TS,
        tags={"path tag": "a=b,c d"},
        fields={"msg": 'say "hi" \\ bye'},
    )
    line = point_to_line(point)
    assert line == f'my\\ measure\\,x,path\\ tag=a\\=b\\,c\\ d msg="say \\"hi\\" \\\\ bye" {TS_NS}'


def test_point_without_writable_fields_is_dropped():
    point = Point(measurement="m", ts=TS, tags={}, fields={"a": None, "b": float("nan")})
    assert point_to_line(point) is None


class _Response:
    def __init__(self, status=204):
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_store_posts_line_protocol(monkeypatch):
    seen = {}

    def fake_urlopen(req, timeout):
        seen["url"] = req.full_url
        seen["data"] = req.data
        seen["auth"] = req.get_header("Authorization")
        seen["timeout"] = timeout
        return _Response(204)

    monkeypatch.setattr(influxdb.urllib.request, "urlopen", fake_urlopen)
    store = InfluxDbTimeseriesStore("http://influx:8086/", "restic", user="u", password="p", timeout_seconds=2)
    store.write_points([Point(measurement="m", ts=TS, tags={}, fields={"v": 1})])
    assert seen["url"] == "http://influx:8086/write?db=restic&precision=ns"
    assert seen["data"] == f"m v=1i {TS_NS}".encode("utf-8")
    assert seen["auth"].startswith("Basic ")
    assert seen["timeout"] == 2


def test_store_raises_sink_error_on_transport_failure(monkeypatch):
    def fake_urlopen(req, timeout):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(influxdb.urllib.request, "urlopen", fake_urlopen)
    store = InfluxDbTimeseriesStore("http://influx:8086", "restic")
    with pytest.raises(SinkError):
        store.write_points([Point(measurement="m", ts=TS, tags={}, fields={"v": 1})])
    with pytest.raises(SinkError):
        store.ping()


def test_store_skips_empty_batch(monkeypatch):
    def fake_urlopen(req, timeout):
        raise AssertionError("should not be called")

    monkeypatch.setattr(influxdb.urllib.request, "urlopen", fake_urlopen)
    InfluxDbTimeseriesStore("http://influx:8086", "restic").write_points([])


def test_dry_run_store_prints_lines():
    out = io.StringIO()
    store = DryRunTimeseriesStore(stream=out)
    store.write_points([Point(measurement="m", ts=TS, tags={"host": "box"}, fields={"v": 1.5})])
    assert out.getvalue() == f"-> m,host=box v=1.5 {TS_NS}\n"
    assert store.batches_written == 1


def test_newlines_in_paths_stay_on_one_line():
    agg = Aggregator(clock=lambda: TS.timestamp())
    agg.apply(decode(json.dumps({"message_type": "status", "percent_done": 0.5, "current_files": ["/tmp/a\nb"]})))
    agg.apply(decode(json.dumps({"message_type": "error", "item": "/tmp/bad\nname", "error": {"message": "x\r\ny"}})))
    points = PointBuilder(host="box").snapshot(agg.state, TS)
    assert len(points) == 2
    payload = influxdb.points_to_payload(points)
    assert payload.count(b"\n") == 1
    assert b'current_files="/tmp/a\\nb"' in payload
    assert b'item="/tmp/bad\\nname"' in payload
    assert b'message="x\\r\\ny"' in payload


def test_newline_in_tag_value_is_escaped():
    point = Point(measurement="m", ts=TS, tags={"repo": "nas\nbox"}, fields={"v": 1})
    assert point_to_line(point) == f"m,repo=nas\\nbox v=1i {TS_NS}"
