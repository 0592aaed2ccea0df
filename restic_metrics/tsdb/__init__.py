"""TSDB package exports."""

from restic_metrics.tsdb.base import Point, SinkError, TimeseriesStore  # noqa: F401
from restic_metrics.tsdb.dryrun import DryRunTimeseriesStore  # noqa: F401
from restic_metrics.tsdb.influxdb import InfluxDbTimeseriesStore, point_to_line  # noqa: F401
