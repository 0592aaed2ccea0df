"""InfluxDB line-protocol store (1.x HTTP write API)."""

from __future__ import annotations

import base64
import logging
import math
import urllib.error
import urllib.parse
import urllib.request
from typing import List, Optional

from restic_metrics.tsdb.base import Point, SinkError, TimeseriesStore


def _escape_newlines(val: str) -> str:
    # a raw newline would split the point across two lines
    return val.replace("\n", "\\n").replace("\r", "\\r")


def _escape_measurement(val: str) -> str:
    return _escape_newlines(val.replace(",", "\\,").replace(" ", "\\ "))


def _escape_key(val: str) -> str:
    return _escape_newlines(val.replace(",", "\\,").replace("=", "\\=").replace(" ", "\\ "))


def _encode_field(value: object) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return f"{value}i"
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        return repr(value)
    text = _escape_newlines(str(value).replace("\\", "\\\\").replace('"', '\\"'))
    return f'"{text}"'


def point_to_line(point: Point) -> Optional[str]:
    """Serialise a point, or return None when it carries no writable field."""

    fields = []
    for key, value in point.fields.items():
        encoded = _encode_field(value)
        if encoded is not None:
            fields.append(f"{_escape_key(key)}={encoded}")
    if not fields:
        return None
    tags = ",".join(
        f"{_escape_key(k)}={_escape_key(v)}" for k, v in sorted(point.tags.items()) if v != ""
    )
    ts_ns = int(point.ts.timestamp() * 1_000_000) * 1_000
    head = _escape_measurement(point.measurement)
    if tags:
        head = f"{head},{tags}"
    return f"{head} {','.join(fields)} {ts_ns}"


def points_to_payload(points: List[Point]) -> bytes:
    lines = [line for line in (point_to_line(p) for p in points) if line is not None]
    return "\n".join(lines).encode("utf-8")


class InfluxDbTimeseriesStore(TimeseriesStore):
    """Writes points to InfluxDB using line protocol over HTTP."""

    def __init__(
        self,
        host: str,
        database: str,
        user: str = "",
        password: str = "",
        timeout_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.url = host.rstrip("/")
        self.database = database
        self.user = user
        self.password = password
        self.timeout = timeout_seconds
        self.logger = logger or logging.getLogger(__name__)

    def _request(self, url: str, data: Optional[bytes] = None, method: str = "GET") -> urllib.request.Request:
        req = urllib.request.Request(url, data=data, method=method)
        if self.user:
            creds = f"{self.user}:{self.password or ''}".encode("utf-8")
            req.add_header("Authorization", "Basic " + base64.b64encode(creds).decode("utf-8"))
        return req

    def ping(self) -> None:
        """Check that the server answers; raise SinkError otherwise."""

        req = self._request(f"{self.url}/ping")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                if resp.status >= 300:
                    raise SinkError(f"InfluxDB ping HTTP status {resp.status}")
        except (urllib.error.URLError, OSError) as exc:
            raise SinkError(f"InfluxDB unreachable at {self.url}: {exc}") from exc

    def write_points(self, points: List[Point]) -> None:
        payload = points_to_payload(points)
        if not payload:
            return
        query = urllib.parse.urlencode({"db": self.database, "precision": "ns"})
        req = self._request(f"{self.url}/write?{query}", data=payload, method="POST")
        req.add_header("Content-Type", "text/plain; charset=utf-8")
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:  # noqa: S310
                if resp.status >= 300:
                    raise SinkError(f"InfluxDB write HTTP status {resp.status}")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="replace").strip()
            raise SinkError(f"InfluxDB rejected write ({exc.code}): {body[:200]}") from exc
        except (urllib.error.URLError, OSError) as exc:
            raise SinkError(f"InfluxDB write failed: {exc}") from exc
        self.logger.debug("Wrote %d point(s) to %s/%s", len(points), self.url, self.database)
