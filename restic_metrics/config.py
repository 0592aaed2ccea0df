"""Configuration loading utilities for the restic metrics exporter."""

from __future__ import annotations

import math
import os
import socket
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

CONFIG_ENV = "RESTIC_METRICS_CONFIG"
DEFAULT_INFLUX_HOST = "http://localhost:8086"


class ConfigError(ValueError):
    """Raised for unusable configuration values."""


@dataclass
class InfluxConfig:
    """Connection parameters handed to the InfluxDB store."""

    host: str = DEFAULT_INFLUX_HOST
    database: str = ""
    user: str = ""
    password: str = ""
    timeout_seconds: float = 5.0


@dataclass
class ExporterConfig:
    """Runtime configuration for one exporter process."""

    dry_run: bool = False
    verbose: bool = False
    interval_seconds: float = 10.0
    queue_size: int = 1000
    max_errors: int = 50
    reset_on_summary: bool = True
    continue_after_summary: bool = False
    host_tag: str = field(default_factory=socket.gethostname)
    tags: Dict[str, str] = field(default_factory=dict)
    log_file: Optional[Path] = None
    log_level: str = "INFO"
    influx: InfluxConfig = field(default_factory=InfluxConfig)

    def validate(self) -> "ExporterConfig":
        if not math.isfinite(self.interval_seconds) or self.interval_seconds <= 0:
            raise ConfigError("interval_seconds must be a finite number > 0")
        if self.queue_size <= 0:
            raise ConfigError("queue_size must be > 0")
        if self.max_errors <= 0:
            raise ConfigError("max_errors must be > 0")
        if not math.isfinite(self.influx.timeout_seconds) or self.influx.timeout_seconds <= 0:
            raise ConfigError("influxdb.timeout_seconds must be a finite number > 0")
        if not self.dry_run and not self.influx.database:
            raise ConfigError("influxdb database is required unless --dry-run is set")
        return self


def _load_yaml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    with path.open("r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Configuration file must contain a mapping: {path}")
    return data


def _number(raw: Mapping[str, Any], key: str, default: float, cast: type = float) -> Any:
    value = raw.get(key, default)
    try:
        return cast(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{key} must be a number, got {value!r}") from exc


def config_from_mapping(raw: Mapping[str, Any]) -> ExporterConfig:
    """Build a config from a parsed YAML mapping; missing keys keep defaults."""

    base = ExporterConfig()
    influx_raw = raw.get("influxdb", {}) or {}
    if not isinstance(influx_raw, dict):
        raise ConfigError("influxdb section must be a mapping")
    tags_raw = raw.get("tags", {}) or {}
    if not isinstance(tags_raw, dict):
        raise ConfigError("tags must be a mapping")

    influx = InfluxConfig(
        host=str(influx_raw.get("host", base.influx.host)),
        database=str(influx_raw.get("database", base.influx.database) or ""),
        user=str(influx_raw.get("user", base.influx.user) or ""),
        password=str(influx_raw.get("password", base.influx.password) or ""),
        timeout_seconds=_number(influx_raw, "timeout_seconds", base.influx.timeout_seconds),
    )
    log_file = raw.get("log_file")
    return ExporterConfig(
        dry_run=bool(raw.get("dry_run", base.dry_run)),
        verbose=bool(raw.get("verbose", base.verbose)),
        interval_seconds=_number(raw, "interval_seconds", base.interval_seconds),
        queue_size=_number(raw, "queue_size", base.queue_size, int),
        max_errors=_number(raw, "max_errors", base.max_errors, int),
        reset_on_summary=bool(raw.get("reset_on_summary", base.reset_on_summary)),
        continue_after_summary=bool(raw.get("continue_after_summary", base.continue_after_summary)),
        host_tag=str(raw.get("host_tag") or base.host_tag),
        tags={str(k): str(v) for k, v in tags_raw.items()},
        log_file=Path(str(log_file)).expanduser() if log_file else None,
        log_level=str(raw.get("log_level", base.log_level)).upper(),
        influx=influx,
    )


def apply_env_overrides(cfg: ExporterConfig, env: Optional[Mapping[str, str]] = None) -> ExporterConfig:
    env = os.environ if env is None else env
    influx = replace(
        cfg.influx,
        host=env.get("INFLUXDB_HOST") or cfg.influx.host,
        database=env.get("INFLUXDB_DATABASE") or cfg.influx.database,
        user=env.get("INFLUXDB_USER") or cfg.influx.user,
        password=env.get("INFLUXDB_PASSWORD") or cfg.influx.password,
    )
    return replace(cfg, influx=influx)


def load_config(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> ExporterConfig:
    """Load defaults, then the YAML file (if any), then environment overrides.

    Validation is left to the caller so CLI flags can still be layered on top.
    """

    env = os.environ if env is None else env
    if path is None and env.get(CONFIG_ENV):
        path = Path(env[CONFIG_ENV]).expanduser()
    cfg = config_from_mapping(_load_yaml(path)) if path is not None else ExporterConfig()
    return apply_env_overrides(cfg, env)
