"""Command-line entrypoint: pipe ``restic backup --json`` into InfluxDB."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from restic_metrics.aggregator import Aggregator
from restic_metrics.config import ConfigError, ExporterConfig, load_config
from restic_metrics.logging_setup import setup_logging
from restic_metrics.points import PointBuilder
from restic_metrics.scheduler import BatchScheduler, LineSource, RunOutcome
from restic_metrics.tsdb import DryRunTimeseriesStore, InfluxDbTimeseriesStore, SinkError, TimeseriesStore

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_SINK_UNREACHABLE = 3
EXIT_INPUT_ERROR = 4
EXIT_INTERRUPTED = 5

_OUTCOME_EXIT_CODES = {
    RunOutcome.END_OF_STREAM: EXIT_OK,
    RunOutcome.RUN_COMPLETED: EXIT_OK,
    RunOutcome.INPUT_ERROR: EXIT_INPUT_ERROR,
    RunOutcome.INTERRUPTED: EXIT_INTERRUPTED,
}


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="restic-metrics",
        description="Forward restic --json progress to InfluxDB",
    )
    parser.add_argument("--dry-run", action="store_true", default=None, help="Print points instead of writing to InfluxDB")
    parser.add_argument("-v", "--verbose", action="store_true", default=None, help="Enable per-event debug logging")
    parser.add_argument("-i", "--interval", type=float, default=None, help="Flush interval in seconds (default: 10)")
    parser.add_argument("-u", "--user", default=None, help="InfluxDB user")
    parser.add_argument("-p", "--password", default=None, help="InfluxDB password")
    parser.add_argument("-d", "--database", default=None, help="InfluxDB database")
    parser.add_argument("--host", default=None, help="InfluxDB URL (default: http://localhost:8086)")
    parser.add_argument("--config", default=None, help="Path to a YAML configuration file")
    parser.add_argument("--log-file", default=None, help="Also log to this rotating file")
    parser.add_argument(
        "--tag",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Extra tag added to every point (repeatable)",
    )
    parser.add_argument(
        "--continue-after-summary",
        action="store_true",
        default=None,
        help="Keep reading after a summary (several runs piped through one process)",
    )
    parser.add_argument(
        "--no-reset-on-summary",
        action="store_true",
        default=None,
        help="Accumulate counters across runs instead of resetting them",
    )
    return parser.parse_args(argv)


def _parse_tags(values: List[str]) -> Dict[str, str]:
    tags: Dict[str, str] = {}
    for raw in values:
        key, sep, value = raw.partition("=")
        if not sep or not key.strip():
            raise ConfigError(f"Invalid --tag '{raw}', expected KEY=VALUE")
        tags[key.strip()] = value.strip()
    return tags


def build_config(args: argparse.Namespace) -> ExporterConfig:
    """Layer CLI flags over the file/env configuration and validate."""

    cfg = load_config(Path(args.config).expanduser() if args.config else None)
    influx = replace(
        cfg.influx,
        host=args.host or cfg.influx.host,
        database=args.database or cfg.influx.database,
        user=args.user or cfg.influx.user,
        password=args.password or cfg.influx.password,
    )
    tags = dict(cfg.tags)
    tags.update(_parse_tags(args.tag))
    cfg = replace(
        cfg,
        influx=influx,
        tags=tags,
        dry_run=cfg.dry_run if args.dry_run is None else True,
        verbose=cfg.verbose if args.verbose is None else True,
        interval_seconds=cfg.interval_seconds if args.interval is None else args.interval,
        continue_after_summary=cfg.continue_after_summary if args.continue_after_summary is None else True,
        reset_on_summary=cfg.reset_on_summary if args.no_reset_on_summary is None else False,
        log_file=Path(args.log_file).expanduser() if args.log_file else cfg.log_file,
    )
    if cfg.verbose:
        cfg = replace(cfg, log_level="DEBUG")
    return cfg.validate()


def build_store(cfg: ExporterConfig, stdout: Optional[TextIO] = None) -> TimeseriesStore:
    """Create the sink; the InfluxDB store must answer a ping before the run starts."""

    if cfg.dry_run:
        return DryRunTimeseriesStore(stream=stdout)
    store = InfluxDbTimeseriesStore(
        host=cfg.influx.host,
        database=cfg.influx.database,
        user=cfg.influx.user,
        password=cfg.influx.password,
        timeout_seconds=cfg.influx.timeout_seconds,
    )
    store.ping()
    return store


def _install_signal_handlers(scheduler: BatchScheduler, logger: logging.Logger) -> Dict[int, object]:
    """Route SIGINT/SIGTERM to ``request_stop``; return the handlers they replaced."""

    previous: Dict[int, object] = {}
    if threading.current_thread() is not threading.main_thread():
        return previous

    def _trigger(signame: str) -> None:
        logger.info("Received %s, draining...", signame)
        scheduler.request_stop(f"received {signame}")

    for sig_name in ("SIGINT", "SIGTERM"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        previous[sig] = signal.signal(sig, lambda *_, s=sig_name: _trigger(s))
    return previous


def _restore_signal_handlers(previous: Dict[int, object]) -> None:
    for sig, handler in previous.items():
        if handler is not None:
            signal.signal(sig, handler)  # type: ignore[arg-type]


def run(
    argv: Optional[List[str]] = None,
    source: Optional[LineSource] = None,
    stdout: Optional[TextIO] = None,
    store: Optional[TimeseriesStore] = None,
) -> int:
    """Run the exporter and return the process exit code."""

    args = parse_args(argv)
    try:
        cfg = build_config(args)
    except ConfigError as exc:
        print(f"restic-metrics: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    logger = setup_logging(cfg.log_level, cfg.log_file)
    if store is None:
        try:
            store = build_store(cfg, stdout=stdout)
        except SinkError as exc:
            logger.error("Cannot start: %s", exc)
            return EXIT_SINK_UNREACHABLE

    scheduler = BatchScheduler(
        source=source if source is not None else sys.stdin.buffer,
        aggregator=Aggregator(max_errors=cfg.max_errors, reset_on_summary=cfg.reset_on_summary),
        builder=PointBuilder(host=cfg.host_tag, extra_tags=cfg.tags),
        store=store,
        interval_seconds=cfg.interval_seconds,
        queue_size=cfg.queue_size,
        continue_after_summary=cfg.continue_after_summary,
        verbose=cfg.verbose,
    )
    previous = _install_signal_handlers(scheduler, logger)
    try:
        outcome = scheduler.run()
    finally:
        _restore_signal_handlers(previous)
    if outcome == RunOutcome.INPUT_ERROR:
        logger.error("Input stream failed; exiting with %d", EXIT_INPUT_ERROR)
    return _OUTCOME_EXIT_CODES[outcome]


def main(argv: Optional[List[str]] = None) -> None:
    raise SystemExit(run(argv))


if __name__ == "__main__":
    main()
