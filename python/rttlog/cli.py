"""Command-line entry point for continuous ICMP latency logging."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List, Optional

from .clock import Clock
from .config import DEFAULT_TARGETS, Config, ConfigError, parse_targets
from .prober import ICMPProber, Prober
from .runner import Runner, RunnerError
from .utils import format_interval, parse_duration

logger = logging.getLogger(__name__)

LOG_FORMAT = "[rttlog] %(asctime)s %(message)s"


def _duration(text: str) -> float:
    try:
        return parse_duration(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Continuously measure ICMP round-trip latency to a set of targets.",
    )
    parser.add_argument(
        "--targets",
        default=DEFAULT_TARGETS,
        help=f"Comma-separated hostnames or IP addresses (default: {DEFAULT_TARGETS}).",
    )
    parser.add_argument(
        "--interval",
        type=_duration,
        default=2.0,
        metavar="DURATION",
        help="Probe interval per target, e.g. 2s or 500ms (default: 2s).",
    )
    parser.add_argument(
        "--timeout",
        type=_duration,
        default=1.0,
        metavar="DURATION",
        help="Per-probe reply timeout (default: 1s).",
    )
    parser.add_argument(
        "--summary",
        type=_duration,
        default=10.0,
        metavar="DURATION",
        help="Summary window length, e.g. 10s or 1m (default: 10s).",
    )
    parser.add_argument(
        "--quiet",
        action="store_true",
        help="Only print summaries, failures and spikes.",
    )
    parser.add_argument(
        "--spike",
        type=_duration,
        default=0.0,
        metavar="DURATION",
        help="Log probes at or above this RTT as spikes, e.g. 80ms (default: 0, disabled).",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default="INFO",
        help="Log level for diagnostic output.",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> Config:
    config = Config(
        targets=parse_targets(args.targets),
        interval=args.interval,
        timeout=args.timeout,
        summary_every=args.summary,
        quiet=args.quiet,
        spike_threshold=args.spike,
    )
    config.validate()
    return config


def serve(
    config: Config,
    *,
    stop_event: threading.Event,
    prober: Optional[Prober] = None,
    clock: Optional[Clock] = None,
    sink: Optional[logging.Logger] = None,
) -> int:
    """Run probes until ``stop_event`` is set, then shut down in order."""
    out = sink or logger
    runner = Runner(
        prober or ICMPProber(config.timeout),
        config.targets,
        config.interval,
        config.runner_options(),
        sink=out,
        clock=clock,
    )

    try:
        runner.start()
    except RunnerError:
        logger.exception("Failed to start runner")
        return 1

    out.info(
        "running. targets=%s interval=%s timeout=%s summary=%s quiet=%s spike=%s "
        "(Ctrl+C to stop)",
        ",".join(config.targets),
        format_interval(config.interval),
        format_interval(config.timeout),
        format_interval(config.summary_every),
        config.quiet,
        format_interval(config.spike_threshold),
    )

    try:
        # Short waits keep the main thread responsive to signal handlers.
        while not stop_event.wait(0.5):
            pass
    finally:
        out.info("stopping...")
        runner.stop()
        out.info("bye")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level), format=LOG_FORMAT)

    try:
        config = config_from_args(args)
    except ConfigError as exc:
        parser.error(str(exc))

    stop_event = threading.Event()

    def _request_stop(signum, frame) -> None:  # pragma: no cover - signal delivery
        logger.debug("Received signal %d", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    return serve(config, stop_event=stop_event)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
