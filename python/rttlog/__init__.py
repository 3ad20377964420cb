"""Continuous ICMP round-trip latency logging with rolling summaries."""

from .clock import Clock, SystemClock, Ticker
from .config import Config, ConfigError, parse_targets
from .icmp import EchoCodecError, build_echo_request, parse_echo_reply, process_identifier
from .prober import (
    ICMPProber,
    ProbeError,
    ProbeResult,
    ProbeTimeout,
    Prober,
    ResolutionError,
    ResolvedAddress,
    TransportError,
    resolve_target,
)
from .runner import Runner, RunnerError, RunnerOptions, RunnerState
from .window import StatsWindow, nearest_rank_index

__all__ = [
    "Clock",
    "SystemClock",
    "Ticker",
    "Config",
    "ConfigError",
    "parse_targets",
    "EchoCodecError",
    "build_echo_request",
    "parse_echo_reply",
    "process_identifier",
    "ICMPProber",
    "ProbeError",
    "ProbeResult",
    "ProbeTimeout",
    "Prober",
    "ResolutionError",
    "ResolvedAddress",
    "TransportError",
    "resolve_target",
    "Runner",
    "RunnerError",
    "RunnerOptions",
    "RunnerState",
    "StatsWindow",
    "nearest_rank_index",
]
