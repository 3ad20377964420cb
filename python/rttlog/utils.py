"""Duration parsing and formatting helpers shared by the CLI and the core."""

from __future__ import annotations

import re
from typing import Union

NANOS_PER_SECOND = 1_000_000_000
NANOS_PER_MILLI = 1_000_000

_UNIT_SECONDS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}

_COMPONENT = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(h|ms|m|s|us|µs|ns)")


def parse_duration(text: Union[str, float, int]) -> float:
    """Parse ``"2s"``, ``"80ms"``, ``"1m30s"`` or a bare number of seconds."""
    if isinstance(text, (int, float)):
        return float(text)

    value = text.strip()
    if not value:
        raise ValueError("empty duration")

    try:
        return float(value)
    except ValueError:
        pass

    sign = 1.0
    if value[0] in "+-":
        sign = -1.0 if value[0] == "-" else 1.0
        value = value[1:]

    total = 0.0
    position = 0
    for match in _COMPONENT.finditer(value):
        if match.start() != position:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        position = match.end()

    if position == 0 or position != len(value):
        raise ValueError(f"invalid duration: {text!r}")
    return sign * total


def _decimal(nanos: int, unit: int, width: int) -> str:
    whole, frac = divmod(nanos, unit)
    if not frac:
        return str(whole)
    return f"{whole}.{frac:0{width}d}".rstrip("0")


def format_interval(seconds: float) -> str:
    """Render a window length, e.g. ``10s``, ``1m30.5s``, ``500ms`` or ``500µs``."""
    nanos = seconds_to_nanos(seconds)
    if nanos <= 0:
        return "0s"
    if nanos < 1_000:
        return f"{nanos}ns"
    if nanos < NANOS_PER_MILLI:
        return f"{_decimal(nanos, 1_000, 3)}µs"
    if nanos < NANOS_PER_SECOND:
        return f"{_decimal(nanos, NANOS_PER_MILLI, 6)}ms"

    whole, frac = divmod(nanos, NANOS_PER_SECOND)
    hours, rest = divmod(whole, 3600)
    minutes, secs = divmod(rest, 60)
    secs_text = _decimal(secs * NANOS_PER_SECOND + frac, NANOS_PER_SECOND, 9)
    if hours:
        return f"{hours}h{minutes}m{secs_text}s"
    if minutes:
        return f"{minutes}m{secs_text}s"
    return f"{secs_text}s"


def format_ms(nanos: int) -> str:
    return f"{nanos / NANOS_PER_MILLI:.1f}ms"


def format_rtt(nanos: int) -> str:
    return f"{nanos / NANOS_PER_MILLI:.3f}ms"


def seconds_to_nanos(seconds: float) -> int:
    return int(round(seconds * NANOS_PER_SECOND))


__all__ = [
    "NANOS_PER_SECOND",
    "NANOS_PER_MILLI",
    "parse_duration",
    "format_interval",
    "format_ms",
    "format_rtt",
    "seconds_to_nanos",
]
