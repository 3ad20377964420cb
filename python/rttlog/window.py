"""Per-target round-trip statistics over a non-overlapping time window."""

from __future__ import annotations

import math

import numpy as np

from .prober import ProbeResult
from .utils import format_interval, format_ms

P95 = 0.95
_INITIAL_CAPACITY = 1024


def nearest_rank_index(n: int, quantile: float = P95) -> int:
    """Index of the nearest-rank percentile in ``n`` ascending samples."""
    if n <= 0:
        raise ValueError("nearest_rank_index requires at least one sample")
    index = math.ceil(quantile * n) - 1
    return min(max(index, 0), n - 1)


class StatsWindow:
    """Sent/ok counters plus RTT samples accumulated since the last reset.

    Only the consumer thread touches a window, so it carries no lock. The
    sample buffer grows to the largest window seen and is reused after every
    reset.
    """

    __slots__ = ("sent", "ok", "min_ns", "max_ns", "_samples", "_count")

    def __init__(self, capacity: int = _INITIAL_CAPACITY) -> None:
        self.sent: int = 0
        self.ok: int = 0
        self.min_ns: int = 0
        self.max_ns: int = 0
        self._samples = np.empty(max(capacity, 1), dtype=np.int64)
        self._count: int = 0

    def add(self, result: ProbeResult) -> None:
        self.sent += 1
        if not result.ok or result.error is not None:
            return

        rtt = int(result.rtt_ns)
        self.ok += 1
        self._append(rtt)

        if self.ok == 1:
            self.min_ns = rtt
            self.max_ns = rtt
            return
        if rtt < self.min_ns:
            self.min_ns = rtt
        if rtt > self.max_ns:
            self.max_ns = rtt

    def reset(self) -> None:
        self.sent = 0
        self.ok = 0
        self.min_ns = 0
        self.max_ns = 0
        self._count = 0

    # ------------------------------------------------------------------
    @property
    def samples(self) -> np.ndarray:
        """Successful RTTs in arrival order (a view, not a copy)."""
        return self._samples[: self._count]

    @property
    def capacity(self) -> int:
        return int(self._samples.shape[0])

    @property
    def loss_percent(self) -> float:
        if self.sent == 0:
            return 0.0
        return (self.sent - self.ok) / self.sent * 100.0

    def average_ns(self) -> int:
        if self._count == 0:
            return 0
        return int(self.samples.sum()) // self._count

    def p95_ns(self) -> int:
        if self._count == 0:
            return 0
        ordered = np.sort(self.samples)
        return int(ordered[nearest_rank_index(self._count)])

    def summary_line(self, target: str, window: float) -> str:
        label = format_interval(window)
        if self.sent == 0:
            return f"[{label}] {target}: no samples"

        loss = self.loss_percent
        if self.ok == 0:
            return (
                f"[{label}] {target}: sent={self.sent} ok={self.ok} "
                f"loss={loss:.1f}% (no replies)"
            )

        return (
            f"[{label}] {target}: sent={self.sent} ok={self.ok} loss={loss:.1f}% "
            f"avg={format_ms(self.average_ns())} p95={format_ms(self.p95_ns())} "
            f"min={format_ms(self.min_ns)} max={format_ms(self.max_ns)}"
        )

    # ------------------------------------------------------------------
    def _append(self, rtt: int) -> None:
        if self._count == self._samples.shape[0]:
            grown = np.empty(self._samples.shape[0] * 2, dtype=np.int64)
            grown[: self._count] = self._samples[: self._count]
            self._samples = grown
        self._samples[self._count] = rtt
        self._count += 1


__all__ = ["StatsWindow", "nearest_rank_index", "P95"]
