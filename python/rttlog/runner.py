"""Per-target probe loops feeding a single statistics consumer."""

from __future__ import annotations

import enum
import logging
import queue
import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Union

from .clock import Clock, SystemClock, Ticker
from .prober import ProbeError, ProbeResult, Prober
from .utils import format_rtt, seconds_to_nanos
from .window import StatsWindow

logger = logging.getLogger(__name__)

DEFAULT_SUMMARY_EVERY = 10.0
DEFAULT_QUEUE_SIZE = 4096


class RunnerError(RuntimeError):
    """Raised when the runner is driven through an invalid transition."""


class RunnerState(enum.Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class RunnerOptions:
    summary_every: float = DEFAULT_SUMMARY_EVERY
    quiet: bool = False
    spike_threshold: float = 0.0
    queue_size: int = DEFAULT_QUEUE_SIZE


class _Marker:
    __slots__ = ("name",)

    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"<{self.name}>"


_SUMMARY_TICK = _Marker("summary-tick")
_CLOSED = _Marker("closed")

_QueueItem = Union[ProbeResult, _Marker]


class Runner:
    """Run one probe thread per target and aggregate results on one consumer.

    Shutdown order matters: writers (probe workers and the summary timer) are
    cancelled and joined, then the queue is closed with a sentinel, the
    consumer drains it and emits final summaries, and only then are the
    prober's sockets released.
    """

    def __init__(
        self,
        prober: Prober,
        targets: Sequence[str],
        interval: float,
        options: Optional[RunnerOptions] = None,
        *,
        sink: Optional[logging.Logger] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("probe interval must be positive")

        self.prober = prober
        self.targets: List[str] = list(targets)
        self.interval = interval
        self.options = options or RunnerOptions()
        if self.options.summary_every <= 0:
            self.options = replace(self.options, summary_every=DEFAULT_SUMMARY_EVERY)
        self.sink = sink or logger
        self.clock: Clock = clock or SystemClock()

        self._spike_threshold_ns = seconds_to_nanos(self.options.spike_threshold)
        self._state = RunnerState.NOT_STARTED
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._results: "queue.Queue[_QueueItem]" = queue.Queue(
            maxsize=max(self.options.queue_size, 1)
        )
        self._writers: List[threading.Thread] = []
        self._consumer: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    @property
    def state(self) -> RunnerState:
        with self._lock:
            return self._state

    def is_running(self) -> bool:
        return self.state is RunnerState.RUNNING

    # ------------------------------------------------------------------
    def start(self) -> None:
        """Launch the consumer, the summary timer and one worker per target."""
        with self._lock:
            if self._state is not RunnerState.NOT_STARTED:
                raise RunnerError(f"runner already started (state={self._state.value})")
            self._state = RunnerState.RUNNING

            # Tickers are created here so ticks issued right after start() count.
            summary_ticker = self.clock.new_ticker(self.options.summary_every)
            worker_tickers = [
                (target, self.clock.new_ticker(self.interval)) for target in self.targets
            ]

            self._consumer = threading.Thread(
                target=self._consume, name="rttlog-consumer", daemon=True
            )
            self._consumer.start()

            summary = threading.Thread(
                target=self._pump_summaries,
                args=(summary_ticker,),
                name="rttlog-summary",
                daemon=True,
            )
            self._writers.append(summary)
            for target, ticker in worker_tickers:
                self._writers.append(
                    threading.Thread(
                        target=self._work,
                        args=(target, ticker),
                        name=f"rttlog-probe-{target}",
                        daemon=True,
                    )
                )
            for thread in self._writers:
                thread.start()

        logger.debug("Runner started with %d targets", len(self.targets))

    def stop(self) -> None:
        """Stop all loops and release sockets. A no-op unless running."""
        with self._lock:
            if self._state is not RunnerState.RUNNING:
                return
            self._state = RunnerState.STOPPED

        self._cancel.set()
        for thread in self._writers:
            thread.join()

        self._results.put(_CLOSED)
        if self._consumer is not None:
            self._consumer.join()

        try:
            self.prober.close()
        except (ProbeError, OSError):
            logger.warning("Failed to close prober sockets", exc_info=True)

        logger.debug("Runner stopped")

    # ------------------------------------------------------------------
    def _work(self, target: str, ticker: Ticker) -> None:
        try:
            seq = 1
            self._results.put(self._probe(target, seq))
            while ticker.wait(self._cancel):
                seq += 1
                self._results.put(self._probe(target, seq))
        finally:
            ticker.stop()

    def _probe(self, target: str, seq: int) -> ProbeResult:
        try:
            return self.prober.probe(target, seq)
        except Exception as exc:  # a misbehaving prober must not end the worker
            logger.exception("Prober raised for %s seq=%d", target, seq)
            return ProbeResult(target=target, seq=seq, error=exc)

    def _pump_summaries(self, ticker: Ticker) -> None:
        try:
            while ticker.wait(self._cancel):
                self._results.put(_SUMMARY_TICK)
        finally:
            ticker.stop()

    # ------------------------------------------------------------------
    def _consume(self) -> None:
        windows: Dict[str, StatsWindow] = {target: StatsWindow() for target in self.targets}

        while True:
            item = self._results.get()
            if item is _CLOSED:
                self._emit_summaries(windows, reset=False)
                return
            if item is _SUMMARY_TICK:
                self._emit_summaries(windows, reset=True)
                continue
            self._handle_result(windows, item)

    def _handle_result(self, windows: Dict[str, StatsWindow], result: ProbeResult) -> None:
        window = windows.get(result.target)
        if window is None:
            window = windows[result.target] = StatsWindow()
        window.add(result)

        if result.error is not None:
            self.sink.warning("Probe to %s failed: %s", result.target, result.error)
            return

        if (
            self._spike_threshold_ns > 0
            and result.ok
            and result.rtt_ns >= self._spike_threshold_ns
        ):
            self.sink.warning(
                "[spike] %s (%s): seq=%d time=%s",
                result.target,
                result.ip,
                result.seq,
                format_rtt(result.rtt_ns),
            )

        if not self.options.quiet:
            self.sink.info(
                "Probe to %s (%s): seq=%d time=%s",
                result.target,
                result.ip,
                result.seq,
                format_rtt(result.rtt_ns),
            )

    def _emit_summaries(self, windows: Dict[str, StatsWindow], *, reset: bool) -> None:
        for target, window in windows.items():
            self.sink.info(window.summary_line(target, self.options.summary_every))
            if reset:
                window.reset()


__all__ = ["Runner", "RunnerError", "RunnerOptions", "RunnerState"]
