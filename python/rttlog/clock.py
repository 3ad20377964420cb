"""Timer sources for the probe and summary loops."""

from __future__ import annotations

import math
import threading
import time
from typing import Protocol


class Ticker(Protocol):
    def wait(self, cancel: threading.Event) -> bool:  # pragma: no cover - protocol definition
        """Block until the next tick. Returns False once ``cancel`` is set."""
        ...

    def stop(self) -> None:  # pragma: no cover - protocol definition
        ...


class Clock(Protocol):
    def new_ticker(self, interval: float) -> Ticker:  # pragma: no cover - protocol definition
        ...


class SystemTicker:
    """Fixed-rate ticker on the monotonic clock.

    Ticks that elapse while the caller is busy are dropped rather than
    delivered in a burst.
    """

    def __init__(self, interval: float) -> None:
        if interval <= 0:
            raise ValueError("ticker interval must be positive")
        self.interval = interval
        self._next = time.monotonic() + interval
        self._stopped = threading.Event()

    def wait(self, cancel: threading.Event) -> bool:
        remaining = self._next - time.monotonic()
        if remaining > 0 and cancel.wait(remaining):
            return False
        if cancel.is_set() or self._stopped.is_set():
            return False

        missed = math.floor((time.monotonic() - self._next) / self.interval)
        self._next += self.interval * (max(missed, 0) + 1)
        return True

    def stop(self) -> None:
        self._stopped.set()


class SystemClock:
    def new_ticker(self, interval: float) -> SystemTicker:
        return SystemTicker(interval)


__all__ = ["Clock", "Ticker", "SystemClock", "SystemTicker"]
