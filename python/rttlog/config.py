"""Runtime configuration for the latency monitor."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from .runner import RunnerOptions

DEFAULT_TARGETS = "1.1.1.1,8.8.8.8"


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


def parse_targets(csv: str) -> List[str]:
    return [part.strip() for part in csv.split(",") if part.strip()]


@dataclass
class Config:
    targets: List[str] = field(default_factory=lambda: parse_targets(DEFAULT_TARGETS))
    interval: float = 2.0
    timeout: float = 1.0
    summary_every: float = 10.0
    quiet: bool = False
    spike_threshold: float = 0.0

    def validate(self) -> None:
        if not self.targets:
            raise ConfigError("no targets provided")
        if self.interval <= 0:
            raise ConfigError("interval must be > 0")
        if self.timeout <= 0:
            raise ConfigError("timeout must be > 0")
        if self.summary_every <= 0:
            raise ConfigError("summary must be > 0")
        if self.spike_threshold < 0:
            raise ConfigError("spike threshold must be >= 0")

    def runner_options(self) -> RunnerOptions:
        return RunnerOptions(
            summary_every=self.summary_every,
            quiet=self.quiet,
            spike_threshold=self.spike_threshold,
        )


__all__ = ["Config", "ConfigError", "DEFAULT_TARGETS", "parse_targets"]
