from __future__ import annotations

from typing import Optional


class LoadTestError(Exception):
    """Base class for errors that abort a run before or instead of load generation."""


class ConfigError(LoadTestError):
    pass


class ThresholdParseError(ConfigError):
    def __init__(self, metric: str, expression: str, reason: str) -> None:
        self.metric = metric
        self.expression = expression
        self.reason = reason
        super().__init__(f"Invalid threshold for {metric}: '{expression}' ({reason})")


class TargetNotReadyError(LoadTestError):
    def __init__(self, url: str, waited_s: float, last_error: Optional[str] = None) -> None:
        self.url = url
        self.waited_s = waited_s
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Target {url} not ready after {waited_s:.1f}s{detail}")
