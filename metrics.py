from __future__ import annotations

import asyncio
import math
import statistics
from typing import Optional

from loadgen import ERROR_TIMEOUT, RequestSample


HTTP_REQ_DURATION = "http_req_duration"
ITERATION_DURATION = "iteration_duration"
HTTP_REQ_FAILED = "http_req_failed"
CHECKS = "checks"
HTTP_REQS = "http_reqs"
ITERATIONS = "iterations"

KIND_TREND = "trend"
KIND_RATE = "rate"
KIND_COUNTER = "counter"

METRIC_KINDS = {
    HTTP_REQ_DURATION: KIND_TREND,
    ITERATION_DURATION: KIND_TREND,
    HTTP_REQ_FAILED: KIND_RATE,
    CHECKS: KIND_RATE,
    HTTP_REQS: KIND_COUNTER,
    ITERATIONS: KIND_COUNTER,
}


def _interpolate(ordered: list[float], pct: float) -> Optional[float]:
    if not ordered:
        return None
    if pct <= 0:
        return float(ordered[0])
    if pct >= 100:
        return float(ordered[-1])
    index = (len(ordered) - 1) * (pct / 100.0)
    low = math.floor(index)
    high = math.ceil(index)
    if low == high:
        return float(ordered[low])
    fraction = index - low
    return float((ordered[low] * (1.0 - fraction)) + (ordered[high] * fraction))


class MetricSeries:
    """Append-only series of float values with lazy sorting for quantiles."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._values: list[float] = []
        self._sorted: Optional[list[float]] = None

    def add(self, value: float) -> None:
        self._values.append(float(value))
        self._sorted = None

    def __len__(self) -> int:
        return len(self._values)

    @property
    def count(self) -> int:
        return len(self._values)

    def values(self) -> list[float]:
        return list(self._values)

    def _ordered(self) -> list[float]:
        if self._sorted is None:
            self._sorted = sorted(self._values)
        return self._sorted

    def quantile(self, pct: float) -> Optional[float]:
        return _interpolate(self._ordered(), pct)

    def mean(self) -> Optional[float]:
        if not self._values:
            return None
        return float(statistics.fmean(self._values))

    def minimum(self) -> Optional[float]:
        return self._ordered()[0] if self._values else None

    def maximum(self) -> Optional[float]:
        return self._ordered()[-1] if self._values else None

    def median(self) -> Optional[float]:
        return self.quantile(50.0)


class MetricsAggregator:
    """Collects request samples from every VU.

    ``submit`` is the only mutating entry point used by VUs and is serialized
    with an ``asyncio.Lock``. The query methods are synchronous and read the
    current state directly; they are meant to run on the same event loop.
    """

    def __init__(self, expected_status: int = 200) -> None:
        self.expected_status = expected_status
        self._series = {
            HTTP_REQ_DURATION: MetricSeries(HTTP_REQ_DURATION),
            ITERATION_DURATION: MetricSeries(ITERATION_DURATION),
        }
        self._lock = asyncio.Lock()
        self.total_requests = 0
        # checks: status == expected_status
        self.successful_requests = 0
        # http_req_failed: transport error or status outside 2xx/3xx
        self.failed_requests = 0
        self.timeout_requests = 0
        self.network_errors = 0
        self.iterations = 0
        self.status_counts: dict[int, int] = {}

    def is_success(self, sample: RequestSample) -> bool:
        return sample.error is None and sample.status_code == self.expected_status

    @staticmethod
    def is_failed_request(sample: RequestSample) -> bool:
        return sample.error is not None or not 200 <= sample.status_code < 400

    async def submit(self, sample: RequestSample) -> None:
        async with self._lock:
            self._series[HTTP_REQ_DURATION].add(sample.latency_ms)
            self.total_requests += 1
            self.status_counts[sample.status_code] = self.status_counts.get(sample.status_code, 0) + 1
            if self.is_success(sample):
                self.successful_requests += 1
            if self.is_failed_request(sample):
                self.failed_requests += 1
            if sample.error_kind == ERROR_TIMEOUT:
                self.timeout_requests += 1
            elif sample.error is not None:
                self.network_errors += 1

    async def record_iteration(self, duration_ms: float) -> None:
        async with self._lock:
            self.iterations += 1
            self._series[ITERATION_DURATION].add(duration_ms)

    def series(self, name: str = HTTP_REQ_DURATION) -> MetricSeries:
        try:
            return self._series[name]
        except KeyError:
            raise KeyError(f"{name} is not a trend metric") from None

    def quantile(self, pct: float, metric: str = HTTP_REQ_DURATION) -> Optional[float]:
        return self.series(metric).quantile(pct)

    def success_ratio(self) -> Optional[float]:
        if not self.total_requests:
            return None
        return self.successful_requests / self.total_requests

    def failure_ratio(self) -> Optional[float]:
        if not self.total_requests:
            return None
        return self.failed_requests / self.total_requests

    def count(self, metric: str) -> int:
        if metric == HTTP_REQS:
            return self.total_requests
        if metric == ITERATIONS:
            return self.iterations
        raise KeyError(f"{metric} is not a counter metric")

    def throughput_rps(self, elapsed_s: float) -> Optional[float]:
        if elapsed_s <= 0:
            return None
        return self.total_requests / elapsed_s

    def stat(
        self,
        metric: str,
        stat: str,
        arg: Optional[float] = None,
        elapsed_s: Optional[float] = None,
    ) -> Optional[float]:
        """Aggregate value for ``metric``; None when there is no data yet."""
        kind = METRIC_KINDS.get(metric)
        if kind is None:
            raise KeyError(f"Unknown metric: {metric}")

        if kind == KIND_TREND:
            series = self.series(metric)
            if stat == "p":
                return series.quantile(float(arg if arg is not None else 50.0))
            if stat == "avg":
                return series.mean()
            if stat == "min":
                return series.minimum()
            if stat == "max":
                return series.maximum()
            if stat == "med":
                return series.median()
        elif kind == KIND_RATE and stat == "rate":
            if metric == HTTP_REQ_FAILED:
                return self.failure_ratio()
            return self.success_ratio()
        elif kind == KIND_COUNTER:
            total = self.count(metric)
            if stat == "count":
                return float(total)
            if stat == "rate":
                if not elapsed_s or elapsed_s <= 0:
                    return None
                return total / elapsed_s
        raise KeyError(f"Unsupported stat {stat!r} for {kind} metric {metric}")
