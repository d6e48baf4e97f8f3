from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional, Sequence

from prometheus_client import CollectorRegistry, Counter, Gauge, write_to_textfile

from config import TestConfig
from metrics import HTTP_REQ_DURATION, ITERATION_DURATION, MetricsAggregator, MetricSeries
from thresholds import ThresholdResult, all_passed

if TYPE_CHECKING:
    from runner import RunState


REPORTED_PERCENTILES = (50.0, 90.0, 95.0, 99.0)


def _fmt(value: Optional[float], digits: int = 2) -> str:
    if value is None or math.isnan(value):
        return "-"
    return f"{value:.{digits}f}"


def _pct_key(pct: float) -> str:
    return f"p{pct:g}".replace(".", "_")


def _trend_summary(series: MetricSeries) -> dict[str, Optional[float]]:
    summary: dict[str, Optional[float]] = {
        "count": float(series.count),
        "avg": series.mean(),
        "min": series.minimum(),
        "med": series.median(),
        "max": series.maximum(),
    }
    for pct in REPORTED_PERCENTILES:
        summary[_pct_key(pct)] = series.quantile(pct)
    return summary


def compute_run_summary(
    *,
    config: TestConfig,
    state: RunState,
    aggregator: MetricsAggregator,
    threshold_results: Sequence[ThresholdResult],
) -> dict[str, Any]:
    return {
        "url": config.url,
        "mode": "stages" if config.is_staged else "flat",
        "phase": state.phase.value,
        "started_at_unix_ms": state.started_at_unix_ms,
        "ended_at_unix_ms": state.ended_at_unix_ms,
        "elapsed_s": state.elapsed_s,
        "interrupted": state.interrupted,
        "forced_stops": state.forced_stops,
        "abnormal_termination": state.abnormal_termination,
        "max_vus": state.max_vus,
        "total_requests": aggregator.total_requests,
        "successful_requests": aggregator.successful_requests,
        "failed_requests": aggregator.failed_requests,
        "timeout_requests": aggregator.timeout_requests,
        "network_errors": aggregator.network_errors,
        "success_ratio": aggregator.success_ratio(),
        "error_rate": aggregator.failure_ratio(),
        "throughput_rps": aggregator.throughput_rps(state.elapsed_s),
        "iterations": aggregator.iterations,
        "status_counts": {str(code): count for code, count in sorted(aggregator.status_counts.items())},
        HTTP_REQ_DURATION: _trend_summary(aggregator.series(HTTP_REQ_DURATION)),
        ITERATION_DURATION: _trend_summary(aggregator.series(ITERATION_DURATION)),
        "thresholds": [result.to_dict() for result in threshold_results],
        "passed": all_passed(threshold_results),
        "config": config.to_dict(),
    }


def format_console_summary(summary: dict[str, Any]) -> str:
    durations = summary[HTTP_REQ_DURATION]
    lines: list[str] = []
    lines.append("=" * 60)
    lines.append("LOAD TEST RESULTS")
    lines.append("=" * 60)
    lines.append(f"Target:              {summary['url']}")
    lines.append(f"Elapsed:             {_fmt(summary['elapsed_s'], 1)}s (max VUs {summary['max_vus']})")
    lines.append(f"Total Requests:      {summary['total_requests']}")
    lines.append(f"Iterations:          {summary['iterations']}")
    success_ratio = summary["success_ratio"]
    lines.append(
        f"Success Ratio:       {_fmt(success_ratio * 100.0 if success_ratio is not None else None)}%"
    )
    lines.append(f"Timeouts:            {summary['timeout_requests']}")
    lines.append(f"Network Errors:      {summary['network_errors']}")
    lines.append(f"Throughput:          {_fmt(summary['throughput_rps'])} requests/second")
    lines.append("")
    lines.append("http_req_duration (ms)")
    lines.append("-" * 30)
    lines.append(
        f"avg={_fmt(durations['avg'])} min={_fmt(durations['min'])} "
        f"med={_fmt(durations['med'])} max={_fmt(durations['max'])}"
    )
    lines.append(
        " ".join(f"p({pct:g})={_fmt(durations[_pct_key(pct)])}" for pct in REPORTED_PERCENTILES)
    )
    if summary["interrupted"]:
        lines.append("")
        lines.append("Run was interrupted before the configured duration elapsed.")
    if summary["abnormal_termination"]:
        lines.append("")
        lines.append(f"{summary['forced_stops']} VU(s) were force-stopped after the graceful stop period.")

    if summary["thresholds"]:
        lines.append("")
        lines.append("THRESHOLDS")
        lines.append("-" * 30)
        for result in summary["thresholds"]:
            verdict = "PASS" if result["passed"] else "FAIL"
            lines.append(
                f"{verdict}  {result['metric']}: {result['expression']} "
                f"(observed {_fmt(result['observed_value'])})"
            )
    lines.append("=" * 60)
    return "\n".join(lines)


def write_summary_json(output_path: Path, summary: dict[str, Any]) -> None:
    output_path.write_text(json.dumps(summary, indent=2), encoding="utf-8")


def write_summary_markdown(output_path: Path, run_name: str, summary: dict[str, Any]) -> None:
    generated_at = datetime.now(timezone.utc).isoformat()
    lines: list[str] = []
    lines.append(f"# Load Test Summary - {run_name}")
    lines.append("")
    lines.append(f"Generated at (UTC): `{generated_at}`")
    lines.append("")
    lines.append(f"Result: **{'PASS' if summary['passed'] else 'FAIL'}**")
    lines.append("")
    lines.append("## Configuration")
    lines.append("")
    lines.append("```json")
    lines.append(json.dumps(summary["config"], indent=2))
    lines.append("```")
    lines.append("")
    lines.append("## Requests")
    lines.append("")
    lines.append("| Requests | Iterations | Success % | Error % | Timeouts | RPS | Max VUs | Forced stops |")
    lines.append("|---:|---:|---:|---:|---:|---:|---:|---:|")
    success_ratio = summary["success_ratio"]
    error_rate = summary["error_rate"]
    lines.append(
        "| "
        f"{summary['total_requests']} | "
        f"{summary['iterations']} | "
        f"{_fmt(success_ratio * 100.0 if success_ratio is not None else None)} | "
        f"{_fmt(error_rate * 100.0 if error_rate is not None else None)} | "
        f"{summary['timeout_requests']} | "
        f"{_fmt(summary['throughput_rps'])} | "
        f"{summary['max_vus']} | "
        f"{summary['forced_stops']} |"
    )
    lines.append("")
    lines.append("## Latency (ms)")
    lines.append("")
    lines.append("| Metric | avg | min | med | max | p50 | p90 | p95 | p99 |")
    lines.append("|---|---:|---:|---:|---:|---:|---:|---:|---:|")
    for metric in (HTTP_REQ_DURATION, ITERATION_DURATION):
        stats = summary[metric]
        lines.append(
            f"| {metric} | "
            f"{_fmt(stats['avg'])} | "
            f"{_fmt(stats['min'])} | "
            f"{_fmt(stats['med'])} | "
            f"{_fmt(stats['max'])} | "
            + " | ".join(_fmt(stats[_pct_key(pct)]) for pct in REPORTED_PERCENTILES)
            + " |"
        )

    if summary["thresholds"]:
        lines.append("")
        lines.append("## Thresholds")
        lines.append("")
        lines.append("| Metric | Expression | Observed | Result |")
        lines.append("|---|---|---:|---|")
        for result in summary["thresholds"]:
            lines.append(
                f"| {result['metric']} | `{result['expression']}` | "
                f"{_fmt(result['observed_value'])} | {'PASS' if result['passed'] else 'FAIL'} |"
            )

    output_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def build_prometheus_registry(summary: dict[str, Any]) -> CollectorRegistry:
    registry = CollectorRegistry()

    requests = Counter(
        "loadtest_http_reqs", "HTTP requests issued during the run", registry=registry
    )
    requests.inc(summary["total_requests"])
    failed = Counter(
        "loadtest_http_req_failed", "Requests with a transport error or non 2xx/3xx status", registry=registry
    )
    failed.inc(summary["failed_requests"])
    iterations = Counter("loadtest_iterations", "Completed VU iterations", registry=registry)
    iterations.inc(summary["iterations"])

    duration = Gauge(
        "loadtest_http_req_duration_ms",
        "Request latency statistics in milliseconds",
        ["stat"],
        registry=registry,
    )
    for stat, value in summary[HTTP_REQ_DURATION].items():
        if stat != "count" and value is not None:
            duration.labels(stat=stat).set(value)

    if summary["success_ratio"] is not None:
        Gauge(
            "loadtest_checks_ratio", "Fraction of requests with the expected status", registry=registry
        ).set(summary["success_ratio"])
    Gauge("loadtest_vus_max", "Peak number of active VUs", registry=registry).set(summary["max_vus"])
    Gauge("loadtest_elapsed_seconds", "Wall time of the run", registry=registry).set(summary["elapsed_s"])

    threshold_gauge = Gauge(
        "loadtest_threshold_passed",
        "1 if the threshold passed, 0 otherwise",
        ["metric", "expression"],
        registry=registry,
    )
    for result in summary["thresholds"]:
        threshold_gauge.labels(metric=result["metric"], expression=result["expression"]).set(
            1 if result["passed"] else 0
        )
    Gauge("loadtest_run_passed", "1 if every threshold passed", registry=registry).set(
        1 if summary["passed"] else 0
    )
    return registry


def write_prometheus_textfile(output_path: Path, summary: dict[str, Any]) -> None:
    write_to_textfile(str(output_path), build_prometheus_registry(summary))
