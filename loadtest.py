from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Optional

from config import RunOptions, TestConfig, config_from_dict, merge_payload, read_config_payload
from errors import ConfigError, TargetNotReadyError
from report import format_console_summary
from runner import RunResult, run_load_test


EXIT_OK = 0
EXIT_TARGET_NOT_READY = 1
EXIT_CONFIG_ERROR = 2
EXIT_THRESHOLDS_FAILED = 99

DEFAULT_THRESHOLD_METRIC = "http_req_duration"

logger = logging.getLogger(__name__)


def _parse_threshold_arg(value: str) -> tuple[str, str]:
    metric, sep, expression = value.partition("=")
    if not sep:
        return DEFAULT_THRESHOLD_METRIC, value.strip()
    metric = metric.strip()
    expression = expression.strip()
    if not metric or not expression:
        raise argparse.ArgumentTypeError(
            f"Invalid threshold '{value}'. Expected <metric>=<expr> or <expr>."
        )
    return metric, expression


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Virtual-user load test for an HTTP endpoint with latency thresholds."
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="JSON scenario file with k6-style options (url, vus, duration, stages, sleep, thresholds).",
    )
    parser.add_argument("--url", default=None)
    parser.add_argument("--vus", type=int, default=None)
    parser.add_argument("--duration", default=None, help="e.g. 20s, 1m30s")
    parser.add_argument(
        "--stage",
        dest="stages",
        action="append",
        default=None,
        help="Ramp stage <duration>:<target>, repeatable, e.g. --stage 30s:10000",
    )
    parser.add_argument("--sleep", default=None, help="Pause after each iteration, e.g. 1s, 10ms")
    parser.add_argument(
        "--threshold",
        dest="thresholds",
        type=_parse_threshold_arg,
        action="append",
        default=None,
        help="Threshold <metric>=<expr> or <expr> for http_req_duration, e.g. 'p(95) < 250'",
    )
    parser.add_argument("--timeout", default=None, help="Per-request timeout (default 30s)")
    parser.add_argument("--graceful-stop", default=None, help="Drain grace period (default 30s)")
    parser.add_argument("--tick", default=None, help="Scheduler tick (default 1s)")
    parser.add_argument("--interpolation", choices=["linear", "step"], default=None)
    parser.add_argument("--health-url", default=None, help="Wait for this URL to return 200 before ramping")
    parser.add_argument("--ready-timeout", default=None)
    parser.add_argument("--expected-status", type=int, default=None)

    parser.add_argument("--output-dir", type=Path, default=Path("runs"))
    parser.add_argument("--run-name", default=None)
    parser.add_argument(
        "--artifacts",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Write config, per-request samples, and summaries under --output-dir",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


def _cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    thresholds: Optional[dict[str, list[str]]] = None
    if args.thresholds:
        thresholds = {}
        for metric, expression in args.thresholds:
            thresholds.setdefault(metric, []).append(expression)
    return {
        "url": args.url,
        "vus": args.vus,
        "duration": args.duration,
        "stages": args.stages,
        "sleep": args.sleep,
        "thresholds": thresholds,
        "timeout": args.timeout,
        "gracefulStop": args.graceful_stop,
        "tick": args.tick,
        "interpolation": args.interpolation,
        "healthUrl": args.health_url,
        "readyTimeout": args.ready_timeout,
        "expectedStatus": args.expected_status,
    }


def config_from_args(args: argparse.Namespace) -> TestConfig:
    base = read_config_payload(args.config) if args.config is not None else {}
    return config_from_dict(merge_payload(base, _cli_overrides(args)))


def exit_code_for(result: RunResult) -> int:
    return EXIT_OK if result.passed else EXIT_THRESHOLDS_FAILED


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level), format="%(asctime)s - %(levelname)s - %(message)s"
    )

    try:
        config = config_from_args(args)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    options = RunOptions(
        output_dir=args.output_dir,
        run_name=args.run_name,
        write_artifacts=bool(args.artifacts),
    )
    try:
        result = asyncio.run(run_load_test(config, options, handle_sigint=True))
    except TargetNotReadyError as exc:
        print(f"Target not ready: {exc}", file=sys.stderr)
        return EXIT_TARGET_NOT_READY

    print(format_console_summary(result.summary))
    if result.output_dir is not None:
        print(f"Run complete. Outputs written to: {result.output_dir}")
    for threshold in result.threshold_results:
        if not threshold.passed:
            logger.error(
                "Threshold failed: %s %s (observed %s)",
                threshold.metric,
                threshold.expression,
                threshold.observed_value,
            )
    return exit_code_for(result)


if __name__ == "__main__":
    sys.exit(main())
