"""
Tests for the command-line front end: option merging and exit status.
"""

from __future__ import annotations

import httpx
import pytest

import loadtest
import runner
from config import Stage
from loadtest import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_TARGET_NOT_READY,
    EXIT_THRESHOLDS_FAILED,
    build_parser,
    config_from_args,
    main,
)


def _mocked_run_load_test(handler):
    real_run_load_test = runner.run_load_test

    async def _fake(config, options, handle_sigint=False):
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await real_run_load_test(config, options, client=client)

    return _fake


@pytest.mark.unit
def test_cli_flags_override_scenario_file(scenarios_dir):
    args = build_parser().parse_args(
        ["--config", str(scenarios_dir / "files.json"), "--vus", "5", "--duration", "2s", "--sleep", "10ms"]
    )

    config = config_from_args(args)

    assert config.stages == ()
    assert (config.vus, config.duration_s, config.sleep_s) == (5, 2.0, 0.01)
    assert config.thresholds == {"http_req_duration": ("p(99) < 500",)}


@pytest.mark.unit
def test_cli_only_configuration(target_url):
    args = build_parser().parse_args(
        [
            "--url",
            target_url,
            "--stage",
            "30s:10000",
            "--stage",
            "10s:0",
            "--threshold",
            "p(95) < 250",
            "--threshold",
            "http_req_failed=rate < 0.01",
        ]
    )

    config = config_from_args(args)

    assert config.stages == (Stage(30.0, 10000), Stage(10.0, 0))
    assert config.thresholds == {
        "http_req_duration": ("p(95) < 250",),
        "http_req_failed": ("rate < 0.01",),
    }


@pytest.mark.unit
def test_conflicting_modes_exit_with_config_error(target_url, capsys):
    code = main(["--url", target_url, "--vus", "5", "--duration", "1s", "--stage", "1s:5", "--no-artifacts"])

    assert code == EXIT_CONFIG_ERROR
    assert "Configuration error" in capsys.readouterr().err


@pytest.mark.unit
def test_bad_threshold_exits_before_running(monkeypatch, target_url):
    def _must_not_run(*args, **kwargs):
        raise AssertionError("run started")

    monkeypatch.setattr(loadtest, "run_load_test", _must_not_run)

    code = main(["--url", target_url, "--vus", "1", "--duration", "1s", "--threshold", "p(95) lt 100"])

    assert code == EXIT_CONFIG_ERROR


@pytest.mark.integration
def test_passing_run_exits_zero(monkeypatch, ok_handler, target_url, capsys):
    monkeypatch.setattr(loadtest, "run_load_test", _mocked_run_load_test(ok_handler))

    code = main(
        [
            "--url",
            target_url,
            "--vus",
            "2",
            "--duration",
            "300ms",
            "--sleep",
            "10ms",
            "--tick",
            "50ms",
            "--threshold",
            "p(95) < 100",
            "--no-artifacts",
        ]
    )

    assert code == EXIT_OK
    assert "PASS  http_req_duration: p(95) < 100" in capsys.readouterr().out


@pytest.mark.integration
def test_failing_threshold_exits_nonzero(monkeypatch, ok_handler, target_url, capsys):
    monkeypatch.setattr(loadtest, "run_load_test", _mocked_run_load_test(ok_handler))

    code = main(
        [
            "--url",
            target_url,
            "--vus",
            "1",
            "--duration",
            "200ms",
            "--sleep",
            "10ms",
            "--tick",
            "50ms",
            "--threshold",
            "http_reqs=count > 1000000",
            "--no-artifacts",
        ]
    )

    assert code == EXIT_THRESHOLDS_FAILED
    assert "FAIL  http_reqs: count > 1000000" in capsys.readouterr().out


@pytest.mark.integration
def test_unready_target_exits_with_dedicated_code(monkeypatch, target_url):
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503)

    monkeypatch.setattr(loadtest, "run_load_test", _mocked_run_load_test(_handler))

    code = main(
        [
            "--url",
            target_url,
            "--vus",
            "1",
            "--duration",
            "1s",
            "--health-url",
            "http://target.test/health",
            "--ready-timeout",
            "100ms",
            "--no-artifacts",
        ]
    )

    assert code == EXIT_TARGET_NOT_READY
