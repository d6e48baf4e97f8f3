"""
Integration tests for the run controller.

Each test drives a complete Idle -> Ramping -> Draining -> Completed cycle
against a mock transport with sub-second durations and a short tick.
"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from prometheus_client.parser import text_string_to_metric_families

from config import RunOptions, config_from_dict
from errors import TargetNotReadyError
from loadgen import RequestSample
from loadtest import EXIT_OK, EXIT_THRESHOLDS_FAILED, exit_code_for
from runner import RunController, RunPhase, RunResult, RunState, run_load_test

pytestmark = pytest.mark.integration


def _config(target_url: str, **overrides):
    payload = {
        "url": target_url,
        "vus": 5,
        "duration": "500ms",
        "sleep": "10ms",
        "tick": "50ms",
        "gracefulStop": "2s",
        "thresholds": {"http_req_duration": ["p(95) < 100"]},
    }
    payload.update(overrides)
    return config_from_dict(payload)


def _run(config, handler, client_factory, **kwargs) -> RunResult:
    async def _main() -> RunResult:
        async with client_factory(handler) as client:
            controller = RunController(config, client=client, **kwargs)
            return await controller.run()

    return asyncio.run(_main())


def test_run_state_only_allows_forward_transitions():
    state = RunState()

    with pytest.raises(RuntimeError):
        state.transition(RunPhase.COMPLETED)
    state.transition(RunPhase.RAMPING)
    state.transition(RunPhase.DRAINING)
    with pytest.raises(RuntimeError):
        state.transition(RunPhase.RAMPING)
    state.transition(RunPhase.COMPLETED)
    assert state.phase is RunPhase.COMPLETED


def test_fast_target_passes_thresholds(client_factory, ok_handler, target_url):
    """Test that flat VUs with fast 200s pass p(95) < 100 and exit 0."""
    result = _run(_config(target_url), ok_handler, client_factory)

    assert result.state.phase is RunPhase.COMPLETED
    assert result.state.max_vus == 5
    assert result.state.forced_stops == 0
    assert result.aggregator.total_requests > 0
    assert result.aggregator.success_ratio() == 1.0
    assert result.passed
    assert exit_code_for(result) == EXIT_OK
    assert result.summary["passed"] is True


def test_slow_tail_fails_thresholds(client_factory, target_url):
    """Test that 10% of requests at 200ms fail p(95) < 100 with a nonzero exit."""
    counter = {"n": 0}

    async def _handler(request: httpx.Request) -> httpx.Response:
        index = counter["n"]
        counter["n"] += 1
        if index % 10 == 0:
            await asyncio.sleep(0.2)
        return httpx.Response(200)

    result = _run(_config(target_url), _handler, client_factory)

    [threshold] = result.threshold_results
    assert not threshold.passed
    assert threshold.observed_value > 100.0
    assert exit_code_for(result) == EXIT_THRESHOLDS_FAILED


def test_active_vus_track_the_ramp_each_tick(client_factory, ok_handler, target_url):
    """Test that after every reconcile the active VU count equals the target."""
    config = _config(target_url, vus=None, duration=None, stages=[{"duration": "400ms", "target": 20}])

    result = _run(config, ok_handler, client_factory)

    history = result.state.history
    assert len(history) >= 4
    assert all(snapshot.active == snapshot.target for snapshot in history)
    targets = [snapshot.target for snapshot in history]
    assert targets == sorted(targets)
    assert result.state.max_vus >= 10


def test_ramp_down_retires_vus_without_cancelling_them(client_factory, ok_handler, target_url):
    config = _config(
        target_url,
        vus=None,
        duration=None,
        stages=[{"duration": "0s", "target": 10}, {"duration": "300ms", "target": 10}, {"duration": "300ms", "target": 0}],
    )

    result = _run(config, ok_handler, client_factory)

    assert result.state.max_vus == 10
    assert result.state.history[-1].active < 10
    assert result.state.forced_stops == 0


def test_timeouts_are_failed_samples_not_crashes(client_factory, target_url):
    counter = {"n": 0}

    def _handler(request: httpx.Request) -> httpx.Response:
        counter["n"] += 1
        if counter["n"] % 4 == 0:
            raise httpx.ReadTimeout("timed out", request=request)
        return httpx.Response(200)

    result = _run(_config(target_url), _handler, client_factory)

    assert result.state.phase is RunPhase.COMPLETED
    assert result.aggregator.timeout_requests > 0
    assert result.aggregator.success_ratio() < 1.0
    assert result.summary["timeout_requests"] == result.aggregator.timeout_requests


def test_stuck_vus_are_force_stopped_after_grace(client_factory, ok_handler, target_url):
    """Test that a VU exceeding the drain grace is cancelled and reported."""
    config = _config(target_url, vus=2, duration="100ms", gracefulStop="100ms")

    async def _stuck(vu_id: int, index: int) -> RequestSample:
        await asyncio.sleep(10.0)
        return RequestSample(vu_id, index, 0, 10000.0, 200)

    result = _run(config, ok_handler, client_factory, iteration=_stuck)

    assert result.state.phase is RunPhase.COMPLETED
    assert result.state.forced_stops == 2
    assert result.state.abnormal_termination
    assert result.summary["abnormal_termination"] is True
    assert result.state.elapsed_s < 5.0


def test_request_stop_interrupts_the_ramp(client_factory, ok_handler, target_url):
    config = _config(target_url, duration="30s")

    async def _main() -> RunResult:
        async with client_factory(ok_handler) as client:
            controller = RunController(config, client=client)
            asyncio.get_running_loop().call_later(0.2, controller.request_stop)
            return await controller.run()

    result = asyncio.run(_main())

    assert result.state.interrupted
    assert result.state.phase is RunPhase.COMPLETED
    assert result.state.elapsed_s < 5.0


def test_stop_before_run_spawns_no_vus(client_factory, ok_handler, target_url):
    """Test that a stop requested before ramping never starts a VU."""
    config = _config(target_url, vus=50, duration="30s")

    async def _main() -> RunResult:
        async with client_factory(ok_handler) as client:
            controller = RunController(config, client=client)
            controller.request_stop()
            return await controller.run()

    result = asyncio.run(_main())

    assert result.state.interrupted
    assert result.state.phase is RunPhase.COMPLETED
    assert result.state.max_vus == 0
    assert result.state.history == []
    assert result.aggregator.total_requests == 0


def test_stop_during_readiness_wait_ends_the_run(client_factory, target_url):
    requests_seen: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request.url.path)
        return httpx.Response(503)

    config = _config(target_url, healthUrl="http://target.test/health", readyTimeout="60s")

    async def _main() -> RunResult:
        async with client_factory(_handler) as client:
            controller = RunController(config, client=client)
            asyncio.get_running_loop().call_later(0.1, controller.request_stop)
            return await asyncio.wait_for(controller.run(), timeout=5.0)

    result = asyncio.run(_main())

    assert result.state.interrupted
    assert result.state.max_vus == 0
    assert set(requests_seen) == {"/health"}


def test_unready_target_aborts_before_any_vu(client_factory, target_url):
    requests_seen: list[str] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        requests_seen.append(request.url.path)
        return httpx.Response(503)

    config = _config(target_url, healthUrl="http://target.test/health", readyTimeout="200ms")

    async def _main() -> RunController:
        async with client_factory(_handler) as client:
            controller = RunController(config, client=client)
            with pytest.raises(TargetNotReadyError):
                await controller.run()
            return controller

    controller = asyncio.run(_main())

    assert controller.state.phase is RunPhase.IDLE
    assert set(requests_seen) == {"/health"}
    assert controller.aggregator.total_requests == 0


def test_run_load_test_writes_artifacts(tmp_path, client_factory, ok_handler, target_url):
    config = _config(target_url, duration="300ms")

    async def _main() -> RunResult:
        async with client_factory(ok_handler) as client:
            return await run_load_test(
                config,
                RunOptions(output_dir=tmp_path, run_name="files zip"),
                client=client,
            )

    result = asyncio.run(_main())

    output_dir = result.output_dir
    assert output_dir is not None and output_dir.parent == tmp_path
    assert output_dir.name.startswith("files_zip_")
    for name in ("config.json", "requests.jsonl", "vus.csv", "summary.json", "summary.md", "metrics.prom"):
        assert (output_dir / name).exists(), name

    request_lines = (output_dir / "requests.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(request_lines) == result.aggregator.total_requests
    assert json.loads(request_lines[0])["status_code"] == 200

    summary = json.loads((output_dir / "summary.json").read_text(encoding="utf-8"))
    assert summary["passed"] is True
    assert summary["thresholds"][0]["expression"] == "p(95) < 100"

    families = {
        family.name: family
        for family in text_string_to_metric_families((output_dir / "metrics.prom").read_text(encoding="utf-8"))
    }
    assert families["loadtest_run_passed"].samples[0].value == 1.0
    reqs = [s for s in families["loadtest_http_reqs"].samples if s.name == "loadtest_http_reqs_total"]
    assert reqs[0].value == result.aggregator.total_requests


def test_run_load_test_without_artifacts(tmp_path, client_factory, ok_handler, target_url):
    config = _config(target_url, duration="200ms")

    async def _main() -> RunResult:
        async with client_factory(ok_handler) as client:
            return await run_load_test(
                config,
                RunOptions(output_dir=tmp_path, write_artifacts=False),
                client=client,
            )

    result = asyncio.run(_main())

    assert result.output_dir is None
    assert list(tmp_path.iterdir()) == []
