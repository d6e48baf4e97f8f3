from __future__ import annotations

import asyncio
import csv
import json
import logging
import signal
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import httpx

from clock import Clock, now_unix_ms
from config import RunOptions, TestConfig
from loadgen import IterationFn, RequestSample, http_get_iteration, vu_loop, wait_until_ready
from metrics import MetricsAggregator
from ramp import RampScheduler
from report import (
    compute_run_summary,
    write_prometheus_textfile,
    write_summary_json,
    write_summary_markdown,
)
from thresholds import ThresholdResult, all_passed, evaluate, parse_thresholds


logger = logging.getLogger(__name__)


class RunPhase(str, Enum):
    IDLE = "idle"
    RAMPING = "ramping"
    DRAINING = "draining"
    COMPLETED = "completed"


_TRANSITIONS = {
    RunPhase.IDLE: {RunPhase.RAMPING},
    RunPhase.RAMPING: {RunPhase.DRAINING},
    RunPhase.DRAINING: {RunPhase.COMPLETED},
    RunPhase.COMPLETED: set(),
}


@dataclass(frozen=True)
class VUSnapshot:
    elapsed_s: float
    target: int
    active: int
    stopping: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "elapsed_s": round(self.elapsed_s, 3),
            "target": self.target,
            "active": self.active,
            "stopping": self.stopping,
        }


@dataclass
class RunState:
    phase: RunPhase = RunPhase.IDLE
    active_vus: int = 0
    max_vus: int = 0
    elapsed_s: float = 0.0
    forced_stops: int = 0
    interrupted: bool = False
    started_at_unix_ms: Optional[int] = None
    ended_at_unix_ms: Optional[int] = None
    history: list[VUSnapshot] = field(default_factory=list)

    def transition(self, phase: RunPhase) -> None:
        if phase not in _TRANSITIONS[self.phase]:
            raise RuntimeError(f"Invalid run phase transition {self.phase.value} -> {phase.value}")
        logger.info("Run phase %s -> %s", self.phase.value, phase.value)
        self.phase = phase

    @property
    def abnormal_termination(self) -> bool:
        return self.forced_stops > 0


@dataclass
class RunResult:
    config: TestConfig
    state: RunState
    aggregator: MetricsAggregator
    threshold_results: list[ThresholdResult]
    summary: dict[str, Any]
    output_dir: Optional[Path] = None

    @property
    def passed(self) -> bool:
        return all_passed(self.threshold_results)


class AsyncJSONLWriter:
    def __init__(self, output_path: Path) -> None:
        self.output_path = output_path
        self._file = output_path.open("w", encoding="utf-8", buffering=1)
        self._lock = asyncio.Lock()

    async def write(self, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=True)
        async with self._lock:
            self._file.write(line + "\n")

    def close(self) -> None:
        self._file.close()


@dataclass
class _VirtualUser:
    vu_id: int
    stop_event: asyncio.Event
    task: "asyncio.Task[int]"


async def _wait_for_workers(tasks: list[asyncio.Task[int]], timeout_s: float) -> int:
    """Wait for tasks to finish; cancel whatever is left after ``timeout_s``.

    Returns how many tasks had to be cancelled.
    """
    if not tasks:
        return 0
    done, pending = await asyncio.wait(tasks, timeout=max(0.0, timeout_s))
    if pending:
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    for task in done:
        if not task.cancelled() and task.exception() is not None:
            logger.warning("VU task ended with an error: %r", task.exception())
    return len(pending)


def _client_limits(peak_vus: int) -> httpx.Limits:
    max_connections = max(peak_vus, 64)
    return httpx.Limits(
        max_connections=max_connections,
        max_keepalive_connections=max(max_connections // 2, 32),
    )


class RunController:
    """Owns the lifecycle of one run: Idle -> Ramping -> Draining -> Completed."""

    def __init__(
        self,
        config: TestConfig,
        client: Optional[httpx.AsyncClient] = None,
        clock: Optional[Clock] = None,
        iteration: Optional[IterationFn] = None,
        request_writer: Optional[AsyncJSONLWriter] = None,
        aggregator: Optional[MetricsAggregator] = None,
    ) -> None:
        self.config = config
        # Parsed up front so a bad expression aborts before any VU exists.
        self.thresholds = parse_thresholds(config.thresholds)
        self.scheduler = RampScheduler.from_config(config)
        self.clock = clock or Clock()
        self.aggregator = aggregator or MetricsAggregator(expected_status=config.expected_status)
        self.state = RunState()
        self._client = client
        self._iteration = iteration
        self._request_writer = request_writer
        self._active: list[_VirtualUser] = []
        self._stopping: list[_VirtualUser] = []
        self._next_vu_id = 1
        self._stop_requested = asyncio.Event()

    def request_stop(self) -> None:
        if not self._stop_requested.is_set():
            logger.warning("Stop requested, draining VUs")
        self._stop_requested.set()

    async def _on_sample(self, sample: RequestSample) -> None:
        await self.aggregator.submit(sample)
        if self._request_writer is not None:
            await self._request_writer.write(sample.to_dict())

    def _spawn(self, iteration: IterationFn) -> None:
        vu_id = self._next_vu_id
        self._next_vu_id += 1
        stop_event = asyncio.Event()
        task = asyncio.create_task(
            vu_loop(
                vu_id=vu_id,
                stop_event=stop_event,
                iteration=iteration,
                sleep_s=self.config.sleep_s,
                on_sample=self._on_sample,
                on_iteration=self.aggregator.record_iteration,
            ),
            name=f"vu-{vu_id}",
        )
        self._active.append(_VirtualUser(vu_id, stop_event, task))

    def reconcile(self, target: int, iteration: IterationFn) -> None:
        """Spawn or stop VUs until the active count equals ``target``."""
        exited = [vu for vu in self._active if vu.task.done()]
        if exited:
            logger.warning("%d VU(s) exited unexpectedly", len(exited))
            self._active = [vu for vu in self._active if not vu.task.done()]
        self._stopping = [vu for vu in self._stopping if not vu.task.done()]

        before = len(self._active)
        while len(self._active) < target:
            self._spawn(iteration)
        while len(self._active) > target:
            # Newest VUs are retired first.
            vu = self._active.pop()
            vu.stop_event.set()
            self._stopping.append(vu)

        self.state.active_vus = len(self._active)
        self.state.max_vus = max(self.state.max_vus, self.state.active_vus)
        if self.state.active_vus != before:
            logger.info("VUs %d -> %d", before, self.state.active_vus)

    async def _ramp(self, iteration: IterationFn) -> None:
        total_s = self.scheduler.total_duration_s
        tick_s = self.config.tick_s
        tick = 0
        while True:
            if self._stop_requested.is_set():
                self.state.interrupted = True
                logger.warning("Run interrupted at %.1fs", self.clock.elapsed())
                break
            elapsed = self.clock.elapsed()
            if elapsed >= total_s:
                break
            target = self.scheduler.target_at(elapsed)
            self.reconcile(target, iteration)
            self.state.elapsed_s = elapsed
            self.state.history.append(
                VUSnapshot(elapsed, target, self.state.active_vus, len(self._stopping))
            )
            logger.debug("tick %d t=%.2fs target=%d active=%d", tick, elapsed, target, self.state.active_vus)

            tick += 1
            await self.clock.sleep_until(min(tick * tick_s, total_s), self._stop_requested)

    async def _drain(self) -> None:
        vus = self._active + self._stopping
        for vu in vus:
            vu.stop_event.set()
        self._active = []
        self._stopping = []
        self.state.active_vus = 0
        logger.info("Waiting up to %.1fs for %d VU(s) to finish", self.config.graceful_stop_s, len(vus))
        forced = await _wait_for_workers([vu.task for vu in vus], self.config.graceful_stop_s)
        self.state.forced_stops = forced
        if forced:
            logger.warning("%d VU(s) did not finish within the graceful stop and were cancelled", forced)

    async def run(self) -> RunResult:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(limits=_client_limits(self.scheduler.peak_vus))
        try:
            if self.config.health_url:
                await wait_until_ready(
                    client,
                    self.config.health_url,
                    timeout_s=self.config.ready_timeout_s,
                    stop_event=self._stop_requested,
                )
            iteration = self._iteration or http_get_iteration(
                client, self.config.url, self.config.timeout_s
            )

            self.clock.start()
            self.state.started_at_unix_ms = now_unix_ms()
            self.state.transition(RunPhase.RAMPING)
            try:
                await self._ramp(iteration)
            finally:
                self.state.transition(RunPhase.DRAINING)
                await self._drain()
            self.state.elapsed_s = self.clock.elapsed()
            self.state.ended_at_unix_ms = now_unix_ms()
            self.state.transition(RunPhase.COMPLETED)
        finally:
            if owns_client:
                await client.aclose()

        threshold_results = evaluate(self.thresholds, self.aggregator, elapsed_s=self.state.elapsed_s)
        summary = compute_run_summary(
            config=self.config,
            state=self.state,
            aggregator=self.aggregator,
            threshold_results=threshold_results,
        )
        return RunResult(
            config=self.config,
            state=self.state,
            aggregator=self.aggregator,
            threshold_results=threshold_results,
            summary=summary,
        )


def _ensure_output_dir(base_output_dir: Path, run_name: Optional[str]) -> Path:
    timestamp = datetime.now(timezone.utc).strftime("%Y%m%d_%H%M%S")
    normalized_run_name = (run_name or "run").strip().replace(" ", "_")
    output_dir = base_output_dir / f"{normalized_run_name}_{timestamp}"
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir


def _write_json(path: Path, payload: Any) -> None:
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _write_csv(path: Path, rows: list[dict[str, Any]]) -> None:
    if not rows:
        path.write_text("", encoding="utf-8")
        return
    fieldnames: list[str] = []
    for row in rows:
        for key in row.keys():
            if key not in fieldnames:
                fieldnames.append(key)
    with path.open("w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def _install_sigint(controller: RunController) -> bool:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.request_stop)
    except (NotImplementedError, RuntimeError):
        return False
    return True


async def run_load_test(
    config: TestConfig,
    options: Optional[RunOptions] = None,
    client: Optional[httpx.AsyncClient] = None,
    iteration: Optional[IterationFn] = None,
    handle_sigint: bool = False,
) -> RunResult:
    options = options or RunOptions()
    output_dir: Optional[Path] = None
    request_writer: Optional[AsyncJSONLWriter] = None
    if options.write_artifacts:
        output_dir = _ensure_output_dir(options.output_dir, options.run_name)
        resolved = config.to_dict()
        resolved["resolved_run_dir"] = str(output_dir)
        resolved["started_at_utc"] = datetime.now(timezone.utc).isoformat()
        _write_json(output_dir / "config.json", resolved)
        request_writer = AsyncJSONLWriter(output_dir / "requests.jsonl")

    controller = RunController(
        config,
        client=client,
        iteration=iteration,
        request_writer=request_writer,
    )
    sigint_installed = handle_sigint and _install_sigint(controller)
    try:
        result = await controller.run()
    finally:
        if sigint_installed:
            asyncio.get_running_loop().remove_signal_handler(signal.SIGINT)
        if request_writer is not None:
            request_writer.close()

    if output_dir is not None:
        _write_csv(output_dir / "vus.csv", [snapshot.to_dict() for snapshot in result.state.history])
        write_summary_json(output_dir / "summary.json", result.summary)
        write_summary_markdown(
            output_path=output_dir / "summary.md",
            run_name=options.run_name or "run",
            summary=result.summary,
        )
        write_prometheus_textfile(output_dir / "metrics.prom", result.summary)
        logger.info("Artifacts written to %s", output_dir)
        result.output_dir = output_dir
    return result
