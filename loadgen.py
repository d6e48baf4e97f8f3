from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from clock import now_unix_ms
from errors import TargetNotReadyError


logger = logging.getLogger(__name__)

ERROR_TIMEOUT = "timeout"
ERROR_NETWORK = "network"


@dataclass(frozen=True)
class RequestSample:
    vu_id: int
    iteration: int
    timestamp_start_unix_ms: int
    latency_ms: float
    status_code: int
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


IterationFn = Callable[[int, int], Awaitable[RequestSample]]
SampleSink = Callable[[RequestSample], Awaitable[None]]
IterationSink = Callable[[float], Awaitable[None]]


async def execute_request(
    client: httpx.AsyncClient,
    url: str,
    timeout_s: float,
    vu_id: int = 0,
    iteration: int = 0,
) -> RequestSample:
    """GET ``url`` once and describe the outcome. Network failures never raise."""
    start_unix_ms = now_unix_ms()
    started = time.perf_counter()
    status_code = 0
    error_text: Optional[str] = None
    error_kind: Optional[str] = None

    try:
        response = await client.get(url, timeout=timeout_s)
        status_code = int(response.status_code)
    except httpx.TimeoutException as exc:
        error_kind = ERROR_TIMEOUT
        error_text = str(exc) or f"request timed out after {timeout_s:g}s"
    except (httpx.HTTPError, OSError) as exc:
        error_kind = ERROR_NETWORK
        error_text = str(exc) or exc.__class__.__name__

    latency_ms = (time.perf_counter() - started) * 1000.0
    return RequestSample(
        vu_id=vu_id,
        iteration=iteration,
        timestamp_start_unix_ms=start_unix_ms,
        latency_ms=latency_ms,
        status_code=status_code,
        error=error_text,
        error_kind=error_kind,
    )


def http_get_iteration(client: httpx.AsyncClient, url: str, timeout_s: float) -> IterationFn:
    """Default iteration body: one GET to the target URL."""

    async def iteration(vu_id: int, iteration_index: int) -> RequestSample:
        return await execute_request(
            client=client,
            url=url,
            timeout_s=timeout_s,
            vu_id=vu_id,
            iteration=iteration_index,
        )

    return iteration


async def wait_until_ready(
    client: httpx.AsyncClient,
    url: str,
    timeout_s: float,
    poll_interval_s: float = 1.0,
    stop_event: Optional[asyncio.Event] = None,
) -> float:
    """Poll ``url`` until it answers 200. Returns the seconds waited.

    Setting ``stop_event`` abandons the wait early without raising.
    """
    started = time.monotonic()
    last_error: Optional[str] = None
    attempts = 0
    while True:
        if stop_event is not None and stop_event.is_set():
            waited = time.monotonic() - started
            logger.warning("Stopped while waiting for %s after %.1fs", url, waited)
            return waited
        attempts += 1
        try:
            response = await client.get(url, timeout=max(0.1, min(poll_interval_s * 5, timeout_s)))
            if response.status_code == 200:
                waited = time.monotonic() - started
                logger.info("Target ready at %s after %.1fs (%d probes)", url, waited, attempts)
                return waited
            last_error = f"HTTP {response.status_code}"
        except httpx.HTTPError as exc:
            last_error = str(exc) or exc.__class__.__name__

        waited = time.monotonic() - started
        if waited + poll_interval_s > timeout_s:
            raise TargetNotReadyError(url, waited, last_error)
        logger.debug("Target %s not ready (%s), retrying in %.1fs", url, last_error, poll_interval_s)
        if stop_event is None:
            await asyncio.sleep(poll_interval_s)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_s)
        except asyncio.TimeoutError:
            pass


async def vu_loop(
    vu_id: int,
    stop_event: asyncio.Event,
    iteration: IterationFn,
    sleep_s: float,
    on_sample: SampleSink,
    on_iteration: Optional[IterationSink] = None,
) -> int:
    """Run iterations until ``stop_event`` is set. Returns the iteration count.

    The stop signal is honoured between iterations and during the sleep, never
    while a request is in flight.
    """
    iteration_index = 0
    while not stop_event.is_set():
        started = time.perf_counter()
        try:
            sample = await iteration(vu_id, iteration_index)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.debug("VU %d iteration %d raised %r", vu_id, iteration_index, exc)
            sample = RequestSample(
                vu_id=vu_id,
                iteration=iteration_index,
                timestamp_start_unix_ms=now_unix_ms(),
                latency_ms=(time.perf_counter() - started) * 1000.0,
                status_code=0,
                error=str(exc) or exc.__class__.__name__,
                error_kind=ERROR_NETWORK,
            )
        iteration_index += 1
        await on_sample(sample)

        if sleep_s > 0:
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=sleep_s)
            except asyncio.TimeoutError:
                pass
        else:
            await asyncio.sleep(0)
        if on_iteration is not None:
            await on_iteration((time.perf_counter() - started) * 1000.0)
    return iteration_index
