"""
Shared fixtures for the load-test driver tests.

HTTP traffic never leaves the process: clients are built on
``httpx.MockTransport`` with a handler supplied by each test, so latency,
status codes and transport failures are fully scripted.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

import httpx
import pytest

from loadgen import RequestSample

TARGET_URL = "http://target.test/files/aces.vromfs.bin/gamedata/weapons/rocketguns"


@pytest.fixture
def target_url() -> str:
    return TARGET_URL


@pytest.fixture
def scenarios_dir() -> Path:
    return Path(__file__).resolve().parent.parent / "scenarios"


@pytest.fixture
def client_factory() -> Callable[..., httpx.AsyncClient]:
    """Build an ``AsyncClient`` whose requests are answered by ``handler``.

    Must be called inside a running event loop and closed by the caller.
    """

    def _factory(handler) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return _factory


@pytest.fixture
def ok_handler():
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"blk")

    return _handler


@pytest.fixture
def sample_factory() -> Callable[..., RequestSample]:
    def _factory(
        latency_ms: float,
        status_code: int = 200,
        error: Optional[str] = None,
        error_kind: Optional[str] = None,
        vu_id: int = 1,
        iteration: int = 0,
    ) -> RequestSample:
        return RequestSample(
            vu_id=vu_id,
            iteration=iteration,
            timestamp_start_unix_ms=0,
            latency_ms=latency_ms,
            status_code=status_code,
            error=error,
            error_kind=error_kind,
        )

    return _factory
