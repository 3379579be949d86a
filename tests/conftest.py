"""Shared pytest fixtures for Seedream relay tests."""

from __future__ import annotations

import shutil
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from seedream_relay.api.main import create_app
from seedream_relay.core.config import RelayConfig

API_BASE = "https://api.replicate.com/v1"


class FakeUpstream:
    """Callable handler for ``httpx.MockTransport`` simulating Replicate.

    Routes are registered per ``(method, path)`` with a list of replies.
    Each request consumes the next reply; the last reply repeats.  A reply
    is ``(status, body)`` or a callable taking the request.  Requests to
    ``/uploads/...`` on any host answer ``uploads_status``.

    Attributes:
        requests: Every request received, in order.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[Any]] = {}
        self.uploads_status = 200

    def on(self, method: str, path: str, *replies: Any) -> FakeUpstream:
        self.routes[(method, path)] = list(replies)
        return self

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def __call__(self, request: httpx.Request):
        self.requests.append(request)

        if request.url.path.startswith("/uploads/"):
            return httpx.Response(self.uploads_status)

        replies = self.routes.get((request.method, request.url.path))
        if not replies:
            return httpx.Response(404, json={"detail": "Not found."})

        reply = replies.pop(0) if len(replies) > 1 else replies[0]
        if callable(reply):
            return reply(request)
        status, body = reply
        if isinstance(body, (dict, list)):
            return httpx.Response(status, json=body)
        return httpx.Response(status, text=body or "")


class SleepRecorder:
    """Stand-in for ``asyncio.sleep`` that records the requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def prediction(prediction_id: str = "p1", status: str = "starting", output: Any = None) -> dict:
    """Build an upstream prediction document."""
    return {
        "id": prediction_id,
        "status": status,
        "output": output,
        "urls": {
            "get": f"{API_BASE}/predictions/{prediction_id}",
            "web": f"https://replicate.com/p/{prediction_id}",
        },
    }


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> RelayConfig:
    """Create a relay configuration rooted in a temporary directory.

    Backoff is zeroed so retry paths run instantly.
    """
    static_dir = temp_dir / "public"
    static_dir.mkdir()
    (static_dir / "index.html").write_text("<!doctype html><title>Seedream Relay</title>")
    (static_dir / "app.js").write_text("console.log('relay');")

    return RelayConfig(
        _env_file=None,
        replicate_api_token="r8_test_token",
        api_base_url=API_BASE,
        upload_dir=temp_dir / "uploads",
        static_dir=static_dir,
        public_base_url=None,
        request_timeout_ms=5_000,
        max_retries=2,
        backoff_base_ms=0,
        backoff_cap_ms=0,
        verify_uploads=True,
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_client(upstream: FakeUpstream) -> Generator[Callable[[RelayConfig], TestClient], None, None]:
    """Factory building a running TestClient for a given configuration."""
    clients: list[TestClient] = []

    def _make(settings: RelayConfig) -> TestClient:
        client = TestClient(create_app(settings, transport=httpx.MockTransport(upstream)))
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def test_client(make_client, test_config: RelayConfig) -> TestClient:
    """TestClient for the relay with a mocked upstream."""
    return make_client(test_config)


@pytest.fixture
def prediction_doc() -> Callable[..., dict]:
    """Factory for upstream prediction documents."""
    return prediction
