"""Shared test fixtures for the loadstage test suite."""

from __future__ import annotations

import asyncio
import logging
import socket
import threading
from typing import TYPE_CHECKING

import pytest
from aiohttp import web

from loadstage.engine.executor import RequestExecutor, RequestResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterator


# =============================================================================
# Pytest configuration
# =============================================================================


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Auto-apply markers based on test directory structure."""
    for item in items:
        test_path = str(item.fspath)
        if "/unit/" in test_path:
            item.add_marker(pytest.mark.unit)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
        elif "/e2e/" in test_path:
            item.add_marker(pytest.mark.e2e)


@pytest.fixture(autouse=True)
def _reset_loadstage_logger() -> Iterator[None]:
    """Undo ``setup_logging`` so caplog sees records in every test."""
    yield
    logger = logging.getLogger("loadstage")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)
    logger.propagate = True


# =============================================================================
# Network utilities
# =============================================================================


def _get_free_port() -> int:
    """Find an available port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


# =============================================================================
# Echo HTTP Server handlers
# =============================================================================


async def _echo_handler(request: web.Request) -> web.Response:
    """Echo back request details as JSON."""
    body = await request.read()
    return web.json_response(
        {
            "method": request.method,
            "path": str(request.path),
            "query": dict(request.query),
            "headers": dict(request.headers),
            "body": body.decode("utf-8", errors="replace"),
        },
        status=200,
    )


async def _status_handler(request: web.Request) -> web.Response:
    """Answer with the status code taken from the path (``/status/503``)."""
    status = int(request.match_info["code"])
    return web.Response(status=status, text=f"status {status}")


async def _delay_handler(request: web.Request) -> web.Response:
    """Respond after a configurable delay (query param: ?delay=0.5)."""
    delay = float(request.query.get("delay", "0.1"))
    await asyncio.sleep(delay)
    return web.json_response({"delayed_by": delay})


async def _empty_handler(request: web.Request) -> web.Response:
    """Return 200 with an empty body."""
    return web.Response(status=200, body=b"")


def _create_echo_app() -> web.Application:
    """Build the echo server app with all test routes."""
    app = web.Application()
    app.router.add_route("*", "/echo{path:.*}", _echo_handler)
    app.router.add_route("*", "/get", _echo_handler)
    app.router.add_route("*", "/post", _echo_handler)
    app.router.add_route("*", "/headers", _echo_handler)
    app.router.add_route("*", "/user-agent", _echo_handler)
    app.router.add_route("*", r"/status/{code:\d+}", _status_handler)
    app.router.add_get("/delay", _delay_handler)
    app.router.add_get("/empty", _empty_handler)
    return app


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
async def echo_server() -> AsyncIterator[str]:
    """Aiohttp echo server fixture.

    Returns the base URL (e.g., 'http://127.0.0.1:54321').
    """
    app = _create_echo_app()
    port = _get_free_port()
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, "127.0.0.1", port)
    await site.start()
    yield f"http://127.0.0.1:{port}"
    await runner.cleanup()


@pytest.fixture
def sync_echo_server() -> Iterator[str]:
    """Echo server running in a background thread for sync tests.

    Useful for CLI tests where ``asyncio.run`` blocks the main thread.
    """
    port = _get_free_port()
    started = threading.Event()
    loop_holder: list[asyncio.AbstractEventLoop] = []

    def _thread_target() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        app = _create_echo_app()
        runner = web.AppRunner(app)
        loop.run_until_complete(runner.setup())
        site = web.TCPSite(runner, "127.0.0.1", port)
        loop.run_until_complete(site.start())
        loop_holder.append(loop)
        started.set()
        loop.run_forever()
        loop.run_until_complete(runner.cleanup())
        loop.close()

    thread = threading.Thread(target=_thread_target, daemon=True)
    thread.start()
    started.wait(timeout=5.0)

    yield f"http://127.0.0.1:{port}"

    if loop_holder:
        loop_holder[0].call_soon_threadsafe(loop_holder[0].stop)
    thread.join(timeout=5.0)


@pytest.fixture
def closed_port_url() -> str:
    """Base URL of a localhost port nothing listens on."""
    return f"http://127.0.0.1:{_get_free_port()}"


# =============================================================================
# Manual clock
# =============================================================================


class ManualClock:
    """Clock that only moves when told to.

    ``sleep`` records the requested duration, advances time by it and
    yields to the event loop once, so code paced by think time runs at full
    speed under test.
    """

    def __init__(self, start: float = 100.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += max(seconds, 0.0)
        await asyncio.sleep(0)


@pytest.fixture
def manual_clock() -> ManualClock:
    """Return a fresh ManualClock starting at t=100s."""
    return ManualClock()


# =============================================================================
# Fake executor
# =============================================================================


class FakeExecutor(RequestExecutor):
    """In-memory executor answering every request with a canned response.

    Args:
        status: Status code for iteration requests.
        duration_ms: Reported request duration.
        body: Response body.
        readiness_status: Status code for URLs containing *readiness_path*.
        readiness_path: Path treated as the health check.
        delay: Real seconds each request takes, so VUs yield to the loop.
        error: Exception raised instead of answering, if set.
    """

    def __init__(
        self,
        *,
        status: int = 200,
        duration_ms: float = 50.0,
        body: bytes = b"ok",
        readiness_status: int = 200,
        readiness_path: str = "/status/200",
        delay: float = 0.005,
        error: Exception | None = None,
    ) -> None:
        super().__init__()
        self.status = status
        self.duration_ms = duration_ms
        self.body = body
        self.readiness_status = readiness_status
        self.readiness_path = readiness_path
        self.delay = delay
        self.error = error
        self.requests: list[str] = []
        self.closed = False

    async def close(self) -> None:
        self.closed = True

    async def _send(self, url: str, headers: dict[str, str], *, endpoint: str) -> RequestResult:
        self.requests.append(url)
        await asyncio.sleep(self.delay)
        if url.endswith(self.readiness_path) and endpoint == self.readiness_path:
            status = self.readiness_status
        else:
            if self.error is not None:
                raise self.error
            status = self.status
        return RequestResult(
            url=url,
            endpoint=endpoint,
            status_code=status,
            duration_ms=self.duration_ms,
            body=self.body,
        )


@pytest.fixture
def fake_executor_cls() -> type[FakeExecutor]:
    """Return the FakeExecutor class so tests can build configured instances."""
    return FakeExecutor
