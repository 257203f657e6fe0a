"""Shared fixtures for gateway tests.

This module provides pytest fixtures for:
- Test settings pointing at a fake backend
- A scriptable fake SSE channel for driving the controller
- An httpx MockTransport standing in for the backend message endpoint
"""

import asyncio
import io
from typing import Callable

import httpx
import pytest
import pytest_asyncio

from mcphub_gateway.config import Settings
from mcphub_gateway.errors import ConnectionOpenFailure
from mcphub_gateway.gateway import GatewayController
from mcphub_gateway.policy import ReconnectPolicy
from mcphub_gateway.protocol import DownstreamMessage, ReconnectRequested, SessionEstablished
from mcphub_gateway.session import Session


BASE_URL = "http://mcphub.test/api/mcp"


# ============================================================================
# Helpers
# ============================================================================

async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true, failing the test after timeout."""
    async def poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(poll(), timeout)


async def settle(rounds: int = 20) -> None:
    """Let pending tasks run for a few event-loop iterations."""
    for _ in range(rounds):
        await asyncio.sleep(0.001)


def sse_event(event: str, data: str) -> str:
    return f"event: {event}\ndata: {data}\n\n"


# ============================================================================
# Settings Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    """Settings pointing at a fake backend with a short request timeout."""
    return Settings(
        server_url=BASE_URL,
        request_timeout=5.0,
        log_level="DEBUG",
        log_format="text",
        log_module_levels={},
    )


# ============================================================================
# Fake Channel
# ============================================================================

class FakeChannel:
    """Stands in for SessionChannel; tests push SSE traffic through it."""

    def __init__(self, script: "ChannelScript", generation: int, publish):
        self.generation = generation
        self.session = Session()
        self.open_calls = 0
        self.close_calls = 0
        self._script = script
        self._publish = publish

    async def open(self, url: str) -> None:
        self.open_calls += 1
        if not self._script.next_outcome():
            raise ConnectionOpenFailure(url, "connection refused")

    async def close(self) -> None:
        self.close_calls += 1
        self.session.reset()

    # Simulated server traffic

    def handshake(self, token: str) -> None:
        self.session.establish(token)
        self._publish(SessionEstablished(generation=self.generation, token=token))

    def message(self, data: str) -> None:
        self._publish(DownstreamMessage(generation=self.generation, data=data))

    def request_reconnect(self) -> None:
        self._publish(ReconnectRequested(generation=self.generation, reason="server requested reconnect"))

    def drop(self) -> None:
        self.session.reset()
        self._publish(ReconnectRequested(generation=self.generation, reason="stream closed by server"))


class ChannelScript:
    """Records every channel the controller builds and scripts open() outcomes.

    ``outcomes`` is consumed one entry per open() call (True = success); once
    exhausted every further open succeeds.
    """

    def __init__(self, outcomes: list[bool] | None = None):
        self.outcomes = list(outcomes or [])
        self.channels: list[FakeChannel] = []

    def next_outcome(self) -> bool:
        if self.outcomes:
            return self.outcomes.pop(0)
        return True

    def factory(self, client, generation, publish) -> FakeChannel:
        channel = FakeChannel(self, generation, publish)
        self.channels.append(channel)
        return channel

    @property
    def current(self) -> FakeChannel:
        return self.channels[-1]


@pytest.fixture
def channel_script():
    return ChannelScript()


# ============================================================================
# Backend Message Endpoint
# ============================================================================

class FakeBackend:
    """Records upstream POSTs and answers with scripted statuses."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.statuses: list[int] = []
        self.errors: list[Exception | None] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        status = self.statuses.pop(0) if self.statuses else 202
        return httpx.Response(status, text="Accepted" if status < 400 else "backend error")

    @property
    def bodies(self) -> list[str]:
        return [r.content.decode() for r in self.requests]

    @property
    def tokens(self) -> list[str]:
        return [r.url.params.get("sessionId") for r in self.requests]


@pytest.fixture
def backend():
    return FakeBackend()


@pytest_asyncio.fixture
async def http_client(backend):
    async with httpx.AsyncClient(transport=httpx.MockTransport(backend.handler)) as client:
        yield client


# ============================================================================
# Controller Fixtures
# ============================================================================

@pytest.fixture
def output():
    return io.StringIO()


@pytest.fixture
def make_gateway(test_settings, http_client, channel_script, output):
    """Build a controller wired to the fake channel and backend.

    Reconnect delay is zero so reconnect sequences run immediately.
    """
    def _make(delay: float = 0.0, max_attempts: int = 3) -> GatewayController:
        return GatewayController(
            test_settings,
            output=output,
            client=http_client,
            policy=ReconnectPolicy(max_attempts=max_attempts, delay=delay),
            channel_factory=channel_script.factory,
        )

    return _make


@pytest_asyncio.fixture
async def running_gateway(make_gateway):
    """A connected controller with its control loop running."""
    gateway = make_gateway()
    await gateway.connect()
    run_task = asyncio.create_task(gateway.run())

    yield gateway, run_task

    await gateway.shutdown()
    if not run_task.done():
        await asyncio.wait_for(run_task, 1.0)
