"""Gateway controller: session lifecycle, reconnection and relay ordering.

Everything that changes gateway state happens in ``run()``, which consumes a
single queue of events published by the channel, the drain task, the reconnect
task and the local input pump. States:

    CONNECTING    stream open (or opening), waiting for the handshake
    READY         session token known; upstream envelopes are sent
    RECONNECTING  a replacement channel is being built; input is queued
    CLOSED        shut down

Upstream ordering is kept by a single drain task that sends the outbound queue
head to tail, awaiting each POST before the next. Downstream ordering is kept
by the channel's single reader task feeding the same event queue.
"""

import asyncio
import enum
import json
import logging
from contextlib import suppress
from typing import Any, Callable, TextIO

import httpx

from .channel import SessionChannel
from .config import Settings
from .errors import ReconnectionExhausted
from .logging_config import bind_session_id
from .outbound import DeliveryResult, OutboundQueue, UpstreamSender, split_envelopes
from .policy import ReconnectPolicy
from .protocol import (
    ChannelOpened,
    ChannelOpenFailed,
    DownstreamMessage,
    GatewayEvent,
    InputReceived,
    ReconnectRequested,
    SessionEstablished,
    ShutdownRequested,
)

logger = logging.getLogger(__name__)

ChannelFactory = Callable[[httpx.AsyncClient, int, Callable[[GatewayEvent], None]], SessionChannel]


class GatewayState(enum.Enum):
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class GatewayController:
    """Bridges local stdio traffic to an MCP server speaking SSE + POST."""

    def __init__(
        self,
        settings: Settings,
        output: TextIO,
        client: httpx.AsyncClient | None = None,
        policy: ReconnectPolicy | None = None,
        channel_factory: ChannelFactory | None = None,
    ):
        self._settings = settings
        self._output = output
        self._client = client or httpx.AsyncClient(timeout=settings.request_timeout)
        self._policy = policy or ReconnectPolicy()
        self._channel_factory = channel_factory or self._default_channel
        self._sender = UpstreamSender(self._client, settings.message_url, timeout=settings.request_timeout)

        self._events: asyncio.Queue[GatewayEvent] = asyncio.Queue()
        self._outbound = OutboundQueue()
        self._state = GatewayState.CONNECTING
        self._generation = 0
        self._channel: SessionChannel | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._drain_task: asyncio.Task | None = None
        self._last_message: Any = None

    def _default_channel(self, client, generation, publish) -> SessionChannel:
        return SessionChannel(client, generation, publish, timeout=self._settings.request_timeout)

    @property
    def state(self) -> GatewayState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return (
            self._state is GatewayState.READY
            and self._channel is not None
            and self._channel.session.ready
        )

    @property
    def reconnect_attempts(self) -> int:
        return self._policy.attempts

    @property
    def pending(self) -> int:
        """Number of envelopes waiting in the outbound queue."""
        return len(self._outbound)

    @property
    def last_message(self) -> Any:
        return self._last_message

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the first channel.

        Raises ConnectionOpenFailure if the stream cannot be opened; at startup
        that is fatal and is not retried.
        """
        self._generation += 1
        channel = self._channel_factory(self._client, self._generation, self._publish)
        self._channel = channel
        await channel.open(self._settings.sse_url)
        self._policy.reset()

    def relay_input(self, chunk: bytes | str) -> None:
        """Accept one chunk of local input; never blocks."""
        envelopes = split_envelopes(chunk)
        if envelopes:
            self._publish(InputReceived(envelopes=envelopes))

    async def run(self) -> None:
        """Consume gateway events until shutdown.

        Raises ReconnectionExhausted once the backend has stayed unreachable
        for every allowed reconnect attempt.
        """
        while True:
            event = await self._events.get()
            if isinstance(event, ShutdownRequested):
                return
            if self._state is GatewayState.CLOSED:
                continue
            self._handle(event)

    async def shutdown(self) -> None:
        """Cancel pending work and close the channel. Safe to call repeatedly."""
        if self._state is GatewayState.CLOSED:
            return
        logger.info("Starting cleanup...")
        self._state = GatewayState.CLOSED

        tasks = [t for t in (self._reconnect_task, self._drain_task) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._reconnect_task = None
        self._drain_task = None

        if self._channel is not None:
            await self._channel.close()
        await self._client.aclose()
        bind_session_id(None)

        self._events.put_nowait(ShutdownRequested())
        logger.info("Cleanup completed")

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def _publish(self, event: GatewayEvent) -> None:
        self._events.put_nowait(event)

    def _handle(self, event: GatewayEvent) -> None:
        if isinstance(event, InputReceived):
            self._outbound.extend(event.envelopes)
            if not self.is_ready:
                logger.debug("Session not ready, queued %d envelope(s)", len(event.envelopes))
            self._kick_drain()
        elif isinstance(event, DownstreamMessage):
            self._forward_downstream(event.data)
        elif isinstance(event, SessionEstablished):
            self._on_session_established(event)
        elif isinstance(event, ReconnectRequested):
            self._on_reconnect_requested(event)
        elif isinstance(event, ChannelOpened):
            self._on_channel_opened(event)
        elif isinstance(event, ChannelOpenFailed):
            self._on_channel_open_failed(event)

    def _is_stale(self, generation: int) -> bool:
        return generation != self._generation

    def _forward_downstream(self, data: str) -> None:
        # Payloads go out as received apart from joining multi-line JSON
        try:
            self._last_message = json.loads(data)
        except json.JSONDecodeError as e:
            logger.warning("Error parsing message: %s", e)
            logger.debug("Raw message data: %s", data)
            self._last_message = data
        else:
            if "\n" in data:
                # Multi-line `data:` fields; raw newlines in JSON are only
                # whitespace between tokens, so the payload keeps one line
                logger.debug("Joining multi-line message onto one output line")
                data = data.replace("\r", "").replace("\n", " ")

        if "\n" in data:
            logger.warning("Forwarding non-JSON message that spans %d lines", data.count("\n") + 1)

        self._output.write(data + "\n")
        self._output.flush()

    def _on_session_established(self, event: SessionEstablished) -> None:
        if self._is_stale(event.generation):
            logger.debug("Ignoring handshake from stale channel %d", event.generation)
            return
        self._state = GatewayState.READY
        bind_session_id(event.token)
        if self._outbound:
            logger.info("Session ready, draining %d queued envelope(s)", len(self._outbound))
        self._kick_drain()

    def _on_reconnect_requested(self, event: ReconnectRequested) -> None:
        if self._is_stale(event.generation):
            logger.debug("Ignoring reconnect trigger from stale channel %d: %s", event.generation, event.reason)
            return
        if self._reconnect_task is not None:
            logger.debug("Reconnect already in progress, ignoring: %s", event.reason)
            return
        logger.warning("Reconnecting: %s", event.reason)
        self._begin_reconnect()

    def _on_channel_opened(self, event: ChannelOpened) -> None:
        if self._is_stale(event.generation):
            return
        self._reconnect_task = None
        self._policy.reset()
        self._state = GatewayState.CONNECTING
        logger.info("Reconnected, waiting for session handshake")

    def _on_channel_open_failed(self, event: ChannelOpenFailed) -> None:
        if self._is_stale(event.generation):
            return
        self._reconnect_task = None
        logger.error("Reconnection failed: %s", event.reason)
        self._log_last_message("Last parsed message before failure")
        self._begin_reconnect()

    # ------------------------------------------------------------------
    # Reconnection
    # ------------------------------------------------------------------

    def _begin_reconnect(self) -> None:
        if self._policy.exhausted:
            logger.error("Max reconnection attempts (%d) reached, exiting...", self._policy.max_attempts)
            self._log_last_message("Last parsed message")
            raise ReconnectionExhausted(self._policy.attempts, self._last_message)

        attempt = self._policy.record_attempt()
        logger.info("Attempting to reconnect (%d/%d)...", attempt, self._policy.max_attempts)

        self._state = GatewayState.RECONNECTING
        bind_session_id(None)
        if self._channel is not None:
            self._channel.session.reset()

        # Events still in flight from the current channel become stale
        self._generation += 1
        self._reconnect_task = asyncio.create_task(self._reconnect(self._generation))

    async def _reconnect(self, generation: int) -> None:
        await asyncio.sleep(self._policy.delay)

        # An in-flight POST completes before its channel is discarded
        if self._drain_task is not None:
            # Waits without re-raising whatever the drain task ended with
            await asyncio.wait({self._drain_task})

        if self._channel is not None:
            await self._channel.close()

        channel = self._channel_factory(self._client, generation, self._publish)
        self._channel = channel
        try:
            await channel.open(self._settings.sse_url)
        except Exception as e:
            self._publish(ChannelOpenFailed(generation=generation, reason=str(e)))
            return
        self._publish(ChannelOpened(generation=generation))

    def _log_last_message(self, label: str) -> None:
        logger.error("%s: %s", label, json.dumps(self._last_message, indent=2))

    # ------------------------------------------------------------------
    # Upstream drain
    # ------------------------------------------------------------------

    def _kick_drain(self) -> None:
        if not self.is_ready or not self._outbound:
            return
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
            self._drain_task.add_done_callback(_log_drain_failure)

    async def _drain(self) -> None:
        while self.is_ready and self._outbound:
            channel = self._channel
            envelope = self._outbound.pop()
            result = await self._sender.send(channel.session.token, envelope)
            if result is DeliveryResult.UNAVAILABLE:
                # Stop sending on this session; the rest waits for the next one
                channel.session.reset()
                self._publish(
                    ReconnectRequested(generation=channel.generation, reason="message endpoint unavailable")
                )
                return


def _log_drain_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("Upstream drain stopped unexpectedly", exc_info=task.exception())
