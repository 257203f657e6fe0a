"""Downstream path: one Server-Sent-Events connection to the backend.

The backend speaks MCP over SSE:
- `endpoint` event: data names the message endpoint, e.g.
  ``/message?sessionId=abc123``; this is the session handshake
- `message` event: one JSON-RPC envelope for the local process
- `reconnect` event: the server asks the client to reconnect

A channel never acts on lifecycle changes itself. It publishes events to the
gateway controller, which decides what to do about them.
"""

import asyncio
import logging
from contextlib import AsyncExitStack, suppress
from typing import Callable

import httpx
from httpx_sse import EventSource, ServerSentEvent, SSEError, aconnect_sse

from .errors import ConnectionOpenFailure
from .logging_config import bind_session_id
from .protocol import DownstreamMessage, GatewayEvent, ReconnectRequested, SessionEstablished
from .session import Session, parse_session_id

logger = logging.getLogger(__name__)


class SessionChannel:
    """Owns one SSE stream, the session it carries and its readiness."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        generation: int,
        publish: Callable[[GatewayEvent], None],
        timeout: float = 60.0,
    ):
        self.generation = generation
        self.session = Session()
        self._client = client
        self._publish = publish
        # The stream idles between events, so only its read timeout is unbounded
        self._timeout = httpx.Timeout(timeout, read=None)
        self._stack: AsyncExitStack | None = None
        self._reader: asyncio.Task | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self._reader is not None and not self._closed

    async def open(self, url: str) -> None:
        """Open the stream; returns once the server has accepted it.

        Raises ConnectionOpenFailure on transport errors, non-2xx statuses or a
        response that is not an event stream.
        """
        logger.info("Connecting to SSE endpoint: %s", url)

        async with AsyncExitStack() as stack:
            try:
                event_source = await stack.enter_async_context(
                    aconnect_sse(
                        self._client,
                        "GET",
                        url,
                        headers={"Accept": "text/event-stream"},
                        timeout=self._timeout,
                    )
                )
                event_source.response.raise_for_status()
            except httpx.HTTPStatusError as e:
                raise ConnectionOpenFailure(url, f"HTTP {e.response.status_code}") from e
            except httpx.HTTPError as e:
                raise ConnectionOpenFailure(url, repr(e)) from e

            content_type = event_source.response.headers.get("content-type", "")
            if "text/event-stream" not in content_type:
                raise ConnectionOpenFailure(url, f"unexpected content type {content_type!r}")

            self._stack = stack.pop_all()

        self._reader = asyncio.create_task(self._read_events(event_source))
        logger.info("--- SSE backend connected (generation %d)", self.generation)

    async def close(self) -> None:
        """Stop reading and release the stream. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self.session.reset()

        if self._reader is not None:
            self._reader.cancel()
            with suppress(asyncio.CancelledError):
                await self._reader
        if self._stack is not None:
            await self._stack.aclose()
            self._stack = None
        logger.debug("Closed SSE channel (generation %d)", self.generation)

    async def _read_events(self, event_source: EventSource) -> None:
        reason = "stream closed by server"
        try:
            async for sse in event_source.aiter_sse():
                self._dispatch(sse)
        except (httpx.HTTPError, SSEError) as e:
            logger.error("--- SSE backend error: %r", e)
            reason = f"stream error: {e!r}"

        self.session.reset()
        logger.warning("EventSource connection lost: %s", reason)
        self._publish(ReconnectRequested(generation=self.generation, reason=reason))

    def _dispatch(self, sse: ServerSentEvent) -> None:
        if sse.event == "endpoint":
            self._handle_handshake(sse.data)
        elif sse.event == "message":
            self._publish(DownstreamMessage(generation=self.generation, data=sse.data))
        elif sse.event == "reconnect":
            logger.info("Server requested reconnect")
            self._publish(ReconnectRequested(generation=self.generation, reason="server requested reconnect"))
        else:
            logger.debug("Ignoring SSE event %r", sse.event)

    def _handle_handshake(self, data: str) -> None:
        token = parse_session_id(data)
        if token is None:
            # No re-parse is attempted; input keeps queueing until a new session
            logger.warning("Handshake event carried no session token: %r", data)
            return

        self.session.establish(token)
        # The reader task has its own context; later channel logs carry the token
        bind_session_id(token)
        logger.info("Session established: %s", token)
        self._publish(SessionEstablished(generation=self.generation, token=token))
