#!/usr/bin/env python3
"""MCPHub stdio gateway.

Lets a local MCP client that speaks line-delimited JSON-RPC over stdio talk to
an MCPHub server that speaks MCP over SSE.

Usage:
    python -m mcphub_gateway

    MCPHUB_SERVER_URL=http://localhost:8080/api/mcp mcphub-gateway

The gateway:
- reads JSON-RPC envelopes from stdin and POSTs each one to {base}/message
- streams server messages from {base}/sse and writes them to stdout
- writes diagnostics to stderr only

Exit status is 0 after SIGINT/SIGTERM and 1 when the server cannot be reached
at startup or stays unreachable after repeated reconnects.
"""

import asyncio
import logging
import signal
import sys
from typing import BinaryIO

from .config import get_settings
from .errors import ConnectionOpenFailure, ReconnectionExhausted
from .gateway import GatewayController
from .logging_config import configure_logging

logger = logging.getLogger(__name__)

# Upper bound on a single stdin line (one batch of envelopes)
STDIN_LINE_LIMIT = 16 * 1024 * 1024
STDIN_READ_SIZE = 64 * 1024


async def pump_stdin(gateway: GatewayController, stream: BinaryIO | None = None) -> None:
    """Feed newline-terminated lines from stdin to the gateway until EOF.

    A line longer than STDIN_LINE_LIMIT is dropped up to its terminating
    newline; reading resumes with the next line.
    """
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    protocol = asyncio.StreamReaderProtocol(reader)
    await loop.connect_read_pipe(lambda: protocol, stream or sys.stdin.buffer)

    buffer = b""
    discarding = False
    while True:
        chunk = await reader.read(STDIN_READ_SIZE)
        if not chunk:
            if buffer and not discarding:
                gateway.relay_input(buffer)
            # EOF is not a shutdown trigger; the gateway keeps relaying downstream
            logger.info("stdin closed")
            return

        buffer += chunk
        while True:
            end = buffer.find(b"\n")
            if end == -1:
                break
            line, buffer = buffer[:end + 1], buffer[end + 1:]
            if discarding:
                discarding = False
                continue
            gateway.relay_input(line)

        if len(buffer) > STDIN_LINE_LIMIT:
            if not discarding:
                logger.error("Dropping stdin line longer than %d bytes", STDIN_LINE_LIMIT)
            buffer = b""
            discarding = True


def _log_stdin_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("stdin reader failed, local input is no longer relayed", exc_info=error)


async def serve() -> int:
    """Run the gateway until shutdown; returns the process exit status."""
    settings = get_settings()
    logger.info("Starting MCPHub Gateway...")
    logger.info("Using MCP Server URL: %s", settings.server_url)

    gateway = GatewayController(settings, output=sys.stdout)

    try:
        await gateway.connect()
    except ConnectionOpenFailure as e:
        logger.error("Fatal error: %s", e)
        await gateway.shutdown()
        return 1

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(_on_signal(gateway)))

    stdin_task = asyncio.create_task(pump_stdin(gateway))
    stdin_task.add_done_callback(_log_stdin_failure)
    logger.info("MCPHub Gateway is running")

    try:
        await gateway.run()
    except ReconnectionExhausted as e:
        logger.error("Fatal error: %s", e)
        return 1
    finally:
        stdin_task.cancel()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
        await gateway.shutdown()
    return 0


async def _on_signal(gateway: GatewayController) -> None:
    logger.info("Shutting down MCPHub Gateway...")
    await gateway.shutdown()


def main() -> None:
    settings = get_settings()
    configure_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        module_levels=settings.log_module_levels,
    )
    sys.exit(asyncio.run(serve()))


if __name__ == "__main__":
    main()
