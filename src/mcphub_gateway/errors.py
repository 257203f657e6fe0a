"""Exceptions raised by the gateway."""

from typing import Any


class GatewayError(Exception):
    """Base class for gateway failures."""


class ConnectionOpenFailure(GatewayError):
    """The downstream event stream could not be opened."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Could not open event stream at {url}: {reason}")
        self.url = url
        self.reason = reason


class ReconnectionExhausted(GatewayError):
    """The backend stayed unreachable for every allowed reconnect attempt."""

    def __init__(self, attempts: int, last_message: Any = None):
        super().__init__(f"Max reconnection attempts ({attempts}) reached")
        self.attempts = attempts
        self.last_message = last_message
