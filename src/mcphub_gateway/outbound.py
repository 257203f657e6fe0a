"""Upstream path: envelope splitting, the outbound FIFO and the POST sender.

Each envelope is POSTed on its own to the backend message endpoint, with the
session token as a query parameter:

    POST {base}/message?sessionId=<token>
    Content-Type: application/json

    {"jsonrpc":"2.0",...}

Delivery is best effort. A failed envelope is logged and dropped, never
redelivered.
"""

import enum
import logging
from collections import deque
from typing import Iterable, Iterator

import httpx

logger = logging.getLogger(__name__)

SERVICE_UNAVAILABLE = 503


def split_envelopes(chunk: bytes | str) -> list[str]:
    """Split one chunk of local input into individual envelopes.

    Splits on line breaks only, trims each line and drops blank ones. An
    envelope spanning several lines is not supported.
    """
    if isinstance(chunk, bytes):
        chunk = chunk.decode("utf-8", errors="replace")
    return [line.strip() for line in chunk.split("\n") if line.strip()]


class OutboundQueue:
    """FIFO of envelopes waiting for a ready session."""

    def __init__(self):
        self._items: deque[str] = deque()

    def extend(self, envelopes: Iterable[str]) -> None:
        self._items.extend(envelopes)

    def pop(self) -> str:
        """Remove and return the oldest envelope."""
        return self._items.popleft()

    def __len__(self) -> int:
        return len(self._items)

    def __bool__(self) -> bool:
        return bool(self._items)

    def __iter__(self) -> Iterator[str]:
        return iter(self._items)


class DeliveryResult(enum.Enum):
    DELIVERED = "delivered"
    DROPPED = "dropped"
    # Backend-wide unavailability; the caller should reconnect
    UNAVAILABLE = "unavailable"


class UpstreamSender:
    """Delivers one envelope per POST to the backend message endpoint."""

    def __init__(self, client: httpx.AsyncClient, message_url: str, timeout: float = 60.0):
        self._client = client
        self._message_url = message_url
        self._timeout = timeout

    async def send(self, token: str, envelope: str) -> DeliveryResult:
        """POST a single envelope correlated to ``token``.

        Never raises for HTTP or network failures; the outcome is reported as
        a DeliveryResult instead.
        """
        if not token:
            raise ValueError("Cannot send upstream without a session token")

        try:
            response = await self._client.post(
                self._message_url,
                params={"sessionId": token},
                headers={"Content-Type": "application/json"},
                content=envelope.encode("utf-8"),
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            logger.error("Request timed out after %ss, dropping envelope: %r", self._timeout, e)
            return DeliveryResult.DROPPED
        except httpx.HTTPError as e:
            logger.error("Request error, dropping envelope: %r", e)
            return DeliveryResult.DROPPED

        if response.is_success:
            logger.debug("Delivered envelope (%d bytes): %s", len(envelope), response.status_code)
            return DeliveryResult.DELIVERED

        logger.error("Error from MCPHub: %s %s", response.status_code, response.reason_phrase)
        logger.error("Error details: %s", response.text)

        if response.status_code == SERVICE_UNAVAILABLE:
            logger.warning("Service unavailable - requesting reconnect")
            return DeliveryResult.UNAVAILABLE
        return DeliveryResult.DROPPED
