"""Events consumed by the gateway control loop.

Channels, the drain task and the local input pump never touch controller
state directly; they publish one of these events onto the controller's queue.
Lifecycle events carry the generation of the channel they concern so the
controller can discard ones from a channel it has already replaced.
"""

from typing import Literal
from pydantic import BaseModel


# Channel → controller

class SessionEstablished(BaseModel):
    """Handshake parsed; the channel now has a session token."""
    type: Literal["session_established"] = "session_established"
    generation: int
    token: str


class DownstreamMessage(BaseModel):
    """Raw payload of a `message` event, to be written to local output."""
    type: Literal["downstream_message"] = "downstream_message"
    generation: int
    data: str


class ReconnectRequested(BaseModel):
    """Server asked for a reconnect, the stream failed, or the backend is unavailable."""
    type: Literal["reconnect_requested"] = "reconnect_requested"
    generation: int
    reason: str


# Reconnect task → controller

class ChannelOpened(BaseModel):
    """A replacement channel finished opening."""
    type: Literal["channel_opened"] = "channel_opened"
    generation: int


class ChannelOpenFailed(BaseModel):
    """A replacement channel could not be opened."""
    type: Literal["channel_open_failed"] = "channel_open_failed"
    generation: int
    reason: str


# Local input → controller

class InputReceived(BaseModel):
    """Envelopes split from one chunk of local input."""
    type: Literal["input_received"] = "input_received"
    envelopes: list[str]


class ShutdownRequested(BaseModel):
    """Stops the control loop."""
    type: Literal["shutdown_requested"] = "shutdown_requested"


GatewayEvent = (
    SessionEstablished
    | DownstreamMessage
    | ReconnectRequested
    | ChannelOpened
    | ChannelOpenFailed
    | InputReceived
    | ShutdownRequested
)
