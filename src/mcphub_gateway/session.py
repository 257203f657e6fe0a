"""Session token extraction and per-channel session state."""

import re
from dataclasses import dataclass
from typing import Optional

# "sessionId=" followed by a run of characters up to the next query separator
SESSION_ID_PATTERN = re.compile(r"sessionId=([^&#\s]+)")


def parse_session_id(data: str) -> Optional[str]:
    """Extract the session token from handshake event data.

    The server announces the message endpoint as something like
    ``/message?sessionId=abc123``; any other components are ignored.
    Returns None when the data carries no token.
    """
    match = SESSION_ID_PATTERN.search(data)
    if match is None:
        return None
    return match.group(1)


@dataclass
class Session:
    """Session token and readiness of one channel."""

    token: Optional[str] = None
    ready: bool = False

    def establish(self, token: str) -> None:
        self.token = token
        self.ready = True

    def reset(self) -> None:
        self.token = None
        self.ready = False
