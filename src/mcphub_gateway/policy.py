"""Bounded, fixed-delay reconnection policy."""

from dataclasses import dataclass

MAX_RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY = 1.0  # seconds


@dataclass
class ReconnectPolicy:
    """Counts consecutive reconnect attempts against a fixed bound.

    The counter belongs to the gateway rather than to any one channel: it
    survives channel replacement and only a successful open resets it.
    """

    max_attempts: int = MAX_RECONNECT_ATTEMPTS
    delay: float = RECONNECT_DELAY
    attempts: int = 0

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts

    def record_attempt(self) -> int:
        """Count a new attempt and return its 1-based number."""
        self.attempts += 1
        return self.attempts

    def reset(self) -> None:
        self.attempts = 0
