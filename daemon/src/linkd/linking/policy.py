"""Reconnection policy.

Decides, for each disconnect, whether the session should reconnect and
after how long. The decision is a pure function of the disconnect reason
and the number of disconnects seen so far.
"""

from dataclasses import dataclass
from typing import Union

from linkd.config import ReconnectConfig
from linkd.transport import DisconnectReason


@dataclass(frozen=True)
class Retry:
    """Reconnect after `delay` seconds."""

    delay: float


@dataclass(frozen=True)
class GiveUp:
    """Do not reconnect."""

    reason: str


Decision = Union[Retry, GiveUp]


@dataclass(frozen=True)
class ReconnectPolicy:
    """Bounded linear backoff.

    Attributes:
        max_attempts: Disconnects tolerated; reaching it gives up.
        base_delay: Delay after the first disconnect, in seconds.
        max_delay: Upper bound on any delay, in seconds.
    """

    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 10.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < self.base_delay:
            raise ValueError("delays must satisfy 0 <= base_delay <= max_delay")

    @classmethod
    def from_config(cls, config: ReconnectConfig) -> "ReconnectPolicy":
        return cls(
            max_attempts=config.max_attempts,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
        )

    def delay_for(self, attempts: int) -> float:
        """Backoff delay for the given attempt count (monotonic, bounded)."""
        return min(self.base_delay * max(attempts, 1), self.max_delay)

    def decide(self, reason: DisconnectReason, attempts: int) -> Decision:
        """Decide what to do after a disconnect.

        Args:
            reason: Why the transport closed.
            attempts: Disconnects so far, including this one.

        Returns:
            Retry with a delay, or GiveUp.
        """
        if reason.is_terminal:
            return GiveUp(f"not retryable: {reason.value}")

        if attempts >= self.max_attempts:
            return GiveUp(
                f"reconnect attempts exhausted ({attempts}/{self.max_attempts})"
            )

        return Retry(self.delay_for(attempts))
