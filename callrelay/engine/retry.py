"""
Reconnect policy for engine sockets.

Backoff is a plain value: ``RetryState`` records how many reconnection
attempts a session has used and when the next one becomes eligible. The
connection advances it with an injected clock, so timing is testable without
real sleeps.
"""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class ReconnectPolicy:
    """Exponential backoff: ``base * 2**attempt`` for attempts 1..max_attempts."""

    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 300.0
    handshake_timeout_seconds: float = 10.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay_seconds * (2**attempt), self.max_delay_seconds)


@dataclass(frozen=True)
class RetryState:
    # Counts attempts for the lifetime of the session; it is not reset when a
    # reconnection succeeds.
    attempt: int = 0
    next_eligible_at: float | None = None

    def exhausted(self, policy: ReconnectPolicy) -> bool:
        return self.attempt >= policy.max_attempts

    def advance(self, policy: ReconnectPolicy, now: float) -> RetryState:
        attempt = self.attempt + 1
        return replace(self, attempt=attempt, next_eligible_at=now + policy.delay_for(attempt))

    def wait_seconds(self, now: float) -> float:
        if self.next_eligible_at is None:
            return 0.0
        return max(self.next_eligible_at - now, 0.0)
