"""Reconnect backoff as an explicit state value.

Each connection owns one :class:`BackoffState`; the functions below
return a new state instead of mutating timers, so the schedule can be
tested with an injected clock and random source.
"""

from __future__ import annotations

from dataclasses import dataclass, replace


@dataclass(frozen=True)
class BackoffPolicy:
    initial_seconds: float = 5.0
    max_seconds: float = 30.0
    jitter: float = 0.2
    stable_reset_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.initial_seconds <= 0:
            raise ValueError("initial_seconds must be > 0")
        if self.max_seconds < self.initial_seconds:
            raise ValueError("max_seconds must be >= initial_seconds")
        if not 0 <= self.jitter < 1:
            raise ValueError("jitter must be in [0, 1)")


@dataclass(frozen=True)
class BackoffState:
    attempt: int = 0
    next_retry_at: float | None = None
    connected_since: float | None = None


def compute_delay(attempt: int, policy: BackoffPolicy, rand: float) -> float:
    """Delay before retry number ``attempt`` (0-based).

    ``rand`` is a uniform sample in [0, 1) mapped onto +/- ``policy.jitter``.
    """
    base = min(policy.max_seconds, policy.initial_seconds * (2 ** min(attempt, 32)))
    return base * (1.0 + policy.jitter * (2.0 * rand - 1.0))


def on_connected(state: BackoffState, now: float) -> BackoffState:
    return replace(state, next_retry_at=None, connected_since=now)


def on_disconnected(state: BackoffState, policy: BackoffPolicy, *, now: float, rand: float) -> BackoffState:
    """Schedule the next retry after a lost or failed connection.

    A connection that stayed up for ``stable_reset_seconds`` starts over
    from the initial delay.
    """
    attempt = state.attempt
    if state.connected_since is not None and now - state.connected_since >= policy.stable_reset_seconds:
        attempt = 0
    delay = compute_delay(attempt, policy, rand)
    return BackoffState(attempt=attempt + 1, next_retry_at=now + delay, connected_since=None)


def seconds_until_retry(state: BackoffState, now: float) -> float:
    if state.next_retry_at is None:
        return 0.0
    return max(0.0, state.next_retry_at - now)
