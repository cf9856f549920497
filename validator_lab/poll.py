"""Bounded polling used for readiness and convergence gates.

A poll is a suspension point in the sequencer: it checks a condition a fixed
number of times with a fixed interval and reports the outcome. It never loops
without bound and never raises on exhaustion; callers decide whether a
`PollResult` that is not `ready` is fatal.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Generic, TypeVar

_LOGGER = logging.getLogger(__name__)

__all__ = [
    "PollConfig",
    "PollResult",
    "poll_until",
]

T = TypeVar("T")


@dataclass(frozen=True)
class PollConfig:
    """Attempts and interval for one polling gate."""

    attempts: int = 60
    """Maximum number of checks before giving up."""

    interval: float = 5.0
    """Seconds to sleep between checks."""

    @classmethod
    def from_timeout(cls, timeout: float, interval: float) -> "PollConfig":
        """Create a config that gives up after roughly `timeout` seconds."""
        if interval <= 0:
            raise ValueError("Poll interval must be positive")
        return cls(attempts=max(1, int(timeout // interval) + 1), interval=interval)


@dataclass(frozen=True)
class PollResult(Generic[T]):
    """Outcome of a bounded poll."""

    ready: bool
    """True if the condition was met before the attempts ran out."""

    attempts: int
    """Number of checks performed."""

    value: T | None = None
    """The last value observed by the check."""


async def poll_until(
    check: Callable[[], Awaitable[T]],
    predicate: Callable[[T], bool],
    config: PollConfig,
    description: str = "condition",
) -> PollResult[T]:
    """Call `check` until `predicate` accepts its value or attempts run out."""
    value: T | None = None
    for attempt in range(1, config.attempts + 1):
        value = await check()
        if predicate(value):
            _LOGGER.debug("%s ready after %d attempt(s)", description, attempt)
            return PollResult(ready=True, attempts=attempt, value=value)
        _LOGGER.debug(
            "Waiting for %s (attempt %d/%d): %s",
            description,
            attempt,
            config.attempts,
            value,
        )
        if attempt < config.attempts:
            await asyncio.sleep(config.interval)
    return PollResult(ready=False, attempts=config.attempts, value=value)
