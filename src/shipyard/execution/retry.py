"""Wait schedules between repeated attempts.

Health probing backs off exponentially between attempts; hook callbacks are
retried after a fixed pause. Attempts are numbered from 1 and the first
attempt never waits.

Example:
    >>> from shipyard.execution.retry import ExponentialBackoff
    >>>
    >>> schedule = ExponentialBackoff(max_attempts=5, base_delay=2.0, max_delay=30.0)
    >>> [delay for _, delay in schedule.schedule()]
    [0.0, 4.0, 8.0, 16.0, 30.0]
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from dataclasses import dataclass


class RetryStrategy(ABC):
    """A wait schedule bounded by ``max_attempts``."""

    max_attempts: int

    @abstractmethod
    def delay_before(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based); 0.0 for the first."""
        ...

    def allows(self, attempt: int) -> bool:
        """True while ``attempt`` is within ``max_attempts``."""
        return 1 <= attempt <= self.max_attempts

    def schedule(self) -> Iterator[tuple[int, float]]:
        """Yield ``(attempt, delay_before)`` for every permitted attempt."""
        for attempt in range(1, self.max_attempts + 1):
            yield attempt, self.delay_before(attempt)

    def total_wait(self) -> float:
        """Sum of waits if every attempt is used."""
        return sum(delay for _, delay in self.schedule())

    def _check_attempts(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Wait ``base_delay * 2^(attempt-1)`` before each retry, capped at ``max_delay``.

    Deterministic (no jitter); the cumulative wait is reported in the health result.
    """

    max_attempts: int = 5
    base_delay: float = 2.0
    max_delay: float = 30.0

    def __post_init__(self) -> None:
        self._check_attempts()

    def delay_before(self, attempt: int) -> float:
        if attempt <= 1:
            return 0.0
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)


@dataclass
class ConstantBackoff(RetryStrategy):
    """Same pause before every retry."""

    max_attempts: int = 1
    delay: float = 0.0

    def __post_init__(self) -> None:
        self._check_attempts()

    def delay_before(self, attempt: int) -> float:
        return 0.0 if attempt <= 1 else self.delay


__all__ = ["RetryStrategy", "ExponentialBackoff", "ConstantBackoff"]
