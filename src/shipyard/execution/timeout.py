"""Time limits for a rollout.

A deployment is bounded twice:

- every health probe attempt gets a hard limit, enforced by
  :func:`run_with_timeout` on a worker thread;
- the run as a whole gets a :class:`Deadline`, which the orchestrator checks
  between stages.

Examples:
    >>> result = run_with_timeout(probe, 5.0, port, operation="http probe")

    >>> deadline = Deadline(1800, "deploy demo")
    >>> deadline.check("preparing")   # raises TimeoutExpired once expired
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

T = TypeVar("T")


class TimeoutExpired(TimeoutError):
    """``operation`` ran past its ``timeout`` (seconds)."""

    def __init__(self, operation: str, timeout: float, elapsed: float | None = None):
        self.operation = operation
        self.timeout = timeout
        self.elapsed = elapsed
        ran = f" (ran {elapsed:.1f}s)" if elapsed is not None else ""
        super().__init__(f"{operation} exceeded its {timeout:g}s limit{ran}")


class Deadline:
    """A fixed point on the monotonic clock by which a run must finish."""

    def __init__(
        self,
        seconds: float,
        operation: str = "deploy",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if seconds <= 0:
            raise ValueError(f"Deadline must be positive, got {seconds}")
        self.seconds = seconds
        self.operation = operation
        self._clock = clock
        self.started_at = clock()
        self.expires_at = self.started_at + seconds

    @property
    def elapsed(self) -> float:
        return self._clock() - self.started_at

    @property
    def expired(self) -> bool:
        return self._clock() >= self.expires_at

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self.expires_at - self._clock())

    def check(self, where: str | None = None) -> None:
        """Raise :class:`TimeoutExpired` once the deadline has passed."""
        if self.expired:
            raise TimeoutExpired(where or self.operation, self.seconds, self.elapsed)


def run_with_timeout(
    func: Callable[..., T],
    timeout: float,
    *args: Any,
    operation: str | None = None,
) -> T:
    """Call ``func(*args)`` and give up after ``timeout`` seconds.

    The call runs on a daemon thread. When the limit passes, the caller gets
    :class:`TimeoutExpired` and the thread is left to finish on its own, so a
    probe stuck in a socket read cannot hold up the rollout or interpreter
    exit. Exceptions raised by ``func`` are re-raised in the caller.
    """
    if timeout <= 0:
        raise ValueError(f"Timeout must be positive, got {timeout}")

    name = operation or getattr(func, "__name__", "call")
    outcome: dict[str, Any] = {}

    def target() -> None:
        try:
            outcome["value"] = func(*args)
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=target, name=f"timeout:{name}", daemon=True)
    started = time.monotonic()
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise TimeoutExpired(name, timeout, time.monotonic() - started)
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]


__all__ = ["TimeoutExpired", "Deadline", "run_with_timeout"]
