"""Execution control: backoff strategies and deadlines."""

from shipyard.execution.retry import ConstantBackoff, ExponentialBackoff, RetryStrategy
from shipyard.execution.timeout import Deadline, TimeoutExpired, run_with_timeout

__all__ = [
    "ConstantBackoff",
    "Deadline",
    "ExponentialBackoff",
    "RetryStrategy",
    "TimeoutExpired",
    "run_with_timeout",
]
