"""
faultline Wait

Bounded retry primitives used by every polling loop.
"""

from faultline.wait.retry import (
    Abort,
    AttemptFn,
    Continue,
    Outcome,
    Retryer,
    RetryPolicy,
    deadline_in,
    retry,
    retry_with_interval,
)

__all__ = [
    "Abort",
    "AttemptFn",
    "Continue",
    "Outcome",
    "Retryer",
    "RetryPolicy",
    "deadline_in",
    "retry",
    "retry_with_interval",
]
