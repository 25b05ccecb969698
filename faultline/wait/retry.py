"""
faultline Retry/Wait Engine

Bounded retry with a fixed delay and a three-way outcome per attempt:

- ``None``: the attempt succeeded, stop.
- :class:`Continue`: not there yet, sleep and try again.
- :class:`Abort`: a fatal condition, raise its error without retrying.

The loop stops with :class:`RetriesExhaustedError` once the attempt ceiling
is reached and with :class:`RetryDeadlineError` once the policy deadline
passes. The inter-attempt sleep runs inside the deadline scope, so it is
interrupted as soon as the deadline expires. Task cancellation propagates
as :class:`asyncio.CancelledError`.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar, Union

import structlog

from faultline.config import RetryPolicyConfig
from faultline.errors import (
    RetriesExhaustedError,
    RetryDeadlineError,
    TransportError,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")


# =============================================================================
# Outcomes
# =============================================================================


@dataclass(frozen=True)
class Continue:
    """Keep waiting; ``reason`` is reported if the budget runs out."""

    reason: str

    @classmethod
    def because(cls, fmt: str, *args: Any) -> Continue:
        return cls(fmt % args if args else fmt)


@dataclass(frozen=True)
class Abort:
    """Stop retrying and raise ``error``."""

    error: BaseException


Outcome = Optional[Union[Continue, Abort]]
AttemptFn = Callable[[], Awaitable[Outcome]]


# =============================================================================
# Policy
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt ceiling, fixed delay and optional deadline.

    ``deadline`` is an absolute event loop time (see :func:`deadline_in`).
    ``attempts`` may be ``None`` only when a deadline bounds the loop.
    """

    attempts: Optional[int] = 100
    delay: float = 5.0
    deadline: Optional[float] = None

    def __post_init__(self) -> None:
        if self.attempts is None and self.deadline is None:
            raise ValueError("unbounded retry: set attempts or a deadline")
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.delay < 0:
            raise ValueError("delay must not be negative")

    @classmethod
    def from_config(
        cls, config: RetryPolicyConfig, deadline: Optional[float] = None
    ) -> RetryPolicy:
        return cls(
            attempts=config.attempts,
            delay=config.delay_seconds,
            deadline=deadline,
        )


def deadline_in(seconds: Optional[float]) -> Optional[float]:
    """Absolute loop time ``seconds`` from now, or ``None``."""
    if seconds is None:
        return None
    return asyncio.get_running_loop().time() + seconds


# =============================================================================
# Retryer
# =============================================================================


class Retryer:
    """
    Runs an attempt function under a :class:`RetryPolicy`.

    Args:
        policy: Attempt ceiling, delay and deadline.
        name: Label attached to log events.
    """

    def __init__(self, policy: RetryPolicy, name: str = "retry") -> None:
        self.policy = policy
        self.name = name
        self.attempts_made = 0
        self.last_reason: Optional[str] = None
        self._log = logger.bind(retry=name)

    async def run(self, attempt: AttemptFn) -> None:
        """Invoke ``attempt`` until it succeeds, aborts or the budget ends.

        Raises:
            RetriesExhaustedError: The attempt ceiling was reached.
            RetryDeadlineError: The deadline expired first.
            BaseException: Whatever an :class:`Abort` carried, or any
                exception raised by ``attempt`` itself.
        """
        self.attempts_made = 0
        self.last_reason = None
        scope = asyncio.timeout_at(self.policy.deadline)
        try:
            async with scope:
                await self._loop(attempt)
        except TimeoutError as e:
            if not scope.expired():
                raise
            self._log.warning(
                "retry.deadline_exceeded",
                attempts=self.attempts_made,
                reason=self.last_reason,
            )
            raise RetryDeadlineError(
                f"{self.name}: deadline exceeded after {self.attempts_made} "
                f"attempt(s): {self.last_reason}",
                last_reason=self.last_reason,
                cause=e,
            ) from e

    async def _loop(self, attempt: AttemptFn) -> None:
        ceiling = self.policy.attempts
        while True:
            self.attempts_made += 1
            outcome = await attempt()

            if outcome is None:
                if self.attempts_made > 1:
                    self._log.debug("retry.succeeded", attempts=self.attempts_made)
                return

            if isinstance(outcome, Abort):
                self._log.warning(
                    "retry.aborted",
                    attempts=self.attempts_made,
                    error=str(outcome.error),
                )
                raise outcome.error

            if not isinstance(outcome, Continue):
                raise TypeError(f"unexpected retry outcome: {outcome!r}")

            self.last_reason = outcome.reason
            if ceiling is not None and self.attempts_made >= ceiling:
                self._log.warning(
                    "retry.exhausted",
                    attempts=self.attempts_made,
                    reason=self.last_reason,
                )
                raise RetriesExhaustedError(self.attempts_made, self.last_reason)

            self._log.debug(
                "retry.waiting",
                attempt=self.attempts_made,
                max_attempts=ceiling,
                reason=self.last_reason,
                delay=self.policy.delay,
            )
            await asyncio.sleep(self.policy.delay)


async def retry(policy: RetryPolicy, attempt: AttemptFn, name: str = "retry") -> None:
    """Shortcut for ``Retryer(policy, name).run(attempt)``."""
    await Retryer(policy, name).run(attempt)


async def retry_with_interval(
    fn: Callable[[], Awaitable[T]],
    interval: float,
    deadline: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransportError,),
    name: str = "retry",
) -> T:
    """Call ``fn`` every ``interval`` seconds until it stops raising.

    Exceptions listed in ``retry_on`` mean keep waiting; anything else
    propagates. Returns the first successful result.
    """
    result: Optional[T] = None

    async def attempt() -> Outcome:
        nonlocal result
        try:
            result = await fn()
        except retry_on as e:
            return Continue(str(e) or type(e).__name__)
        return None

    await Retryer(RetryPolicy(attempts=None, delay=interval, deadline=deadline), name).run(attempt)
    return result  # type: ignore[return-value]
