"""Bounded exponential backoff with jitter.

The delay schedule is a pure function (``backoff_delay``); waiting is done by
an injected ``Sleeper`` so callers and tests control time. A sleeper that
reports an interruption ends the retry loop quietly: the caller gets ``None``
back instead of an exception. ``asyncio.CancelledError`` is never swallowed.
"""

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol, TypeVar

T = TypeVar("T")

logger = logging.getLogger("logstream.backoff")


class RetryBudgetExhausted(Exception):
    """Base class for failures raised once a retry budget is used up."""


@dataclass(frozen=True)
class RetryBudget:
    """How often and how slowly an operation is retried.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1).
        base_delay: Base delay in seconds; also the upper bound of the jitter.
        cap_delay: Ceiling in seconds for the exponential part of the delay.
    """

    max_retries: int
    base_delay: float
    cap_delay: float

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay <= 0:
            raise ValueError(f"base_delay must be > 0, got {self.base_delay}")
        if self.cap_delay < self.base_delay:
            raise ValueError(
                f"cap_delay ({self.cap_delay}) must be >= base_delay ({self.base_delay})"
            )

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1


WRITE_BUDGET = RetryBudget(max_retries=8, base_delay=0.2, cap_delay=2.5)
ALERT_BUDGET = RetryBudget(max_retries=5, base_delay=0.2, cap_delay=5.0)
CHECKPOINT_BUDGET = RetryBudget(max_retries=5, base_delay=0.2, cap_delay=2.5)


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter: float | None = None,
) -> float:
    """Delay before retrying after the given (zero-based) failed attempt.

    ``min(cap, base * 2**attempt) + jitter`` where jitter is drawn uniformly
    from ``[0, base)`` unless supplied.
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")
    if jitter is None:
        jitter = random.random() * base
    # 2**attempt grows without bound; clamp before multiplying
    exponential = cap if attempt >= 63 else min(cap, base * (2**attempt))
    return exponential + jitter


class Sleeper(Protocol):
    """Waits between attempts.

    Returns True when the full delay elapsed, False when the wait was
    interrupted and the retry loop should stop.
    """

    async def __call__(self, delay: float) -> bool: ...


async def default_sleeper(delay: float) -> bool:
    await asyncio.sleep(delay)
    return True


class EventSleeper:
    """Sleeper that is interrupted as soon as a stop event is set."""

    def __init__(self, stop_event: asyncio.Event) -> None:
        self._stop_event = stop_event

    async def __call__(self, delay: float) -> bool:
        if self._stop_event.is_set():
            return False
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except TimeoutError:
            return True
        return False


async def run_with_backoff(
    action: Callable[[], Awaitable[T]],
    budget: RetryBudget,
    sleeper: Sleeper | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
) -> T | None:
    """Run ``action`` until it succeeds or the budget is used up.

    Args:
        action: Zero-argument coroutine function performing one attempt.
        budget: Attempt ceiling and delay parameters.
        sleeper: Waits between attempts. Defaults to ``asyncio.sleep``.
        retry_on: Exception types that trigger a retry; others propagate at once.
        description: Name used in log lines.

    Returns:
        The action's result, or None if the sleeper was interrupted.

    Raises:
        The exception of the final failed attempt, unchanged.
    """
    sleep = sleeper or default_sleeper
    for attempt in range(budget.max_attempts):
        try:
            return await action()
        except retry_on as e:
            if attempt == budget.max_retries:
                logger.error(
                    f"{description} failed after {budget.max_attempts} attempts: {e}",
                    extra={"attempt": attempt + 1, "error": str(e)},
                )
                raise
            delay = backoff_delay(attempt, budget.base_delay, budget.cap_delay)
            logger.warning(
                f"{description} failed, retrying in {delay:.3f}s "
                f"({attempt + 1}/{budget.max_attempts})",
                extra={"attempt": attempt + 1, "error": str(e)},
            )
            if not await sleep(delay):
                logger.info(
                    f"{description} retry cancelled during backoff",
                    extra={"attempt": attempt + 1},
                )
                return None
    # Unreachable: the loop either returns or raises
    raise AssertionError("retry loop exited without result")
