"""
Retry with exponential backoff for outbound database calls.

Every query the gateway issues goes through :func:`retry_async`.  The
engine cannot reliably tell transient from permanent failures, so every
exception is retried until the attempt budget is spent; the final failure
is raised as :class:`RetryExhaustedError` for the caller to record.

Delay before attempt ``n + 1`` (``n`` = failed attempts so far)::

    min(initial_delay * multiplier ** (n - 1), max_delay)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, TypeVar

logger = logging.getLogger("shared.retry")

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Attempt budget and backoff curve."""

    max_attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_config(cls, section: Dict[str, Any]) -> "RetryPolicy":
        """Build a policy from the ``[retry]`` settings section.

        Invalid values fall back to the defaults.
        """
        defaults = cls()

        def _num(key: str, default: float, cast: Callable[[Any], Any]) -> Any:
            raw = section.get(key, default)
            try:
                value = cast(raw)
            except (TypeError, ValueError):
                logger.warning("Invalid retry.%s=%r; using %s", key, raw, default)
                return default
            return value

        return cls(
            max_attempts=max(1, _num("max_attempts", defaults.max_attempts, int)),
            initial_delay=max(0.0, _num("initial_delay_seconds", defaults.initial_delay, float)),
            multiplier=max(1.0, _num("multiplier", defaults.multiplier, float)),
            max_delay=max(0.0, _num("max_delay_seconds", defaults.max_delay, float)),
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt`` (1-based)."""
        return backoff_delay(attempt, self.initial_delay, self.multiplier, self.max_delay)


def backoff_delay(
    attempt: int,
    initial_delay: float,
    multiplier: float,
    max_delay: float,
) -> float:
    """Exponential backoff capped at ``max_delay``.

    ``attempt`` is 1-based; values below 1 are treated as 1.
    """
    exponent = max(1, attempt) - 1
    try:
        delay = initial_delay * (multiplier ** exponent)
    except OverflowError:
        return max_delay
    return min(delay, max_delay)


class RetryExhaustedError(Exception):
    """An operation failed on every attempt of its retry budget.

    Attributes:
        label: Human-readable name of the operation.
        attempts: Number of attempts made.
        last_error: The exception raised by the final attempt.
    """

    def __init__(self, label: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"{label} failed after {attempts} attempt(s): {last_error}"
        )
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    label: str = "operation",
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` until it succeeds or the policy's attempts run out.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Attempt budget and backoff curve.
        label: Name used in log lines and the raised error.
        sleep: Awaitable sleep (injectable for tests).

    Raises:
        RetryExhaustedError: After the final failed attempt.
        asyncio.CancelledError: Propagated immediately, never retried.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if attempt >= policy.max_attempts:
                logger.warning(
                    "%s failed on final attempt %d/%d: %s",
                    label,
                    attempt,
                    policy.max_attempts,
                    exc,
                )
                raise RetryExhaustedError(label, attempt, exc) from exc

            delay = policy.delay_for(attempt)
            logger.debug(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                label,
                attempt,
                policy.max_attempts,
                exc,
                delay,
            )
            await sleep(delay)
