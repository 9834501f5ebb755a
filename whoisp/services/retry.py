from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from whoisp.errors import ResearchCancelledError, StageTimeoutError
from whoisp.services.cancellation import CancellationToken

T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 1.0
    timeout: float | None = None

    @property
    def attempts(self) -> int:
        return max(self.max_retries, 0) + 1

    def backoff(self, attempt: int) -> float:
        """Linear backoff: `attempt * base_delay` for 1-based attempt numbers."""
        return max(attempt, 0) * max(self.base_delay, 0.0)


class RetryExhausted(Exception):
    """Every attempt failed; `last_error` holds the final failure."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(f"{label} failed after {attempts} attempts: {last_error}")
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    label: str,
    cancellation: CancellationToken | None = None,
) -> T:
    """Run `operation` under `policy`.

    Each attempt is bounded by `policy.timeout`; timeouts and any other
    exception are retried with linear backoff. `ResearchCancelledError` is
    never retried. When the budget is spent, raises `RetryExhausted`.
    """
    for attempt in range(1, policy.attempts + 1):
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        try:
            if policy.timeout is not None:
                try:
                    return await asyncio.wait_for(operation(), timeout=policy.timeout)
                except asyncio.TimeoutError as exc:
                    raise StageTimeoutError(
                        f"{label} timed out after {policy.timeout:g}s"
                    ) from exc
            return await operation()
        except ResearchCancelledError:
            raise
        except Exception as exc:
            logger.warning(f"{label} attempt {attempt}/{policy.attempts} failed: {exc}")
            if attempt >= policy.attempts:
                raise RetryExhausted(label, policy.attempts, exc) from exc

        delay = policy.backoff(attempt)
        if cancellation is not None:
            await cancellation.sleep(delay)
        else:
            await asyncio.sleep(delay)

    raise RuntimeError(f"{label}: retry policy allows no attempts")
