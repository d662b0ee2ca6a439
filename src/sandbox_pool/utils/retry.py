"""Fixed-delay retry helper shared by the lifecycle operations."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_fixed,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always(_: BaseException) -> bool:
    return True


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try, how long to wait between tries, and what to retry."""

    max_attempts: int
    delay_seconds: float = 0.0
    retryable: Callable[[BaseException], bool] = _always


class RetryExhaustedError(Exception):
    """Every attempt failed with a retryable error."""

    def __init__(self, operation: str, errors: List[BaseException]):
        self.operation = operation
        self.errors = errors
        super().__init__(
            f"{operation} failed after {len(errors)} attempts: {errors[-1] if errors else ''}"
        )

    @property
    def last_error(self) -> Optional[BaseException]:
        return self.errors[-1] if self.errors else None


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    name: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Errors rejected by ``policy.retryable`` propagate unchanged on the attempt
    they happen. When every attempt fails with a retryable error a
    RetryExhaustedError carrying all of them is raised.
    """
    errors: List[BaseException] = []

    def _record(exc: BaseException) -> bool:
        # Cancellation is never an attempt failure
        if isinstance(exc, asyncio.CancelledError):
            return False
        errors.append(exc)
        return policy.retryable(exc)

    def _before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            f"{name} failed (attempt {retry_state.attempt_number}/{policy.max_attempts}): "
            f"{retry_state.outcome.exception()}. Retrying in {policy.delay_seconds}s..."
        )

    retrying = AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=wait_fixed(policy.delay_seconds),
        retry=retry_if_exception(_record),
        before_sleep=_before_sleep,
        reraise=True,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
    except Exception as exc:
        if errors and errors[-1] is exc and policy.retryable(exc):
            logger.error(f"{name} failed after {len(errors)} attempts: {exc}")
            raise RetryExhaustedError(name, errors) from exc
        raise
    return result
