"""Bounded exponential backoff for calls to downstream collaborators."""

import asyncio
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from statuscheck.common.logging import logger
from statuscheck.common.metrics import retries_total


T = TypeVar("T")


class RetryPolicy(BaseModel):
    """Attempt budget and backoff curve applied to every external call."""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=3, ge=1)
    initial_backoff: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1)
    max_backoff: float = Field(default=10.0, ge=0)
    per_call_timeout: float = Field(default=30.0, gt=0)

    def backoff_for(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-based)."""

        return min(self.initial_backoff * self.backoff_multiplier ** (attempt - 1), self.max_backoff)


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    dependency: str,
    service_name: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Await `fn()` until it succeeds or the attempt budget is spent.

    A timeout counts as a failed attempt. Exceptions carrying
    `retryable = False` are re-raised at once. The last error is re-raised
    when attempts run out.
    """

    last_exc: Exception | None = None
    for attempt in range(1, policy.max_attempts + 1):
        try:
            return await asyncio.wait_for(fn(), timeout=policy.per_call_timeout)
        except asyncio.TimeoutError:
            last_exc = TimeoutError(f"{dependency} call timed out after {policy.per_call_timeout}s")
        except Exception as exc:
            if not getattr(exc, "retryable", True):
                raise
            last_exc = exc
        if attempt >= policy.max_attempts:
            break
        backoff_seconds = policy.backoff_for(attempt)
        retries_total.labels(service=service_name, dependency=dependency).inc()
        logger.warning(
            "call failed dependency=%s attempt=%s/%s backoff_s=%s error=%s",
            dependency,
            attempt,
            policy.max_attempts,
            backoff_seconds,
            last_exc,
        )
        await sleep(backoff_seconds)
    if last_exc is None:
        raise RuntimeError("RETRY_FAILED")
    raise last_exc
