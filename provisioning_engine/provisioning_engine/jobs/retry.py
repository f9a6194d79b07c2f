"""Exponential backoff shared by clone retries, domain checks and sweeps.

Two styles of retry use the same delay curve:

* deferred -- :func:`next_attempt_at` turns an attempt number into a
  timestamp for the scheduler, so nothing blocks while waiting;
* in-process -- :func:`async_retry_with_backoff` re-invokes a callable after
  a non-blocking sleep, used for short-lived registry contention.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from provisioning_engine.errors import ProvisioningError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryConfig(BaseModel):
    """Tuneable parameters for retry behaviour."""

    max_retries: int = Field(
        default=3,
        ge=0,
        description="Maximum number of retry attempts before re-raising.",
    )
    base_delay: float = Field(
        default=2.0,
        gt=0.0,
        description="Base delay in seconds for exponential backoff.",
    )
    max_delay: float = Field(
        default=60.0,
        gt=0.0,
        description="Upper bound on delay in seconds.",
    )
    jitter: bool = Field(
        default=True,
        description="When enabled, randomise the delay within [0.5x, 1.5x].",
    )


def compute_delay(attempt: int, config: RetryConfig) -> float:
    """Return the backoff delay for zero-based *attempt* given *config*."""
    delay: float = min(config.base_delay * (2**attempt), config.max_delay)
    if config.jitter:
        delay *= random.uniform(0.5, 1.5)  # noqa: S311
    return delay


def next_attempt_at(now: datetime, attempt: int, config: RetryConfig) -> datetime:
    """Return when zero-based *attempt* should next be tried."""
    return now + timedelta(seconds=compute_delay(attempt, config))


def is_retryable(exc: BaseException) -> bool:
    """Return ``True`` for errors the taxonomy marks as transient.

    Anything outside the provisioning taxonomy is treated as transient: an
    unexpected crash is worth another bounded attempt.
    """
    if isinstance(exc, ProvisioningError):
        return exc.retryable
    return True


async def async_retry_with_backoff(
    fn: Callable[[], Any],
    config: RetryConfig,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> Any:
    """Execute *fn* with asynchronous retry and exponential backoff.

    Parameters
    ----------
    fn:
        A zero-argument callable (sync or async) to invoke.  If *fn* returns
        a coroutine it will be awaited.  On each retry the callable is
        invoked from scratch, so it must be safe to call repeatedly.
    config:
        Retry parameters.
    retryable_exceptions:
        Only exceptions whose type appears in this tuple trigger a retry.
        All other exceptions propagate immediately.

    Raises
    ------
    Exception
        The last exception raised by *fn* after all retry attempts are
        exhausted.
    """
    last_exception: Exception | None = None

    for attempt in range(config.max_retries + 1):
        try:
            result = fn()
            if asyncio.iscoroutine(result):
                result = await result
            return result
        except retryable_exceptions as exc:
            last_exception = exc
            if attempt >= config.max_retries:
                break
            delay = compute_delay(attempt, config)
            logger.warning(
                "Retry %d/%d after %.1fs: %s",
                attempt + 1,
                config.max_retries,
                delay,
                exc,
            )
            await asyncio.sleep(delay)

    assert last_exception is not None  # noqa: S101
    raise last_exception
