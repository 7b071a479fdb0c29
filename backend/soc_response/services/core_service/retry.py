# backend/soc_response/services/core_service/retry.py
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from soc_response.core.errors import DependencyError

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _is_retryable_exception(e: Exception) -> bool:
    if isinstance(e, (httpx.TimeoutException, httpx.NetworkError, asyncio.TimeoutError)):
        return True
    if isinstance(e, httpx.HTTPStatusError):
        return e.response.status_code >= 500 or e.response.status_code == 429
    return isinstance(e, DependencyError)


async def call_with_timeout(
    fn: Callable[[], Awaitable[T]],
    timeout: float,
    what: str,
) -> T:
    """
    Bound a collaborator call. A timeout becomes a DependencyError so callers
    handle it like any other collaborator failure.
    """
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError:
        raise DependencyError(f"{what} timed out after {timeout:.1f}s")


async def async_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.6,
    max_delay: float = 4.0,
    jitter: float = 0.25,
    retry_if: Callable[[Exception], bool] = _is_retryable_exception,
) -> T:
    last_exc: Optional[Exception] = None

    for i in range(attempts):
        try:
            return await fn()
        except Exception as e:
            last_exc = e
            if i == attempts - 1 or not retry_if(e):
                raise

            delay = min(max_delay, base_delay * (2 ** i)) * (1.0 + random.uniform(-jitter, jitter))
            logger.debug("Attempt %d/%d failed (%s), retrying in %.2fs", i + 1, attempts, e, delay)
            await asyncio.sleep(max(0.0, delay))

    raise last_exc or DependencyError("retry loop exited without a result")
