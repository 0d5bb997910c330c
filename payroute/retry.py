from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger("uvicorn.error")

RETRYABLE_TRANSPORT_ERRORS: tuple[type[httpx.RequestError], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.ReadTimeout,
    httpx.RemoteProtocolError,
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 0.25
    max_delay_seconds: float = 4.0

    def delay_for(self, attempt: int) -> float:
        delay = min(self.base_delay_seconds * (2**attempt), self.max_delay_seconds)
        return delay * (0.5 + random.random())


async def send_with_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    policy: RetryPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> httpx.Response:
    """Retry transport failures with exponential backoff and jitter.

    Responses of any status are returned as-is; only connection-level errors
    are retried, and the last one propagates once attempts are exhausted.
    """
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await send()
        except RETRYABLE_TRANSPORT_ERRORS as exc:
            if attempt >= attempts - 1:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "upstream_retry attempt=%d/%d delay_ms=%d error=%s",
                attempt + 1,
                attempts,
                int(delay * 1000),
                exc.__class__.__name__,
            )
            await sleep(delay)
    raise AssertionError("unreachable")
