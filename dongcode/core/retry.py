"""Retry with exponential backoff, jitter and persistent-429 model fallback."""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TypeVar

import httpx

from dongcode.config import AuthType
from dongcode.errors import (
    ApiError,
    CancelledError,
    QuotaExceededError,
    get_error_message,
    get_error_status,
)
from dongcode.utils.quota import (
    is_generic_quota_exceeded_error,
    is_pro_quota_exceeded_error,
    is_qwen_quota_exceeded_error,
    is_qwen_throttling_error,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Consecutive 429s before the fallback callback is consulted
PERSISTENT_429_THRESHOLD = 2

FallbackCallback = Callable[[str | None, BaseException], Awaitable[str | None]]


def is_quota_error(error: BaseException) -> bool:
    return (
        isinstance(error, QuotaExceededError)
        or is_pro_quota_exceeded_error(error)
        or is_generic_quota_exceeded_error(error)
        or is_qwen_quota_exceeded_error(error)
    )


def is_rate_limit(error: BaseException) -> bool:
    return get_error_status(error) == 429 or is_qwen_throttling_error(error)


def default_should_retry(error: BaseException) -> bool:
    """429 (not quota), 5xx and transport failures are retryable."""
    if is_quota_error(error):
        return False
    if isinstance(error, httpx.TransportError):
        return True
    if is_rate_limit(error):
        return True
    status = get_error_status(error)
    return status is not None and 500 <= status < 600


@dataclass
class RetryOptions:
    max_attempts: int = 5
    initial_delay_ms: int = 5000
    max_delay_ms: int = 30000
    jitter: float = 0.3
    should_retry: Callable[[BaseException], bool] = default_should_retry
    on_persistent_429: FallbackCallback | None = None
    auth_type: str | None = None
    cancel_event: asyncio.Event | None = None
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep)


def _jittered(delay_ms: float, jitter: float) -> float:
    return max(0.0, delay_ms + delay_ms * jitter * random.uniform(-1, 1))


async def cancellable(awaitable: Awaitable[T], cancel: asyncio.Event | None) -> T:
    """Await ``awaitable`` unless ``cancel`` fires first.

    The losing awaitable is cancelled and awaited before
    ``CancelledError`` is raised.
    """
    if cancel is None:
        return await awaitable
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        raise CancelledError("Request cancelled")

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
            await asyncio.wait({task})
    if not task.cancelled():
        return task.result()
    raise CancelledError("Request cancelled")


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None,
) -> T:
    """Call ``fn`` until it succeeds or the error is final.

    ``fn`` is re-invoked from scratch on every attempt, so a model switch
    made by ``on_persistent_429`` is picked up on the next call.
    """
    opts = options or RetryOptions()
    attempt = 0
    delay_ms: float = opts.initial_delay_ms
    consecutive_429 = 0

    while True:
        if opts.cancel_event is not None and opts.cancel_event.is_set():
            raise CancelledError("Request cancelled")
        attempt += 1
        try:
            return await cancellable(fn(), opts.cancel_event)
        except Exception as error:
            if opts.cancel_event is not None and opts.cancel_event.is_set():
                raise

            # Pro quota under end-user OAuth: try the fallback right away
            if (
                opts.auth_type == AuthType.LOGIN_WITH_GOOGLE
                and opts.on_persistent_429 is not None
                and (is_pro_quota_exceeded_error(error) or is_generic_quota_exceeded_error(error))
            ):
                fallback = await opts.on_persistent_429(opts.auth_type, error)
                if fallback:
                    logger.info("Quota exceeded, switched to %s", fallback)
                    attempt, consecutive_429 = 0, 0
                    delay_ms = opts.initial_delay_ms
                    continue
                raise

            consecutive_429 = consecutive_429 + 1 if is_rate_limit(error) else 0

            if (
                consecutive_429 >= PERSISTENT_429_THRESHOLD
                and opts.on_persistent_429 is not None
                and not is_quota_error(error)
            ):
                fallback = await opts.on_persistent_429(opts.auth_type, error)
                if fallback:
                    logger.info("Persistent 429, switched to %s", fallback)
                    attempt, consecutive_429 = 0, 0
                    delay_ms = opts.initial_delay_ms
                    continue

            if attempt >= opts.max_attempts or not opts.should_retry(error):
                raise

            retry_after = error.retry_after if isinstance(error, ApiError) else None
            if retry_after is not None:
                wait_ms = retry_after * 1000
            else:
                wait_ms = _jittered(delay_ms, opts.jitter)
                delay_ms = min(opts.max_delay_ms, delay_ms * 2)

            logger.warning(
                "Attempt %d failed (status %s): %s. Retrying in %d ms",
                attempt,
                get_error_status(error),
                get_error_message(error),
                int(wait_ms),
            )
            await cancellable(opts.sleep(wait_ms / 1000), opts.cancel_event)
