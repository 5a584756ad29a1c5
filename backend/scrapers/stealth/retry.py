"""
Retry with exponential backoff and jitter.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar
import asyncio
import logging
import math
import random

from ..base import BlockedError

logger = logging.getLogger(__name__)

T = TypeVar('T')

RETRYABLE_PATTERNS = (
    'timeout',
    'network',
    'econnrefused',
    'econnreset',
    'socket hang up',
    'too many requests',
    'rate limit',
    '503',
    '502',
    '429',
)

NON_RETRYABLE_PATTERNS = (
    '400',
    '401',
    '404',
    'invalid credentials',
)

BLOCK_PATTERNS = (
    'incapsula',
    '403',
    'access denied',
    'bot protection',
)

JITTER_FRACTION = 0.25


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    enable_jitter: bool = True

    @classmethod
    def from_settings(cls) -> 'RetryConfig':
        from api.config import settings
        return cls(
            max_attempts=settings.max_retry_attempts,
            base_delay_ms=settings.retry_base_delay,
            max_delay_ms=settings.retry_max_delay,
            backoff_multiplier=settings.retry_backoff_multiplier,
            enable_jitter=settings.retry_enable_jitter,
        )


@dataclass
class RetryContext:
    """Passed to the retried operation on every attempt."""
    attempt: int
    max_attempts: int
    last_error: Optional[BaseException] = None


def calculate_backoff(attempt: int, config: RetryConfig, rng: Callable[[], float] = random.random) -> int:
    """
    Delay in milliseconds before the attempt after `attempt`.

    base * multiplier^(attempt-1), capped at max_delay_ms, then spread
    by +/-25% when jitter is enabled.
    """
    delay = config.base_delay_ms * math.pow(config.backoff_multiplier, attempt - 1)
    delay = min(delay, config.max_delay_ms)

    if config.enable_jitter:
        jitter = delay * JITTER_FRACTION
        delay = delay - jitter + rng() * (jitter * 2)

    return int(math.floor(delay))


def is_retryable_error(error: BaseException) -> bool:
    message = str(error).lower()
    if any(pattern in message for pattern in NON_RETRYABLE_PATTERNS):
        return False
    if any(pattern in message for pattern in RETRYABLE_PATTERNS):
        return True
    return True


def is_block_error(error: BaseException) -> bool:
    """Whether an error indicates an anti-automation block."""
    if isinstance(error, BlockedError):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in BLOCK_PATTERNS)


async def with_retry(
    operation: Callable[[RetryContext], Awaitable[T]],
    config: RetryConfig,
    operation_name: str = 'operation',
    should_retry: Optional[Callable[[BaseException], bool]] = None,
    sleep: Callable[[float], Awaitable] = asyncio.sleep
) -> T:
    """
    Run an async operation up to config.max_attempts times.

    Args:
        operation: Coroutine function receiving a RetryContext
        config: Retry policy
        operation_name: Label used in log messages
        should_retry: Predicate deciding whether an error is worth another
            attempt; errors it rejects are raised immediately
        sleep: Awaitable sleep taking seconds

    Raises:
        The operation's own exception from the final attempt, unchanged
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, config.max_attempts + 1):
        context = RetryContext(attempt=attempt, max_attempts=config.max_attempts, last_error=last_error)
        try:
            logger.debug(f"{operation_name} - attempt {attempt}/{config.max_attempts}")
            result = await operation(context)
            if attempt > 1:
                logger.info(f"{operation_name} - succeeded on attempt {attempt}")
            return result
        except Exception as e:
            last_error = e

            if attempt >= config.max_attempts:
                logger.error(f"{operation_name} - failed after {config.max_attempts} attempts: {e}")
                raise

            if should_retry is not None and not should_retry(e):
                logger.warning(f"{operation_name} - non-retryable error: {e}")
                raise

            delay = calculate_backoff(attempt, config)
            logger.warning(f"{operation_name} - attempt {attempt} failed: {e}. Retrying in {delay}ms...")
            await sleep(delay / 1000)

    raise last_error


async def retry_navigation(
    navigate: Callable[[], Awaitable[T]],
    config: RetryConfig,
    url: str,
    sleep: Callable[[float], Awaitable] = asyncio.sleep
) -> T:
    """
    Retry a page navigation, surfacing block pages as BlockedError.

    The error of the last attempt is re-raised; if it looks like an
    anti-automation block it is raised as a BlockedError so the caller
    can feed it to the circuit breaker.
    """
    async def attempt_navigation(context: RetryContext) -> T:
        try:
            return await navigate()
        except Exception as e:
            if is_block_error(e):
                logger.warning(f"Block page detected on attempt {context.attempt} for {url[:80]}")
            raise

    try:
        return await with_retry(
            attempt_navigation,
            config,
            f"Navigation to {url[:80]}",
            should_retry=is_retryable_error,
            sleep=sleep,
        )
    except BlockedError:
        raise
    except Exception as e:
        if is_block_error(e):
            raise BlockedError(str(e), url=url) from e
        raise
