"""Retry helpers for establishing host sessions."""
import logging
from functools import wraps
from typing import Any, Callable, Optional

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    before_sleep_log,
)

logger = logging.getLogger(__name__)


# Transport errors worth another attempt
RETRYABLE_EXCEPTIONS = (
    ConnectionRefusedError,
    ConnectionResetError,
    TimeoutError,
    OSError,
    EOFError,
)


def retry_policy(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> AsyncRetrying:
    """Exponential backoff policy; the last exception is re-raised."""
    return AsyncRetrying(
        stop=stop_after_attempt(max(1, max_attempts)),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


def with_retry(
    max_attempts: Optional[int] = None,
    min_wait: Optional[float] = None,
    max_wait: float = 10,
    exceptions: tuple = RETRYABLE_EXCEPTIONS,
) -> Callable:
    """Decorator factory for retrying async backend methods.

    Only session setup is retried. State-changing commands are never
    retried, a failed apply is reported as-is.

    Args:
        max_attempts: Attempts in total (default: self.config.retries)
        min_wait: First backoff in seconds (default: self.config.retry_delay)
        max_wait: Upper bound for the backoff
        exceptions: Exception types that trigger another attempt
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(self, *args: Any, **kwargs: Any) -> Any:
            config = getattr(self, "config", None)
            attempts = max_attempts if max_attempts is not None else getattr(config, "retries", 3)
            wait = min_wait if min_wait is not None else getattr(config, "retry_delay", 1)
            policy = retry_policy(attempts, wait, max_wait, exceptions)
            return await policy(func, self, *args, **kwargs)

        return wrapper

    return decorator
