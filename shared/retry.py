"""
Retry mechanism for calls into external collaborators.
"""

import asyncio
import random
from typing import Any, Optional, Callable, Awaitable

from shared.logging import get_logger


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(self,
                 max_attempts: int = 3,
                 base_delay: float = 1.0,
                 max_delay: float = 60.0,
                 exponential_base: float = 2.0,
                 jitter: bool = True,
                 backoff_strategy: str = "exponential"):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.backoff_strategy = backoff_strategy


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def retry_on_exception(exceptions: tuple = (Exception,),
                       config: Optional[RetryConfig] = None,
                       reraise: bool = False,
                       operation: Optional[str] = None) -> Callable:
    """Decorator for retrying async functions on exceptions.

    Args:
        exceptions: Exception types that trigger another attempt
        config: Attempt count and backoff; defaults to :class:`RetryConfig`
        reraise: Let the last underlying exception propagate once attempts
            are exhausted instead of wrapping it in :class:`RetryError`
        operation: Name used in log events; defaults to the function name
    """

    if config is None:
        config = RetryConfig()
    logger = get_logger("rules.retry")

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        name = operation or func.__name__

        async def wrapper(*args, **kwargs) -> Any:
            attempt = 1
            while True:
                try:
                    result = await func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= config.max_attempts:
                        logger.error(
                            "All retry attempts exhausted",
                            operation=name,
                            attempts=attempt,
                            error=str(e)
                        )
                        if reraise:
                            raise
                        raise RetryError(
                            f"Operation {name} failed after {attempt} attempts",
                            last_exception=e,
                            attempts=attempt
                        ) from e

                    delay = _calculate_delay(attempt, config)
                    logger.warning(
                        "Retrying after failure",
                        operation=name,
                        attempt=attempt,
                        delay=round(delay, 3),
                        error=str(e)
                    )
                    await asyncio.sleep(delay)
                    attempt += 1
                    continue

                if attempt > 1:
                    logger.info("Retry succeeded", operation=name, attempt=attempt)
                return result

        wrapper.__name__ = name
        wrapper.__doc__ = func.__doc__
        return wrapper

    return decorator


def _calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before the attempt following ``attempt``."""
    if config.backoff_strategy == "exponential":
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
    elif config.backoff_strategy == "linear":
        delay = config.base_delay * attempt
    else:
        delay = config.base_delay

    delay = min(delay, config.max_delay)
    if config.jitter:
        # +/- 10%
        delay += random.uniform(-delay * 0.1, delay * 0.1)
    return max(0.0, delay)
