"""Retry with backoff for transient failures."""

import asyncio
import time
import random
from typing import Callable, Any, Optional, List, Type, Tuple, Awaitable
from functools import wraps

from .exceptions import WorkflowEngineError, ToolExecutionError, StorageError
from .logging import RetryLogger


class RetryConfig:
    """Configuration for retry behavior.

    ``max_attempts`` counts the first call, so a node configured with
    ``max_retries=3`` runs with ``max_attempts=4``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max(1, max_attempts)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [ToolExecutionError, StorageError]

    @classmethod
    def from_retries(cls, max_retries: int, base_delay: float = 1.0, max_delay: float = 60.0,
                     exponential_base: float = 2.0, jitter: bool = True) -> 'RetryConfig':
        """Build a config from a "number of retries after the first attempt" value."""
        return cls(
            max_attempts=max(0, max_retries) + 1,
            base_delay=base_delay,
            max_delay=max_delay,
            exponential_base=exponential_base,
            jitter=jitter,
        )

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False

        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False

        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable

        return True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for the given attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Spread retries of concurrent executions apart
            delay *= (0.5 + random.random() * 0.5)

        return delay


def with_retry(config: Optional[RetryConfig] = None):
    """Decorator to add retry logic to synchronous functions."""
    if config is None:
        config = RetryConfig()

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            return _execute_with_retry(func, config, *args, **kwargs)
        return wrapper

    return decorator


def _execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    retry_logger = RetryLogger(func.__qualname__)

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    retry_logger.gave_up(e, attempt)
                raise

            delay = config.get_delay(attempt)
            retry_logger.attempt_failed(e, attempt, config.max_attempts, delay)
            time.sleep(delay)


async def execute_async_with_retry(
    func: Callable[[int], Awaitable[Any]],
    config: RetryConfig,
    operation: str,
    on_retry: Optional[Callable[[Exception, int], None]] = None
) -> Tuple[Any, int]:
    """
    Await ``func(attempt_index)`` until it succeeds or retries are exhausted.

    Args:
        func: Coroutine factory receiving the zero-based attempt index
        config: Retry configuration
        operation: Name used in retry logs
        on_retry: Called with the failed attempt's error and index before sleeping

    Returns:
        Tuple of (result, zero-based index of the successful attempt)

    Raises:
        The last exception once it is not retryable or attempts are exhausted
    """
    retry_logger = RetryLogger(operation)

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await func(attempt - 1)
            if attempt > 1:
                retry_logger.recovered(attempt)
            return result, attempt - 1
        except Exception as e:
            if isinstance(e, ToolExecutionError):
                e.retry_attempt = attempt - 1

            if not config.should_retry(e, attempt):
                if attempt > 1:
                    retry_logger.gave_up(e, attempt)
                raise

            if on_retry is not None:
                on_retry(e, attempt - 1)

            delay = config.get_delay(attempt)
            retry_logger.attempt_failed(e, attempt, config.max_attempts, delay)
            await asyncio.sleep(delay)

    # Unreachable: the final attempt either returns or raises above
    raise RuntimeError(f"Retry loop for {operation} exited without a result")
