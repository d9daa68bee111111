"""Retry helpers for background jobs hitting transient infrastructure failures."""

import time
import random
from typing import Callable, Any, Optional, Tuple, Type

from .exceptions import WorkflowEngineError, TransientError, StorageError
from .logging import JobRetryLogger


class RetryConfig:
    """Retry budget and backoff of a background job.

    Engine errors are retried only when they are flagged recoverable; other
    exceptions only when they are instances of ``retryable_exceptions``.
    """

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Tuple[Type[Exception], ...] = (TransientError, StorageError, ConnectionError)
    ):
        self.max_attempts = max(max_attempts, 1)
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions

    @classmethod
    def for_jobs(cls, max_retries: int, base_delay: float = 1.0) -> 'RetryConfig':
        """Build a config allowing ``max_retries`` retries after the first attempt."""
        return cls(max_attempts=max_retries + 1, base_delay=base_delay)

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(exception, WorkflowEngineError):
            return exception.recoverable
        return isinstance(exception, self.retryable_exceptions)

    def get_delay(self, attempt: int) -> float:
        """Exponential backoff for the retry following ``attempt``, capped at ``max_delay``."""
        delay = min(self.base_delay * (self.exponential_base ** (attempt - 1)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random() * 0.5
        return delay


def execute_with_retry(
    func: Callable,
    config: RetryConfig,
    *args,
    name: Optional[str] = None,
    **kwargs
) -> Any:
    """
    Call ``func`` until it succeeds or the retry budget is spent.

    Args:
        func: Callable to run
        config: Retry budget and backoff
        *args: Positional arguments for ``func``
        name: Label used in retry logs; the callable's name when omitted
        **kwargs: Keyword arguments for ``func``

    Returns:
        The value returned by ``func``

    Raises:
        Exception: The last error once it is not retryable or attempts run out
    """
    retry_logger = JobRetryLogger(name or getattr(func, "__name__", type(func).__name__))
    attempt = 1
    while True:
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    retry_logger.gave_up(e, attempt)
                raise
            delay = config.get_delay(attempt)
            retry_logger.retrying(e, attempt, config.max_attempts, delay)
            if delay > 0:
                time.sleep(delay)
            attempt += 1
            continue

        if attempt > 1:
            retry_logger.recovered(attempt)
        return result
