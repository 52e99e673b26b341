"""
Retry policies.

Exponential backoff with jitter for transient failures in external services
(token minting and exchange, AI reply generation).
"""

import asyncio
import inspect
import random
from dataclasses import dataclass
from typing import Optional, Callable, TypeVar, Any, Awaitable, Union, Tuple, Type

from review_responder.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    
    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: float = 0.1  # Random jitter factor (0-1)
    
    retryable_exceptions: Tuple[Type[BaseException], ...] = (Exception,)
    non_retryable_exceptions: Tuple[Type[BaseException], ...] = ()
    
    def get_delay(self, attempt: int) -> float:
        """Calculate delay for a given attempt (0-based)."""
        delay = min(
            self.initial_delay * (self.multiplier ** attempt),
            self.max_delay
        )
        
        jitter_range = delay * self.jitter
        delay += random.uniform(-jitter_range, jitter_range)
        
        return max(0.0, delay)
    
    def is_retryable(self, error: Exception) -> bool:
        """Check if an error is retryable."""
        # Non-retryable takes precedence
        if isinstance(error, self.non_retryable_exceptions):
            return False
        
        return isinstance(error, self.retryable_exceptions)


class RetryExhaustedError(Exception):
    """Raised when all retries are exhausted."""
    
    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"All {attempts} attempts exhausted{detail}")


async def retry_with_backoff(
    func: Callable[..., Union[T, Awaitable[T]]],
    *args: Any,
    policy: Optional[RetryPolicy] = None,
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    **kwargs: Any,
) -> T:
    """
    Execute function with retry and backoff.
    
    Args:
        func: Function or coroutine function to execute
        *args: Function arguments
        policy: Retry policy configuration
        on_retry: Callback on each retry (attempt, error)
        **kwargs: Function keyword arguments
        
    Returns:
        Function result
        
    Raises:
        RetryExhaustedError: If all retries exhausted
        Exception: The original error when it is not retryable
    """
    policy = policy or RetryPolicy()
    last_error: Optional[Exception] = None
    
    for attempt in range(policy.max_retries + 1):
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result
            
        except Exception as e:
            last_error = e
            
            if not policy.is_retryable(e):
                logger.warning(
                    "Non-retryable error",
                    error=str(e),
                    attempt=attempt + 1,
                )
                raise
            
            if attempt >= policy.max_retries:
                break
            
            delay = policy.get_delay(attempt)
            
            logger.warning(
                "Retry scheduled",
                attempt=attempt + 1,
                max_retries=policy.max_retries,
                delay=delay,
                error=str(e),
            )
            
            if on_retry:
                on_retry(attempt + 1, e)
            
            await asyncio.sleep(delay)
    
    raise RetryExhaustedError(policy.max_retries + 1, last_error)


# Pre-configured policies

AUTH_RETRY_POLICY = RetryPolicy(
    max_retries=3,
    initial_delay=0.5,
    max_delay=8.0,
    multiplier=2.0,
    jitter=0.1,
)

AI_RETRY_POLICY = RetryPolicy(
    max_retries=2,
    initial_delay=1.0,
    max_delay=30.0,
    multiplier=2.0,
    jitter=0.1,
)
