"""
Error Handling Utilities

Provides:
- Error taxonomy shared by every component
- Timeout decorator
- Retry policy with exponential backoff (tenacity)
- Error classification
"""

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EngineError(Exception):
    """Base class for all engine errors."""
    pass


class InputError(EngineError, ValueError):
    """Raised when caller-supplied input is invalid. Never retried."""
    pass


class EmptyInputError(InputError):
    """Raised when text is missing or blank."""
    pass


class InputTooLongError(InputError):
    """Raised when text exceeds the provider's length limit."""
    pass


class EmptyBatchError(InputError):
    """Raised when a batch request contains no items."""
    pass


class BatchTooLargeError(InputError):
    """Raised when a batch request exceeds the maximum batch size."""
    pass


class InvalidBatchItemError(InputError):
    """Raised when one element of a batch is invalid."""

    def __init__(self, index: int, reason: str):
        self.index = index
        self.reason = reason
        super().__init__(f"text[{index}]: {reason}")


class NotFoundError(EngineError, LookupError):
    """Raised when a referenced message or conversation no longer exists."""
    pass


class ExternalServiceError(EngineError):
    """Raised when a remote collaborator (embedding, completion, notifier) fails."""
    pass


class ParseError(EngineError):
    """Raised when a completion response cannot be parsed."""
    pass


class StaleStateError(EngineError):
    """Raised when a compare-and-set on conversation state loses a race."""
    pass


class DuplicatePatternError(EngineError):
    """Raised when a success pattern already exists for a conversation."""
    pass


class TimeoutError(EngineError):
    """Raised when an operation times out."""
    pass


class RetryExhaustedError(EngineError):
    """Raised when all retry attempts are exhausted."""
    pass


class TaskFailedError(EngineError):
    """Raised to callers waiting on a unit of work that failed terminally."""

    def __init__(self, task_id: str, cause: Optional[BaseException] = None):
        self.task_id = task_id
        self.cause = cause
        super().__init__(f"Task {task_id} failed: {cause}")


NON_RETRYABLE = (InputError, NotFoundError, DuplicatePatternError)


def with_timeout(
    timeout_seconds: float,
    fallback: Optional[Callable[[], T]] = None,
):
    """
    Decorator to add timeout to an async function.

    Args:
        timeout_seconds: Maximum execution time.
        fallback: Optional fallback function if timeout occurs.

    Returns:
        Decorated function.
    """
    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            try:
                return await asyncio.wait_for(
                    func(*args, **kwargs),
                    timeout=timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"[Timeout] {func.__name__} timed out after {timeout_seconds}s"
                )
                if fallback:
                    return fallback()
                raise TimeoutError(
                    f"{func.__name__} timed out after {timeout_seconds}s"
                )
        return wrapper
    return decorator


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff for units of work.

    Owned by the scheduler so job bodies stay free of retry loops.
    Input and not-found errors are never retried.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 8.0

    def retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.initial_delay, min=0, max=self.max_delay),
            retry=retry_if_not_exception_type(NON_RETRYABLE),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def run(self, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run ``func`` (sync or async) under this policy, re-raising the last error."""
        async for attempt in self.retrying():
            with attempt:
                result = func(*args, **kwargs)
                if asyncio.iscoroutine(result):
                    result = await result
                return result


def classify_error(error: Exception) -> str:
    """
    Classify an error for appropriate handling.

    Args:
        error: Exception to classify.

    Returns:
        Error category string.
    """
    if isinstance(error, InputError):
        return "validation"
    if isinstance(error, NotFoundError):
        return "not_found"
    if isinstance(error, ParseError):
        return "parse"
    if isinstance(error, StaleStateError):
        return "conflict"

    error_name = type(error).__name__.lower()
    error_msg = str(error).lower()

    # Network errors
    if any(x in error_name for x in ["connection", "network", "socket"]):
        return "network"
    if any(x in error_msg for x in ["connection refused", "network unreachable"]):
        return "network"

    # Timeout errors
    if "timeout" in error_name or "timeout" in error_msg:
        return "timeout"

    # Authentication errors
    if any(x in error_msg for x in ["401", "403", "unauthorized"]):
        return "auth"

    # Rate limiting
    if "rate" in error_msg or "429" in error_msg:
        return "rate_limit"

    if isinstance(error, ExternalServiceError):
        return "external"

    return "unknown"
