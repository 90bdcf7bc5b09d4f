"""Retry utilities for handling transient failures.

Provides a decorator for retrying async operations with bounded exponential
backoff. The worktree coordinator uses it for git lock contention and the
decision gate uses it for reasoning calls.

Only the exception types passed in ``exceptions`` are retried. Anything else,
including structural errors such as ``GraphCycleError`` or
``InvalidTransitionError``, propagates on the first attempt.

Example:
    >>> from conductor.utils.retry import async_retry
    >>>
    >>> @async_retry(max_attempts=4, base_delay=0.2, exceptions=(TransientExternalError,))
    ... async def add_worktree(path: str, branch: str) -> None:
    ...     await git("worktree", "add", "-b", branch, path, "main")

Backoff Formula:
    delay = min(base_delay * backoff_factor ** (attempt - 1), max_delay)
    For base_delay=1.0, backoff_factor=2.0: 1s, 2s, 4s, 8s, ... capped at max_delay
"""

import asyncio
import functools
from collections.abc import Callable
from typing import Any

import structlog

log = structlog.get_logger(__name__)


def backoff_delay(attempt: int, base_delay: float, backoff_factor: float, max_delay: float) -> float:
    """Return the delay to sleep after the given failed attempt (1-based)."""
    return min(base_delay * backoff_factor ** (attempt - 1), max_delay)


def async_retry(
    max_attempts: int = 3,
    base_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    exceptions: tuple[type[BaseException], ...] = (Exception,),
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator for async functions with bounded exponential backoff.

    Args:
        max_attempts: Maximum number of calls before giving up. Must be >= 1.
        base_delay: Delay in seconds after the first failed attempt.
        backoff_factor: Multiplier applied to the delay after each failure.
        max_delay: Upper bound for any single delay.
        exceptions: Exception types that trigger a retry. Other exceptions
            propagate immediately.

    Returns:
        A decorator that wraps async functions with retry logic.

    Raises:
        ValueError: If max_attempts is less than 1.
        The last caught exception once all attempts are exhausted.

    Note:
        Each retry is logged at WARNING level as ``retry_attempt`` and the
        final failure at ERROR level as ``retry_exhausted``.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            for attempt in range(1, max_attempts + 1):
                try:
                    return await func(*args, **kwargs)
                except exceptions as e:
                    if attempt == max_attempts:
                        log.error(
                            "retry_exhausted",
                            function=func.__name__,
                            attempts=attempt,
                            error=str(e),
                        )
                        raise

                    delay = backoff_delay(attempt, base_delay, backoff_factor, max_delay)
                    log.warning(
                        "retry_attempt",
                        function=func.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("Retry logic error")

        return wrapper

    return decorator
