"""
alephoracle/concurrency.py

Concurrency helpers shared by every network-facing call:

- gather_dict: run a mapping of operations concurrently, first failure wins
- bounded: race an operation against a timer
- run_blocking: run a blocking call (requests) in a worker thread, bounded
- RetryPolicy: exponential backoff settings for the watcher

Cancellation of losing operations is best-effort. A cancelled trio task
stops at its next checkpoint; a worker thread is abandoned and its late
result discarded.
"""

import functools
import logging
import random
from typing import Any, Awaitable, Callable, Dict, Hashable, Mapping, Optional, TypeVar

import trio

from .config import RETRY_PARAMS
from .errors import TimeoutExceeded

logger = logging.getLogger("alephoracle.concurrency")

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


async def gather_dict(operations: Mapping[K, Callable[[], Awaitable[Any]]]) -> Dict[K, Any]:
    """
    Run every operation concurrently and collect results by key.

    If any operation raises, the remaining ones are cancelled and the
    first error is re-raised unchanged.

    Args:
        operations: Mapping of key -> zero-argument async callable

    Returns:
        Mapping of key -> result, in the same key order as `operations`
    """
    results: Dict[K, Any] = {}
    failure: Optional[BaseException] = None

    async with trio.open_nursery() as nursery:

        async def run_one(key: K, operation: Callable[[], Awaitable[Any]]) -> None:
            nonlocal failure
            try:
                results[key] = await operation()
            except Exception as e:
                if failure is None:
                    failure = e
                    logger.debug(f"gather_dict: {key!r} failed first: {e}")
                nursery.cancel_scope.cancel()

        for key, operation in operations.items():
            nursery.start_soon(run_one, key, operation)

    if failure is not None:
        raise failure

    return {key: results[key] for key in operations}


async def bounded(operation: Callable[..., Awaitable[T]], timeout: float, *args: Any) -> T:
    """
    Await `operation(*args)` for at most `timeout` seconds.

    Raises:
        TimeoutExceeded: If the timer fires first
    """
    with trio.move_on_after(timeout):
        return await operation(*args)

    # Only reached when the timer cancelled the operation
    raise TimeoutExceeded(timeout)


async def run_blocking(fn: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """
    Run a blocking callable in a worker thread, bounded by `timeout`.

    On timeout the thread is abandoned; whatever it returns later is ignored.
    """
    call = functools.partial(fn, *args, **kwargs)
    return await bounded(
        functools.partial(trio.to_thread.run_sync, call, abandon_on_cancel=True),
        timeout,
    )


class RetryPolicy:
    """Retry settings for transient publish failures."""

    def __init__(
        self,
        max_attempts: int = RETRY_PARAMS["max_attempts"],
        base_delay: float = RETRY_PARAMS["base_delay"],
        max_delay: float = RETRY_PARAMS["max_delay"],
        exponential_base: float = RETRY_PARAMS["exponential_base"],
        jitter: bool = True,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number `attempt` (0-based)."""
        delay = self.base_delay * (self.exponential_base ** attempt)
        if self.jitter:
            delay *= (0.5 + random.random())
        return min(delay, self.max_delay)

    def __repr__(self) -> str:
        return (
            f"RetryPolicy(max_attempts={self.max_attempts}, "
            f"base_delay={self.base_delay}, max_delay={self.max_delay})"
        )
