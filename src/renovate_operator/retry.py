"""
Retry-on-conflict for read-modify-write against the remote store.

The store enforces optimistic concurrency through a resource version.
Every mutation re-reads, applies a pure function and writes; when the
write is rejected as a conflict the whole cycle restarts after a short
backoff, a bounded number of times.
"""
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from renovate_operator.errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass(frozen=True)
class RetryConfig:
    """Backoff settings for conflict retries."""
    max_attempts: int = 5
    backoff_base: float = 0.01
    backoff_multiplier: float = 2.0
    backoff_max: float = 1.0
    jitter: float = 0.1


DEFAULT_RETRY = RetryConfig()


def retry_on_conflict(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    operation: str = "update",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run func, retrying while it raises ConflictError.

    Args:
        func: Full read-modify-write cycle (no arguments)
        config: Backoff settings (DEFAULT_RETRY if None)
        operation: Name for logging
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of func()

    Raises:
        ConflictError: If every attempt conflicted
        Exception: Any other error from func, immediately
    """
    config = config or DEFAULT_RETRY
    wait_time = config.backoff_base

    for attempt in range(1, config.max_attempts + 1):
        try:
            return func()
        except ConflictError as e:
            if attempt == config.max_attempts:
                logger.warning(f"{operation}: still conflicting after {attempt} attempts")
                raise

            delay = min(wait_time, config.backoff_max)
            if config.jitter:
                delay += delay * random.uniform(0, config.jitter)
            logger.debug(
                f"{operation}: conflict on attempt {attempt}/{config.max_attempts} ({e}), "
                f"retrying in {delay:.3f}s"
            )
            sleep(delay)
            wait_time *= config.backoff_multiplier

    raise AssertionError("unreachable")


def read_modify_write(
    read: Callable[[], T],
    mutate: Callable[[T], T],
    write: Callable[[T], R],
    config: Optional[RetryConfig] = None,
    operation: str = "update",
    sleep: Callable[[float], None] = time.sleep,
) -> R:
    """
    Read a resource, transform it with a pure function and write it back,
    restarting from the read on every version conflict.

    Args:
        read: Loads the current resource
        mutate: Pure function returning the desired resource
        write: Persists the resource, raising ConflictError on a stale version
        config: Backoff settings
        operation: Name for logging
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the successful write
    """
    return retry_on_conflict(
        lambda: write(mutate(read())),
        config=config,
        operation=operation,
        sleep=sleep,
    )
