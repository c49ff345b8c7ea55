"""
Storage Retry Module

Exponential backoff for calls that may hit a transient StorageFailure.
Only retry calls that are safe to repeat: reads, and movements that carry a
reference number.
"""

import logging
import time
from typing import Callable, Optional, TypeVar

from .errors import StorageFailure
from .logging_config import log_action

T = TypeVar("T")

logger = logging.getLogger("cobanker.retry")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (1-based)"""
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def retry_storage_call(func: Callable[[], T], attempts: int = 3, base_delay: float = 0.05,
                       max_delay: float = 1.0, sleep: Callable[[float], None] = time.sleep,
                       description: Optional[str] = None) -> T:
    """
    Call `func`, retrying on StorageFailure.

    Args:
        func: Zero-argument callable to invoke
        attempts: Total number of calls before giving up
        base_delay: First backoff delay in seconds
        max_delay: Upper bound on any single delay
        sleep: Sleep function (injectable for tests)
        description: Name of the call for log lines

    Raises:
        StorageFailure: the last failure once attempts are exhausted
    """
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except StorageFailure as e:
            if attempt >= attempts:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            log_action(
                logger, "warning",
                f"Storage failure, retrying in {delay:.2f}s: {e.message}",
                action="storage_retry",
                resource=description,
                extra={"attempt": attempt, "max_attempts": attempts},
            )
            sleep(delay)
    raise StorageFailure("No attempts made")
