"""Test utility functions for relay tests."""

import time
from typing import Any, Callable, Dict, Optional

from cdc_relay.relay.events import ChangeEvent, Operation


def wait_for_condition(
    condition_func: Callable[[], bool],
    timeout_seconds: float = 10,
    poll_interval: float = 0.02,
    error_message: str = "Condition not met within timeout",
    adaptive: bool = True,
    max_poll_interval: float = 0.2,
) -> bool:
    """
    Wait for a condition to become true with timeout and adaptive polling.

    Args:
        condition_func: Function that returns True when condition is met
        timeout_seconds: Maximum time to wait in seconds
        poll_interval: Initial time between checks in seconds
        error_message: Error message if timeout occurs
        adaptive: Use exponential backoff for polling
        max_poll_interval: Maximum poll interval when using adaptive mode

    Returns:
        True if condition was met

    Raises:
        TimeoutError: If condition not met within timeout
    """
    start_time = time.time()
    last_exception: Optional[Exception] = None
    current_poll_interval = poll_interval
    attempts = 0

    while time.time() - start_time < timeout_seconds:
        try:
            if condition_func():
                return True
        except Exception as e:
            # Store exception but continue polling
            last_exception = e

        attempts += 1
        time.sleep(current_poll_interval)

        if adaptive and attempts > 3:
            current_poll_interval = min(current_poll_interval * 1.5, max_poll_interval)

    elapsed = time.time() - start_time
    if last_exception:
        raise TimeoutError(
            f"{error_message} (timeout: {timeout_seconds}s, elapsed: {elapsed:.1f}s). "
            f"Last exception: {type(last_exception).__name__}: {last_exception}"
        )
    raise TimeoutError(
        f"{error_message} (timeout: {timeout_seconds}s, elapsed: {elapsed:.1f}s, {attempts} attempts)"
    )


def make_event(
    key: Any,
    operation: Operation,
    sequence: int,
    image: Optional[Dict[str, Any]] = None,
    source_id: str = "customers",
) -> ChangeEvent:
    """Build a change event keyed by ``id``."""
    if operation != Operation.DELETE and image is None:
        image = {"id": key}
    if image is not None:
        image = {"id": key, **image}
    return ChangeEvent(
        source_id=source_id,
        key={"id": key},
        operation=operation,
        sequence=sequence,
        after_image=image if operation != Operation.DELETE else None,
    )
