"""Common utility functions."""

import hashlib
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar

T = TypeVar("T")


def key_token(key: Dict[str, Any]) -> str:
    """
    Canonical string form of a primary key.

    Column order does not matter; values are rendered with ``str`` when they
    are not JSON native so that a Decimal or UUID key hashes the same way on
    every run.

    Args:
        key: Primary-key columns and values

    Returns:
        Stable JSON string
    """
    return json.dumps(key, sort_keys=True, default=str, separators=(",", ":"))


def stable_hash(value: str) -> int:
    """Process-independent hash of a string (``hash()`` is salted per process)."""
    return int.from_bytes(hashlib.md5(value.encode("utf-8")).digest()[:8], "big")


def lsn_to_int(lsn: Any) -> int:
    """
    Convert a Postgres LSN to an integer.

    Args:
        lsn: Either an int or the textual form ``"16/B374D848"``

    Returns:
        Integer WAL position

    Raises:
        ValueError: If the value is not a valid LSN
    """
    if isinstance(lsn, int):
        if lsn < 0:
            raise ValueError(f"Negative LSN: {lsn}")
        return lsn

    if isinstance(lsn, str) and "/" in lsn:
        high, low = lsn.split("/", 1)
        return (int(high, 16) << 32) + int(low, 16)

    if isinstance(lsn, str) and lsn.isdigit():
        return int(lsn)

    raise ValueError(f"Invalid LSN: {lsn!r}")


def int_to_lsn(value: int) -> str:
    """Render an integer WAL position in Postgres ``X/Y`` form."""
    return f"{value >> 32:X}/{value & 0xFFFFFFFF:X}"


def parse_cdc_timestamp(ts_value: Any) -> Optional[datetime]:
    """
    Parse CDC timestamp from various formats.

    Args:
        ts_value: Timestamp value (datetime, epoch milliseconds, or ISO string)

    Returns:
        Timezone-aware datetime, or None when the value is missing or unparseable
    """
    if ts_value is None:
        return None

    if isinstance(ts_value, datetime):
        return ts_value if ts_value.tzinfo else ts_value.replace(tzinfo=timezone.utc)

    if isinstance(ts_value, (int, float)) and not isinstance(ts_value, bool):
        # Epoch milliseconds
        return datetime.fromtimestamp(ts_value / 1000.0, tz=timezone.utc)

    if isinstance(ts_value, str):
        try:
            parsed = datetime.fromisoformat(ts_value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)

    return None


def backoff_delays(
    initial_delay: float, backoff_factor: float, max_delay: float
):
    """Yield an endless capped exponential sequence of delays."""
    delay = initial_delay
    while True:
        yield min(delay, max_delay)
        delay = min(delay * backoff_factor, max_delay)


def retry_with_backoff(
    func: Callable[[], T],
    max_retries: int = 3,
    initial_delay: float = 1.0,
    backoff_factor: float = 2.0,
    max_delay: float = 30.0,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Retry function with exponential backoff.

    Args:
        func: Function to retry
        max_retries: Maximum number of retries after the first attempt
        initial_delay: Initial delay in seconds
        backoff_factor: Backoff multiplier
        max_delay: Upper bound for a single delay
        retry_on: Exception types that trigger a retry; others propagate at once
        on_retry: Called with (attempt, exception, delay) before each sleep
        sleep: Sleep function (injectable for tests)

    Returns:
        Function result

    Raises:
        Last exception if all retries fail
    """
    delays = backoff_delays(initial_delay, backoff_factor, max_delay)

    for attempt in range(max_retries + 1):
        try:
            return func()
        except retry_on as e:
            if attempt >= max_retries:
                raise
            delay = next(delays)
            if on_retry is not None:
                on_retry(attempt + 1, e, delay)
            sleep(delay)

    raise RuntimeError("unreachable")  # pragma: no cover
