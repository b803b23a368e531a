"""Sliding window admission logic shared by every store.

A window holds one timestamp per admitted request. On each call entries
older than ``now - window_ms`` are discarded, the rest are counted, and the
request is admitted only while the count is below the limit. Stores are
responsible for running these steps atomically; this module only decides.
"""

import bisect
import math
import time
from typing import Callable, MutableSequence, Optional

from gatekeeper.app.middleware.rate_limit.models import RateLimitDecision


def now_ms(clock: Callable[[], float] = time.time) -> int:
    """Current time from ``clock`` (unix seconds) as integer milliseconds."""
    return int(clock() * 1000)


def window_start(now: int, window_ms: int) -> int:
    """Oldest timestamp still inside the window ending at ``now``."""
    return now - window_ms


def prune_expired(timestamps: MutableSequence[int], now: int, window_ms: int) -> int:
    """Drop entries older than the window from a sorted timestamp list.

    Returns:
        Number of entries removed.
    """
    cutoff = bisect.bisect_left(timestamps, window_start(now, window_ms))
    if cutoff:
        del timestamps[:cutoff]
    return cutoff


def allowed_decision(
    limit: int,
    count: int,
    now: int,
    window_ms: int,
    source: str,
    entry_id: Optional[str] = None,
) -> RateLimitDecision:
    """Decision for a request admitted when ``count`` entries were in the window."""
    return RateLimitDecision(
        allowed=True,
        limit=limit,
        remaining=max(0, limit - count - 1),
        reset_at=math.ceil((now + window_ms) / 1000),
        retry_after_seconds=None,
        source=source,
        entry_id=entry_id,
    )


def denied_decision(
    limit: int, oldest: int, newest: int, now: int, window_ms: int, source: str
) -> RateLimitDecision:
    """Decision for a request rejected against a full window.

    The caller may retry once the oldest entry ages out; the window fully
    drains once the newest one does.
    """
    retry_after = math.ceil((oldest + window_ms - now) / 1000)
    return RateLimitDecision(
        allowed=False,
        limit=limit,
        remaining=0,
        reset_at=math.ceil((newest + window_ms) / 1000),
        retry_after_seconds=max(1, retry_after),
        source=source,
    )


def increment(
    timestamps: MutableSequence[int],
    now: int,
    window_ms: int,
    max_requests: int,
    source: str = "local",
) -> RateLimitDecision:
    """Run one admission check against an in-memory sorted timestamp list.

    Mutates ``timestamps``: expired entries are removed and, when admitted,
    ``now`` is inserted in order.
    """
    if max_requests < 1:
        raise ValueError("max_requests must be >= 1")
    prune_expired(timestamps, now, window_ms)
    count = len(timestamps)
    if count < max_requests:
        bisect.insort(timestamps, now)
        return allowed_decision(max_requests, count, now, window_ms, source, entry_id=str(now))
    return denied_decision(max_requests, timestamps[0], timestamps[-1], now, window_ms, source)


def remove_entry(timestamps: MutableSequence[int], timestamp: int) -> bool:
    """Remove one entry recorded at ``timestamp``.

    Entries admitted in the same millisecond are interchangeable, so any one
    of them may go.

    Returns:
        Whether an entry was removed.
    """
    index = bisect.bisect_left(timestamps, timestamp)
    if index < len(timestamps) and timestamps[index] == timestamp:
        del timestamps[index]
        return True
    return False
