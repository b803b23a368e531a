"""In-process sliding window store used when Redis is unavailable.

Correct only within one process: with N workers behind a load balancer the
effective limit while this store is active becomes ``max_requests * N``.
"""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from gatekeeper.app.core.logging import get_logger
from gatekeeper.app.middleware.rate_limit import sliding_window
from gatekeeper.app.middleware.rate_limit.models import RateLimitDecision

logger = get_logger(__name__)


@dataclass
class _Window:
    """Timestamps (ms, ascending) admitted for one key."""
    window_ms: int
    timestamps: List[int] = field(default_factory=list)


class LocalSlidingWindowStore:
    """In-memory sliding window store.

    ``increment`` never awaits, so a single call runs to completion on the
    event loop without interleaving and needs no lock.

    Memory is bounded two ways:
    - A sweep drops fully expired keys at most once per ``sweep_interval_ms``
    - An LRU cap evicts the least recently used 20% once ``max_keys`` is exceeded
    """

    DEFAULT_MAX_ENTRIES = 10000
    SOURCE = "local"

    def __init__(
        self,
        max_keys: int = DEFAULT_MAX_ENTRIES,
        sweep_interval_ms: int = 60000,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the local store.

        Args:
            max_keys: Maximum number of keys to hold (LRU eviction)
            sweep_interval_ms: Minimum spacing between expired-key sweeps
            clock: Time source returning unix seconds
        """
        if max_keys < 1:
            raise ValueError("max_keys must be >= 1")
        self._max_keys = max_keys
        self._sweep_interval_ms = sweep_interval_ms
        self._clock = clock
        self._windows: "OrderedDict[str, _Window]" = OrderedDict()
        self._last_sweep_ms = sliding_window.now_ms(clock)

    def __len__(self) -> int:
        return len(self._windows)

    async def increment(
        self,
        key: str,
        window_ms: int,
        max_requests: int,
        now_ms: Optional[int] = None,
    ) -> RateLimitDecision:
        """Check and consume one slot for ``key``."""
        now = sliding_window.now_ms(self._clock) if now_ms is None else now_ms
        self._maybe_sweep(now)

        window = self._windows.get(key)
        if window is None:
            window = _Window(window_ms=window_ms)
            self._windows[key] = window
            self._enforce_lru_limit()
        else:
            self._windows.move_to_end(key)
            window.window_ms = window_ms

        return sliding_window.increment(
            window.timestamps, now, window_ms, max_requests, source=self.SOURCE
        )

    async def peek(self, key: str, window_ms: int, now_ms: Optional[int] = None) -> int:
        """Count admitted requests in the window without consuming a slot."""
        window = self._windows.get(key)
        if window is None:
            return 0
        now = sliding_window.now_ms(self._clock) if now_ms is None else now_ms
        sliding_window.prune_expired(window.timestamps, now, window_ms)
        return len(window.timestamps)

    async def release(self, key: str, entry_id: str) -> bool:
        """Give back the slot taken by the admission ``entry_id``."""
        window = self._windows.get(key)
        if window is None:
            return False
        return sliding_window.remove_entry(window.timestamps, int(entry_id))

    async def reset(self, key: str) -> None:
        """Forget the window for ``key``."""
        self._windows.pop(key, None)

    async def health_check(self) -> bool:
        return True

    def cleanup(self, now_ms: Optional[int] = None) -> int:
        """Remove keys whose entries have all aged out.

        Returns:
            Number of keys removed.
        """
        now = sliding_window.now_ms(self._clock) if now_ms is None else now_ms
        expired = []
        for key, window in self._windows.items():
            sliding_window.prune_expired(window.timestamps, now, window.window_ms)
            if not window.timestamps:
                expired.append(key)
        for key in expired:
            del self._windows[key]
        self._last_sweep_ms = now
        if expired:
            logger.debug(f"Local rate limit store swept {len(expired)} expired keys")
        return len(expired)

    def clear(self) -> None:
        self._windows.clear()

    def _maybe_sweep(self, now: int) -> None:
        if now - self._last_sweep_ms >= self._sweep_interval_ms:
            self.cleanup(now)

    def _enforce_lru_limit(self) -> None:
        """Enforce max keys using LRU eviction."""
        if len(self._windows) > self._max_keys:
            # Remove oldest 20% of entries
            remove_count = max(1, int(self._max_keys * 0.2))
            for _ in range(remove_count):
                self._windows.popitem(last=False)
            logger.warning(
                f"Local rate limit store exceeded {self._max_keys} keys; evicted {remove_count}"
            )
