"""Circuit breaker composing the shared Redis store with the local store.

State machine:

    CLOSED    --failure_threshold consecutive StoreErrors-->  OPEN
    OPEN      --cooldown_ms elapsed, next call-->             HALF_OPEN
    HALF_OPEN --health check succeeds-->                      CLOSED
    HALF_OPEN --health check fails-->                         OPEN (cooldown restarts)

While OPEN, and while the single HALF_OPEN health check runs, every call is
served by the local store without touching Redis. A Redis failure never
reaches the caller: it is converted into a local decision.
"""

import math
import time
from typing import Any, Callable, Optional, Protocol

from gatekeeper.app.core.logging import get_logger
from gatekeeper.app.exceptions import FallbackStoreFailure, StoreError
from gatekeeper.app.middleware.rate_limit import sliding_window
from gatekeeper.app.middleware.rate_limit.models import (
    CircuitState,
    CircuitStatus,
    RateLimitDecision,
)

logger = get_logger(__name__)


class RateLimitStore(Protocol):
    """Contract shared by the Redis and local stores."""

    async def increment(
        self, key: str, window_ms: int, max_requests: int, now_ms: Optional[int] = None
    ) -> RateLimitDecision: ...

    async def release(self, key: str, entry_id: str) -> bool: ...

    async def health_check(self) -> bool: ...


class ResilientStore:
    """Routes rate limit calls to Redis while healthy, locally otherwise.

    Each instance owns its own CircuitState; two instances never share
    breaker state.

    Usage:
        store = ResilientStore(
            RedisSlidingWindowStore(client),
            LocalSlidingWindowStore(),
            failure_threshold=3,
            cooldown_ms=15000,
        )
        decision = await store.increment("api:ip:ab12", 60000, 100)
    """

    def __init__(
        self,
        primary: Optional[RateLimitStore],
        fallback: RateLimitStore,
        failure_threshold: int = 3,
        cooldown_ms: int = 15000,
        fail_closed: bool = False,
        clock: Callable[[], float] = time.time,
        metrics: Optional[Any] = None,
        state: Optional[CircuitState] = None,
    ):
        """Initialize the proxy.

        Args:
            primary: Shared store; None runs in local-only mode
            fallback: Local store used while the circuit is not closed
            failure_threshold: Consecutive failures that open the circuit
            cooldown_ms: Time the circuit stays open before probing
            fail_closed: Deny instead of allow when the local store breaks
            clock: Time source returning unix seconds
            metrics: Optional sink with record_circuit_transition/record_fallback_failure
            state: Circuit state to own; a fresh one by default
        """
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if cooldown_ms <= 0:
            raise ValueError("cooldown_ms must be positive")
        self._primary = primary
        self._fallback = fallback
        self._failure_threshold = failure_threshold
        self._cooldown_ms = cooldown_ms
        self._fail_closed = fail_closed
        self._clock = clock
        self._metrics = metrics
        self._state = state if state is not None else CircuitState()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def circuit_state(self) -> dict:
        """Snapshot of the breaker for monitoring."""
        snapshot = self._state.snapshot()
        snapshot["mode"] = "distributed" if self._primary is not None else "local_only"
        return snapshot

    @property
    def local_only(self) -> bool:
        return self._primary is None

    async def increment(
        self, key: str, window_ms: int, max_requests: int, now_ms: Optional[int] = None
    ) -> RateLimitDecision:
        """Check and consume one slot, always resolving to a decision."""
        if self._primary is None:
            return await self._increment_fallback(key, window_ms, max_requests, now_ms)

        if self._state.status is CircuitStatus.OPEN:
            if not self._cooldown_elapsed():
                return await self._increment_fallback(key, window_ms, max_requests, now_ms)
            if not await self._try_recover():
                return await self._increment_fallback(key, window_ms, max_requests, now_ms)
        elif self._state.status is CircuitStatus.HALF_OPEN:
            # Another request is checking recovery
            return await self._increment_fallback(key, window_ms, max_requests, now_ms)

        try:
            decision = await self._primary.increment(key, window_ms, max_requests, now_ms)
        except StoreError as e:
            self._record_failure(e)
            return await self._increment_fallback(key, window_ms, max_requests, now_ms)

        self._record_success()
        return decision

    async def health_check(self) -> bool:
        """Report whether decisions are currently served by the shared store."""
        if self._primary is None:
            return await self._fallback.health_check()
        return self._state.status is CircuitStatus.CLOSED

    async def reset(self, key: str) -> None:
        """Drop ``key`` from both stores; Redis errors are logged, not raised."""
        if self._primary is not None:
            try:
                await self._primary.reset(key)
            except StoreError as e:
                logger.warning(f"Failed to reset rate limit key in shared store: {e}")
        await self._fallback.reset(key)

    async def release(self, key: str, decision: RateLimitDecision) -> bool:
        """Give back the slot consumed by an admitted ``decision``.

        The entry is removed from the store that admitted it. Degraded
        decisions hold no entry. Shared-store errors are logged, not raised.

        Returns:
            Whether an entry was removed.
        """
        if not decision.allowed or decision.entry_id is None:
            return False
        if decision.source == "redis":
            if self._primary is None:
                return False
            try:
                return await self._primary.release(key, decision.entry_id)
            except StoreError as e:
                logger.warning(f"Failed to release rate limit entry in shared store: {e}")
                return False
        if decision.source == "local":
            return await self._fallback.release(key, decision.entry_id)
        return False

    def reset_circuit(self) -> None:
        """Manually close the circuit."""
        previous = self._state.status
        self._state.status = CircuitStatus.CLOSED
        self._state.consecutive_failures = 0
        self._state.opened_at_ms = None
        if previous is not CircuitStatus.CLOSED:
            self._transition(previous, CircuitStatus.CLOSED, "manual_reset")

    def _now(self) -> int:
        return sliding_window.now_ms(self._clock)

    def _cooldown_elapsed(self) -> bool:
        opened_at = self._state.opened_at_ms or 0
        return self._now() - opened_at >= self._cooldown_ms

    async def _try_recover(self) -> bool:
        """Run the single HALF_OPEN health check against the shared store."""
        self._state.status = CircuitStatus.HALF_OPEN
        logger.info(
            "Rate limiter circuit half_open: checking shared store health",
            extra={"event": "circuit_half_open", "circuit_state": CircuitStatus.HALF_OPEN.value},
        )
        self._transition(CircuitStatus.OPEN, CircuitStatus.HALF_OPEN, "cooldown_elapsed")
        try:
            healthy = await self._primary.health_check()
        except StoreError as e:
            self._reopen(f"health check failed: {e}")
            return False
        except Exception as e:
            self._reopen(f"health check raised {type(e).__name__}: {e}")
            return False
        except BaseException:
            # Cancelled mid-check: the circuit must not stay half open
            self._reopen("health check cancelled")
            raise
        if not healthy:
            self._reopen("health check reported unhealthy")
            return False

        self._state.status = CircuitStatus.CLOSED
        self._state.consecutive_failures = 0
        self._state.opened_at_ms = None
        logger.info(
            "Rate limiter circuit_closed: shared store recovered",
            extra={"event": "circuit_closed", "circuit_state": CircuitStatus.CLOSED.value},
        )
        self._transition(CircuitStatus.HALF_OPEN, CircuitStatus.CLOSED, "recovered")
        return True

    def _reopen(self, reason: str) -> None:
        self._state.status = CircuitStatus.OPEN
        self._state.opened_at_ms = self._now()
        logger.warning(
            f"Rate limiter circuit_reopened: {reason}",
            extra={"event": "circuit_reopened", "circuit_state": CircuitStatus.OPEN.value},
        )
        self._transition(CircuitStatus.HALF_OPEN, CircuitStatus.OPEN, "recovery_failed")

    def _record_failure(self, error: StoreError) -> None:
        # Runs synchronously after the failed await; concurrent failures see
        # each other's increments.
        self._state.consecutive_failures += 1
        failures = self._state.consecutive_failures

        if self._state.status is CircuitStatus.CLOSED and failures >= self._failure_threshold:
            self._state.status = CircuitStatus.OPEN
            self._state.opened_at_ms = self._now()
            logger.warning(
                f"Rate limiter circuit_open after {failures} consecutive failures; "
                "using local store",
                extra={
                    "event": "circuit_open",
                    "circuit_state": CircuitStatus.OPEN.value,
                    "error": str(error),
                },
            )
            self._transition(CircuitStatus.CLOSED, CircuitStatus.OPEN, type(error).__name__)
        else:
            logger.debug(
                f"Shared store failure ({failures}/{self._failure_threshold}): {error}"
            )

    def _record_success(self) -> None:
        if self._state.status is CircuitStatus.CLOSED:
            self._state.consecutive_failures = 0

    def _transition(self, from_status: CircuitStatus, to_status: CircuitStatus, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.record_circuit_transition(from_status.value, to_status.value, reason)

    async def _increment_fallback(
        self, key: str, window_ms: int, max_requests: int, now_ms: Optional[int]
    ) -> RateLimitDecision:
        try:
            return await self._fallback.increment(key, window_ms, max_requests, now_ms)
        except Exception as e:
            failure = FallbackStoreFailure(f"Local rate limit store failed: {e}")
            logger.exception(
                str(failure),
                extra={"event": "fallback_store_failure", "fail_closed": self._fail_closed},
            )
            if self._metrics is not None:
                self._metrics.record_fallback_failure()
            return self._degraded_decision(window_ms, max_requests)

    def _degraded_decision(self, window_ms: int, max_requests: int) -> RateLimitDecision:
        now = self._now()
        if self._fail_closed:
            return RateLimitDecision(
                allowed=False,
                limit=max_requests,
                remaining=0,
                reset_at=math.ceil((now + window_ms) / 1000),
                retry_after_seconds=max(1, math.ceil(window_ms / 1000)),
                source="fail_closed",
            )
        return RateLimitDecision(
            allowed=True,
            limit=max_requests,
            remaining=max(0, max_requests - 1),
            reset_at=math.ceil((now + window_ms) / 1000),
            retry_after_seconds=None,
            source="fail_open",
        )
