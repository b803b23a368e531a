"""Rate limiting metrics and the endpoint that exposes them.

The collector is the sink for rate limit violations and circuit breaker
transitions. Recording is synchronous: callers update counters on the event
loop right after a store call completes, so no lock is required.
"""

import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Request

from gatekeeper.app.core.logging import get_logger

logger = get_logger(__name__)
router = APIRouter()


@dataclass
class PolicyMetrics:
    """Counters for a single policy."""

    allowed: int = 0
    denied: int = 0


@dataclass
class RateLimitMetrics:
    """Collects rate limiter metrics.

    Tracks:
    - Allowed/denied decisions per policy
    - Decisions per source (redis, local, fail_open, fail_closed)
    - Circuit breaker transitions (bounded history)
    - Local fallback store failures
    - Slots given back for successful requests, per policy
    """

    MAX_TRANSITIONS = 100

    _policies: Dict[str, PolicyMetrics] = field(
        default_factory=lambda: defaultdict(PolicyMetrics)
    )
    _sources: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _transitions: List[Dict[str, Any]] = field(default_factory=list)
    _fallback_failures: int = 0
    _bypassed: int = 0
    _refunded: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    _start_time: float = field(default_factory=time.time)

    def record_decision(self, policy: str, allowed: bool, source: str) -> None:
        """Record one decision for ``policy``."""
        metrics = self._policies[policy]
        if allowed:
            metrics.allowed += 1
        else:
            metrics.denied += 1
        self._sources[source] += 1

    def record_bypass(self) -> None:
        self._bypassed += 1

    def record_refund(self, policy: str) -> None:
        self._refunded[policy] += 1

    def record_circuit_transition(self, from_status: str, to_status: str, reason: str) -> None:
        """Record a circuit breaker state change."""
        self._transitions.append(
            {
                "from": from_status,
                "to": to_status,
                "reason": reason,
                "at": time.time(),
            }
        )
        if len(self._transitions) > self.MAX_TRANSITIONS:
            del self._transitions[: len(self._transitions) - self.MAX_TRANSITIONS]

    def record_fallback_failure(self) -> None:
        self._fallback_failures += 1

    @property
    def transitions(self) -> List[Dict[str, Any]]:
        return list(self._transitions)

    def get_summary(self) -> Dict[str, Any]:
        """Get a JSON-serializable summary of all counters."""
        total_allowed = sum(m.allowed for m in self._policies.values())
        total_denied = sum(m.denied for m in self._policies.values())
        total = total_allowed + total_denied
        return {
            "uptime_seconds": time.time() - self._start_time,
            "total_decisions": total,
            "total_allowed": total_allowed,
            "total_denied": total_denied,
            "denial_rate": total_denied / total if total else 0.0,
            "bypassed": self._bypassed,
            "policies": {
                name: {"allowed": m.allowed, "denied": m.denied}
                for name, m in self._policies.items()
            },
            "sources": dict(self._sources),
            "refunded": dict(self._refunded),
            "fallback_failures": self._fallback_failures,
            "circuit_transitions": self.transitions,
        }

    def reset(self) -> None:
        self._policies.clear()
        self._sources.clear()
        self._transitions.clear()
        self._fallback_failures = 0
        self._bypassed = 0
        self._refunded.clear()
        self._start_time = time.time()


@router.get("/metrics/rate-limit")
async def rate_limit_metrics(request: Request) -> Dict[str, Any]:
    """Rate limiter counters plus the current circuit breaker snapshot."""
    metrics: Optional[RateLimitMetrics] = getattr(request.app.state, "rate_limit_metrics", None)
    store = getattr(request.app.state, "rate_limit_store", None)
    summary = metrics.get_summary() if metrics is not None else {}
    if store is not None:
        summary["circuit"] = store.circuit_state
    return summary
