"""Rate limiting middleware.

Sliding window admission control backed by Redis, with a circuit breaker
that fails over to an in-process store while Redis is unavailable.
"""

from gatekeeper.app.middleware.rate_limit.dependencies import (
    get_rate_limiter,
    require_rate_limit,
    validate_route_policies,
)
from gatekeeper.app.middleware.rate_limit.keys import ClientIpResolver, build_rate_limit_key
from gatekeeper.app.middleware.rate_limit.local_store import LocalSlidingWindowStore
from gatekeeper.app.middleware.rate_limit.middleware import (
    RateLimitCheck,
    RateLimiter,
    RateLimitMiddleware,
)
from gatekeeper.app.middleware.rate_limit.models import (
    CircuitState,
    CircuitStatus,
    ExactMatch,
    MethodAndPathMatch,
    PrefixMatch,
    RateLimitDecision,
    RateLimitPolicy,
    Scope,
)
from gatekeeper.app.middleware.rate_limit.policies import PolicyRegistry
from gatekeeper.app.middleware.rate_limit.redis_store import RedisSlidingWindowStore
from gatekeeper.app.middleware.rate_limit.resilient import RateLimitStore, ResilientStore

__all__ = [
    # Models
    "RateLimitPolicy",
    "RateLimitDecision",
    "CircuitState",
    "CircuitStatus",
    "Scope",
    "ExactMatch",
    "PrefixMatch",
    "MethodAndPathMatch",
    # Stores
    "RateLimitStore",
    "RedisSlidingWindowStore",
    "LocalSlidingWindowStore",
    "ResilientStore",
    # Policies and keys
    "PolicyRegistry",
    "ClientIpResolver",
    "build_rate_limit_key",
    # Main classes
    "RateLimiter",
    "RateLimitCheck",
    "RateLimitMiddleware",
    "require_rate_limit",
    "get_rate_limiter",
    "validate_route_policies",
]
