"""HTTP-facing rate limit orchestration."""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from gatekeeper.app.core.logging import get_log_context, get_logger
from gatekeeper.app.exceptions import RateLimitExceeded
from gatekeeper.app.middleware.rate_limit.keys import (
    ClientIpResolver,
    build_rate_limit_key,
    get_api_key,
    get_user_id,
    ip_in_networks,
    normalize_ip,
    parse_networks,
)
from gatekeeper.app.middleware.rate_limit.models import RateLimitDecision, RateLimitPolicy
from gatekeeper.app.middleware.rate_limit.policies import PolicyRegistry
from gatekeeper.app.middleware.rate_limit.resilient import ResilientStore
from gatekeeper.app.middleware.request_id import get_request_id

logger = get_logger(__name__)

DEFAULT_MESSAGE = "Too many requests, please try again later."


def apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    """Attach X-RateLimit-* headers for an admitted request."""
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    response.headers["X-RateLimit-Reset"] = str(decision.reset_at)


def rate_limit_response(exc: RateLimitExceeded) -> JSONResponse:
    """429 response with Retry-After and the structured error body."""
    return JSONResponse(status_code=exc.status_code, content=exc.to_response(), headers=exc.headers())


def is_successful(status_code: int) -> bool:
    return status_code < 400


@dataclass
class RateLimitCheck:
    """Result of running a request through its policies.

    Attributes:
        decision: Decision to report in headers; None when nothing was checked
        exceeded: Exception to raise or render when a policy denied the request
        refundable: Admissions to give back if the request succeeds, as
            (policy name, key, decision)
    """
    decision: Optional[RateLimitDecision] = None
    exceeded: Optional[RateLimitExceeded] = None
    refundable: List[Tuple[str, str, RateLimitDecision]] = field(default_factory=list)


class RateLimiter:
    """Applies policies to a request and produces a decision.

    Shared by the middleware and the per-route dependency so both derive
    keys, log violations and count metrics the same way.
    """

    def __init__(
        self,
        registry: PolicyRegistry,
        store: ResilientStore,
        ip_resolver: Optional[ClientIpResolver] = None,
        bypass_ips: Iterable[str] = (),
        user_attribute: str = "user_id",
        tier_attribute: str = "user_tier",
        api_key_header: str = "X-API-Key",
        message: str = DEFAULT_MESSAGE,
        metrics: Optional[Any] = None,
    ):
        self.registry = registry
        self.store = store
        self.ip_resolver = ip_resolver or ClientIpResolver()
        self.bypass_networks = parse_networks(bypass_ips)
        self.user_attribute = user_attribute
        self.tier_attribute = tier_attribute
        self.api_key_header = api_key_header
        self.message = message
        self.metrics = metrics

    def client_ip(self, request: Request) -> str:
        # Upstream middleware may already have normalized the address
        upstream = getattr(request.state, "client_ip", None)
        if upstream:
            return normalize_ip(upstream)
        return self.ip_resolver.resolve(request)

    def client_tier(self, request: Request) -> Optional[str]:
        """Tier placed on ``request.state`` by upstream auth, if any."""
        tier = getattr(request.state, self.tier_attribute, None)
        if tier is None or tier == "":
            return None
        return str(tier)

    def is_bypassed(self, client_ip: str) -> bool:
        """Trusted internal callers skip rate limiting entirely."""
        return bool(self.bypass_networks) and ip_in_networks(client_ip, self.bypass_networks)

    async def check(self, request: Request, policies: List[RateLimitPolicy]) -> RateLimitCheck:
        """Run every policy against the request.

        Stops at the first denial; slots taken by earlier policies are kept.
        """
        client_ip = self.client_ip(request)
        if self.is_bypassed(client_ip):
            if self.metrics is not None:
                self.metrics.record_bypass()
            return RateLimitCheck()

        user_id = get_user_id(request, self.user_attribute)
        api_key = get_api_key(request, self.api_key_header)
        tier = self.client_tier(request)
        result = RateLimitCheck()

        for policy in policies:
            key = build_rate_limit_key(policy, client_ip, user_id, api_key)
            limit = policy.limit_for(tier)
            decision = await self.store.increment(key, policy.window_ms, limit)
            if self.metrics is not None:
                self.metrics.record_decision(policy.name, decision.allowed, decision.source)

            if not decision.allowed:
                logger.warning(
                    "rate_limit.exceeded",
                    extra=get_log_context(
                        request_id=get_request_id(request),
                        policy=policy.name,
                        rate_limit_key=key,
                        event="rate_limit.exceeded",
                        path=request.url.path,
                        method=request.method,
                        limit=decision.limit,
                        tier=tier,
                        retry_after_s=decision.retry_after_seconds,
                        decision_source=decision.source,
                    ),
                )
                result.decision = decision
                result.exceeded = RateLimitExceeded(decision, policy.name, self.message)
                return result

            if policy.skip_successful_requests:
                result.refundable.append((policy.name, key, decision))
            # With stacked policies report the tightest window
            if result.decision is None or decision.remaining < result.decision.remaining:
                result.decision = decision

        return result

    async def refund(self, result: RateLimitCheck) -> None:
        """Give back the slots of policies that only count failed requests."""
        for policy_name, key, decision in result.refundable:
            if await self.store.release(key, decision):
                if self.metrics is not None:
                    self.metrics.record_refund(policy_name)
                logger.debug(f"Released successful request slot for policy {policy_name}")


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware to enforce rate limits ahead of route handlers.

    For each request: resolve the policy (pass through when none), derive
    the key, consume a slot through the resilient store, then either attach
    X-RateLimit-* headers to the downstream response or short-circuit with
    a 429 before the handler runs. Policies that skip successful requests
    get their slot back once the response status is below 400.
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        enabled: bool = True,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.enabled = enabled

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        if not self.enabled:
            return await call_next(request)

        policies = self.limiter.registry.resolve_all(request.method, request.url.path)
        if not policies:
            return await call_next(request)

        result = await self.limiter.check(request, policies)
        if result.exceeded is not None:
            return rate_limit_response(result.exceeded)

        response = await call_next(request)

        if result.refundable and is_successful(response.status_code):
            await self.limiter.refund(result)
        if result.decision is not None:
            apply_rate_limit_headers(response, result.decision)

        return response
