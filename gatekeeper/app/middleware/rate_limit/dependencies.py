"""Per-route rate limiting as a FastAPI dependency.

Complements the middleware for routes that need a named policy regardless
of the route table, e.g. a login handler:

    @router.post("/login", dependencies=[Depends(require_rate_limit("auth"))])

The policy name is checked against the registry at application startup
(see ``main.create_app``) so a typo fails fast with PolicyNotFoundError.
"""

from typing import Any, AsyncIterator, Callable, Iterable, List

from fastapi import Request, Response

from gatekeeper.app.middleware.rate_limit.middleware import (
    RateLimiter,
    apply_rate_limit_headers,
    is_successful,
)
from gatekeeper.app.middleware.rate_limit.policies import PolicyRegistry


def get_rate_limiter(request: Request) -> RateLimiter:
    """Return the application's RateLimiter from app state."""
    limiter = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        raise RuntimeError("Rate limiter is not configured on this application")
    return limiter


def require_rate_limit(policy_name: str) -> Callable[[Request, Response], AsyncIterator[None]]:
    """Build a dependency enforcing ``policy_name`` on one route.

    For a policy with ``skip_successful_requests`` the slot is given back
    once the handler returns without raising. A handler that rejects the
    caller must raise (e.g. ``HTTPException(401)``) for the attempt to count.

    Raises (from the dependency):
        PolicyNotFoundError: The policy does not exist
        RateLimitExceeded: The caller's window is full (rendered as 429)
    """

    async def enforce_rate_limit(request: Request, response: Response) -> AsyncIterator[None]:
        limiter = get_rate_limiter(request)
        policy = limiter.registry.get(policy_name)
        if policy.exempt:
            yield
            return

        result = await limiter.check(request, [policy])
        if result.exceeded is not None:
            raise result.exceeded
        if result.decision is not None:
            apply_rate_limit_headers(response, result.decision)

        yield

        # Only reached when the handler did not raise
        if result.refundable and is_successful(response.status_code or 200):
            await limiter.refund(result)

    enforce_rate_limit.policy_name = policy_name  # type: ignore[attr-defined]
    return enforce_rate_limit


def validate_route_policies(routes: Iterable[Any], registry: PolicyRegistry) -> List[str]:
    """Check every ``require_rate_limit`` dependency names a known policy.

    Returns:
        The policy names referenced by the routes.

    Raises:
        PolicyNotFoundError: A route references an unknown policy
    """
    referenced: List[str] = []
    for route in routes:
        dependant = getattr(route, "dependant", None)
        if dependant is None:
            continue
        pending = list(dependant.dependencies)
        while pending:
            dependency = pending.pop()
            name = getattr(dependency.call, "policy_name", None)
            if name is not None:
                registry.get(name)
                referenced.append(name)
            pending.extend(dependency.dependencies)
    return referenced
