"""Route-to-policy resolution.

Policies are loaded once at startup. Every route matcher of every policy is
flattened into one list ordered most-specific first:

    method_and_path (exact) > method_and_path (prefix) > exact > prefix

with longer paths ahead of shorter ones and declaration order breaking ties.
Resolution walks the list and the first match wins. A request that matches
nothing bypasses rate limiting entirely, which is how health checks stay
exempt.
"""

from typing import Any, Iterable, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter, ValidationError

from gatekeeper.app.core.logging import get_logger
from gatekeeper.app.exceptions import PolicyNotFoundError
from gatekeeper.app.middleware.rate_limit.models import RateLimitPolicy, RouteMatch

logger = get_logger(__name__)

_POLICY_LIST = TypeAdapter(List[RateLimitPolicy])


class PolicyRegistry:
    """Resolves ``(method, path)`` to the policies that govern it.

    Attributes:
        stack_policies: When True every matching policy applies (all must
            pass); otherwise only the most specific one does.
    """

    def __init__(
        self,
        policies: Iterable[RateLimitPolicy],
        stack_policies: bool = False,
        default_policy: Optional[str] = None,
    ):
        """Build the registry.

        Args:
            policies: Policies in declaration order
            stack_policies: Apply every match instead of the most specific
            default_policy: Name of a policy that must exist (startup check)

        Raises:
            ValueError: Duplicate policy names
            PolicyNotFoundError: default_policy is not among the policies
        """
        self._policies: dict[str, RateLimitPolicy] = {}
        for policy in policies:
            if policy.name in self._policies:
                raise ValueError(f"Duplicate rate limit policy name: {policy.name}")
            self._policies[policy.name] = policy

        self.stack_policies = stack_policies
        self.default_policy = self.get(default_policy) if default_policy else None

        entries: List[Tuple[Tuple[int, int], int, RouteMatch, RateLimitPolicy]] = []
        order = 0
        for policy in self._policies.values():
            for matcher in policy.route_match:
                entries.append((matcher.specificity, order, matcher, policy))
                order += 1
        # Highest specificity first; stable on declaration order
        entries.sort(key=lambda e: (-e[0][0], -e[0][1], e[1]))
        self._matchers: List[Tuple[RouteMatch, RateLimitPolicy]] = [
            (matcher, policy) for _, _, matcher, policy in entries
        ]

    @classmethod
    def from_config(
        cls,
        raw_policies: Sequence[Any],
        stack_policies: bool = False,
        default_policy: Optional[str] = None,
    ) -> "PolicyRegistry":
        """Validate raw policy dicts (e.g. from settings) into a registry."""
        try:
            policies = _POLICY_LIST.validate_python(list(raw_policies))
        except ValidationError as e:
            logger.error(f"Invalid rate limit policy configuration: {e}")
            raise
        registry = cls(policies, stack_policies=stack_policies, default_policy=default_policy)
        logger.info(
            f"Loaded {len(policies)} rate limit policies",
            extra={"policies": registry.names, "stack_policies": stack_policies},
        )
        return registry

    @property
    def names(self) -> List[str]:
        return list(self._policies)

    def __len__(self) -> int:
        return len(self._policies)

    def get(self, name: str) -> RateLimitPolicy:
        """Look up a policy by name.

        Raises:
            PolicyNotFoundError: No policy with that name
        """
        try:
            return self._policies[name]
        except KeyError:
            raise PolicyNotFoundError(name) from None

    def resolve(self, method: str, path: str) -> Optional[RateLimitPolicy]:
        """Return the policy for a request, or None to bypass.

        The first (most specific) matching route decides. If that policy is
        exempt (``max_requests == 0``) the request bypasses limiting.
        """
        for matcher, policy in self._matchers:
            if matcher.matches(method, path):
                return None if policy.exempt else policy
        return None

    def resolve_all(self, method: str, path: str) -> List[RateLimitPolicy]:
        """Return the policies that apply to a request.

        In stacking mode every distinct matching, non-exempt policy is
        returned in specificity order; otherwise at most the single result
        of ``resolve``. An exempt most-specific match exempts the request in
        both modes.
        """
        if not self.stack_policies:
            policy = self.resolve(method, path)
            return [policy] if policy is not None else []

        matched: List[RateLimitPolicy] = []
        seen: set[str] = set()
        for matcher, policy in self._matchers:
            if policy.name in seen or not matcher.matches(method, path):
                continue
            if not seen and policy.exempt:
                return []
            seen.add(policy.name)
            if not policy.exempt:
                matched.append(policy)
        return matched
