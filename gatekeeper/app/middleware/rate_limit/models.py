"""Rate limiting data models.

Policies and route matchers are loaded from configuration and frozen; the
decision and circuit state are plain dataclasses computed at runtime.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Scope(str, Enum):
    """Dimension used to key a rate-limit counter."""
    IP = "ip"
    USER = "user"
    COMPOSITE = "composite"
    API_KEY = "api_key"


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


def _normalize_path(value: str) -> str:
    value = value.strip()
    if not value.startswith("/"):
        value = "/" + value
    if len(value) > 1:
        value = value.rstrip("/")
    return value


class ExactMatch(BaseModel):
    """Matches a single path exactly (trailing slash ignored)."""
    model_config = ConfigDict(frozen=True)

    type: Literal["exact"] = "exact"
    path: str

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        return _normalize_path(v)

    def matches(self, method: str, path: str) -> bool:
        return _normalize_path(path) == self.path

    @property
    def specificity(self) -> tuple[int, int]:
        return (2, len(self.path))


class PrefixMatch(BaseModel):
    """Matches a path and everything below it on segment boundaries."""
    model_config = ConfigDict(frozen=True)

    type: Literal["prefix"] = "prefix"
    prefix: str

    @field_validator("prefix")
    @classmethod
    def normalize_prefix(cls, v: str) -> str:
        return _normalize_path(v)

    def matches(self, method: str, path: str) -> bool:
        return _path_has_prefix(_normalize_path(path), self.prefix)

    @property
    def specificity(self) -> tuple[int, int]:
        return (1, len(self.prefix))


class MethodAndPathMatch(BaseModel):
    """Matches a set of HTTP methods on an exact path or a path prefix."""
    model_config = ConfigDict(frozen=True)

    type: Literal["method_and_path"] = "method_and_path"
    methods: frozenset[str]
    path: str
    match_prefix: bool = False

    @field_validator("path")
    @classmethod
    def normalize_path(cls, v: str) -> str:
        return _normalize_path(v)

    @field_validator("methods", mode="before")
    @classmethod
    def upper_methods(cls, v):
        if isinstance(v, str):
            v = [v]
        return frozenset(m.strip().upper() for m in v if m.strip())

    def matches(self, method: str, path: str) -> bool:
        if method.upper() not in self.methods:
            return False
        path = _normalize_path(path)
        if self.match_prefix:
            return _path_has_prefix(path, self.path)
        return path == self.path

    @property
    def specificity(self) -> tuple[int, int]:
        rank = 3 if self.match_prefix else 4
        return (rank, len(self.path))


def _path_has_prefix(path: str, prefix: str) -> bool:
    if prefix == "/":
        return True
    return path == prefix or path.startswith(prefix + "/")


RouteMatch = Annotated[
    Union[ExactMatch, PrefixMatch, MethodAndPathMatch],
    Field(discriminator="type"),
]


class RateLimitPolicy(BaseModel):
    """A named rate-limit policy bound to one or more routes.

    Attributes:
        name: Unique policy name, also the key namespace
        window_ms: Sliding window length in milliseconds
        max_requests: Admissions per window; 0 marks the routes as exempt
        scope: Which caller identity keys the counter
        route_match: Route matchers that select this policy
        tier_limits: Per-tier max_requests overrides, keyed by the caller's tier
        skip_successful_requests: Give the slot back when the response is
            below 400, so only failed attempts count
    """
    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    window_ms: int = Field(gt=0)
    max_requests: int = Field(ge=0)
    scope: Scope = Scope.IP
    route_match: tuple[RouteMatch, ...] = ()
    tier_limits: dict[str, int] = Field(default_factory=dict)
    skip_successful_requests: bool = False

    @field_validator("tier_limits")
    @classmethod
    def validate_tier_limits(cls, v: dict[str, int]) -> dict[str, int]:
        for tier, limit in v.items():
            if limit < 1:
                raise ValueError(f"tier limit for {tier!r} must be at least 1")
        return v

    @property
    def exempt(self) -> bool:
        return self.max_requests == 0

    def limit_for(self, tier: Optional[str]) -> int:
        """max_requests for a caller in ``tier``; unknown tiers get the default."""
        if tier is None:
            return self.max_requests
        return self.tier_limits.get(tier, self.max_requests)


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the request may proceed
        limit: The policy's max_requests
        remaining: Slots left in the current window (0 when denied)
        reset_at: Unix seconds when the window fully drains
        retry_after_seconds: Wait before retrying; only set when denied
        source: Which path produced the decision (redis, local, fail_open, ...)
        entry_id: Handle of the admitted window entry, used to give it back
    """
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: Optional[int] = None
    source: str = "local"
    entry_id: Optional[str] = None


@dataclass
class CircuitState:
    """Mutable circuit breaker state owned by one ResilientStore."""
    status: CircuitStatus = CircuitStatus.CLOSED
    consecutive_failures: int = 0
    opened_at_ms: Optional[int] = None

    def snapshot(self) -> dict:
        return {
            "status": self.status.value,
            "consecutive_failures": self.consecutive_failures,
            "opened_at_ms": self.opened_at_ms,
        }
