"""Custom exceptions for the rate limiting layer."""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from gatekeeper.app.middleware.rate_limit.models import RateLimitDecision


class GatekeeperException(Exception):
    """Base class for gatekeeper exceptions with HTTP status code.

    All custom exceptions should inherit from this class and define
    their specific status_code for consistent HTTP response handling.
    """
    status_code: int = 500

    def __init__(self, message: str = "Gatekeeper error"):
        self.message = message
        super().__init__(message)


class PolicyNotFoundError(GatekeeperException):
    """Raised when a policy name is referenced but not configured.

    This is a startup-time misconfiguration, never a per-request condition.
    """
    status_code = 500

    def __init__(self, policy_name: str):
        self.policy_name = policy_name
        super().__init__(f"Rate limit policy '{policy_name}' is not configured")


class StoreError(GatekeeperException):
    """Raised when the shared store cannot produce a decision.

    Feeds the circuit breaker; never reaches the HTTP layer.
    """
    status_code = 503

    def __init__(self, message: str = "Rate limit store unavailable", operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class StoreTimeoutError(StoreError):
    """Raised when a shared store command exceeds its timeout."""


class StoreConnectionError(StoreError):
    """Raised when the shared store refuses or drops the connection."""


class FallbackStoreFailure(GatekeeperException):
    """Raised when the in-process fallback store itself fails."""
    status_code = 500

    def __init__(self, message: str = "Local rate limit store failed"):
        super().__init__(message)


class RateLimitExceeded(GatekeeperException):
    """Raised when a caller has used up its window.

    This is expected control flow rather than a fault. Maps to HTTP 429.
    """
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(
        self,
        decision: "RateLimitDecision",
        policy_name: str | None = None,
        message: str = "Too many requests, please try again later.",
    ):
        self.decision = decision
        self.policy_name = policy_name
        self.retry_after = decision.retry_after_seconds or 1
        super().__init__(message)

    def to_response(self) -> dict[str, Any]:
        """Convert to the API error body."""
        return {
            "success": False,
            "error": {
                "code": self.error_code,
                "message": self.message,
                "retryAfterSeconds": self.retry_after,
            },
        }

    def headers(self) -> dict[str, str]:
        """Headers that accompany a 429 response."""
        return {
            "Retry-After": str(self.retry_after),
            "X-RateLimit-Limit": str(self.decision.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(self.decision.reset_at),
        }
