import json
import re
from typing import Annotated, Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_str_list(raw: Any) -> list[str]:
    """Parse a string list (IPs, CIDRs, origins) from JSON or a comma/space separated string."""
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw or raw == "[]":
        return []

    # Prefer JSON, but tolerate plain lists so a misconfigured deployment
    # does not crash at startup.
    if raw.startswith(("[", '"', "'")):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list):
            items = [str(v).strip() for v in parsed]
            return [v for v in items if v]
        if isinstance(parsed, str):
            raw = parsed.strip()

    parts = [p for p in re.split(r"[,\s]+", raw) if p]

    # Deduplicate while preserving order.
    seen: set[str] = set()
    result: list[str] = []
    for part in parts:
        if part in seen:
            continue
        seen.add(part)
        result.append(part)
    return result


_FIFTEEN_MINUTES_MS = 15 * 60 * 1000

# Example tiers; real values are deployment configuration.
DEFAULT_POLICIES: list[dict[str, Any]] = [
    {
        "name": "auth",
        "window_ms": _FIFTEEN_MINUTES_MS,
        "max_requests": 5,
        "scope": "composite",
        "skip_successful_requests": True,
        "route_match": [
            {
                "type": "method_and_path",
                "methods": ["GET", "POST", "PUT", "PATCH", "DELETE"],
                "path": "/api/v1/auth",
                "match_prefix": True,
            }
        ],
    },
    {
        "name": "write",
        "window_ms": _FIFTEEN_MINUTES_MS,
        "max_requests": 20,
        "scope": "user",
        "route_match": [
            {
                "type": "method_and_path",
                "methods": ["POST", "PUT", "PATCH", "DELETE"],
                "path": "/api",
                "match_prefix": True,
            }
        ],
    },
    {
        "name": "read",
        "window_ms": _FIFTEEN_MINUTES_MS,
        "max_requests": 1000,
        "scope": "ip",
        "route_match": [
            {"type": "method_and_path", "methods": ["GET"], "path": "/api", "match_prefix": True}
        ],
    },
    {
        "name": "api",
        "window_ms": _FIFTEEN_MINUTES_MS,
        "max_requests": 100,
        "scope": "ip",
        "route_match": [{"type": "prefix", "prefix": "/api"}],
    },
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Redis settings (shared store). The client is owned by the application
    # lifespan and injected into the store.
    redis_enabled: bool = True
    redis_url: str = "redis://localhost:6379/0"
    redis_max_connections: int = 50

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_policies: list[dict[str, Any]] = Field(
        default_factory=lambda: [dict(p) for p in DEFAULT_POLICIES]
    )
    rate_limit_default_policy: str | None = None
    rate_limit_stack_policies: bool = False  # If True, every matching policy must pass
    rate_limit_key_prefix: str = "ratelimit:"
    rate_limit_message: str = "Too many requests, please try again later."

    # Circuit breaker settings
    rate_limit_failure_threshold: int = 3
    rate_limit_cooldown_ms: int = 15000
    rate_limit_store_timeout_ms: int = 100  # Per-command timeout for Redis
    rate_limit_fail_closed: bool = (
        False  # If True, deny requests when the local fallback store itself fails
    )

    # Local fallback store settings
    rate_limit_local_max_keys: int = 10000
    rate_limit_local_sweep_interval_ms: int = 60000

    # Client identity. Use NoDecode so a plain "10.0.0.0/8, 127.0.0.1" value
    # does not crash JSON parsing at startup.
    rate_limit_trusted_proxies: Annotated[list[str], NoDecode] = []
    rate_limit_bypass_ips: Annotated[list[str], NoDecode] = []
    rate_limit_user_attribute: str = "user_id"
    rate_limit_tier_attribute: str = "user_tier"  # request.state attribute for tier_limits
    rate_limit_api_key_header: str = "X-API-Key"

    # CORS allowed origins (JSON list or comma separated)
    cors_origins: Annotated[list[str], NoDecode] = []

    # Overall HTTP request timeout; store timeouts must stay below it
    request_timeout_seconds: float = 30.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "rate_limit_trusted_proxies", "rate_limit_bypass_ips", "cors_origins", mode="before"
    )
    @classmethod
    def decode_string_lists(cls, v: Any) -> list[str]:
        return _parse_str_list(v)

    @field_validator(
        "rate_limit_failure_threshold",
        "rate_limit_local_max_keys",
        "redis_max_connections",
    )
    @classmethod
    def validate_positive_count(cls, v: int) -> int:
        """Validate counts are positive."""
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator(
        "rate_limit_cooldown_ms",
        "rate_limit_store_timeout_ms",
        "rate_limit_local_sweep_interval_ms",
    )
    @classmethod
    def validate_positive_ms(cls, v: int) -> int:
        """Validate millisecond durations are positive."""
        if v <= 0:
            raise ValueError("durations must be positive")
        return v

    @field_validator("request_timeout_seconds")
    @classmethod
    def validate_request_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        return v

    @model_validator(mode="after")
    def validate_store_timeout_below_request_timeout(self) -> "Settings":
        """The store call must give up before the HTTP request does."""
        if self.rate_limit_store_timeout_ms >= self.request_timeout_seconds * 1000:
            raise ValueError(
                "rate_limit_store_timeout_ms must be shorter than request_timeout_seconds"
            )
        return self

    @property
    def store_timeout_seconds(self) -> float:
        return self.rate_limit_store_timeout_ms / 1000

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()
