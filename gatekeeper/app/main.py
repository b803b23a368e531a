import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Callable, Optional

import redis.asyncio as redis
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from gatekeeper.app.api.metrics import RateLimitMetrics, router as metrics_router
from gatekeeper.app.core.config import Settings, settings
from gatekeeper.app.core.logging import get_logger, setup_logging
from gatekeeper.app.exceptions import GatekeeperException, RateLimitExceeded
from gatekeeper.app.middleware.rate_limit import (
    ClientIpResolver,
    LocalSlidingWindowStore,
    PolicyRegistry,
    RateLimiter,
    RateLimitMiddleware,
    RedisSlidingWindowStore,
    ResilientStore,
    validate_route_policies,
)
from gatekeeper.app.middleware.rate_limit.middleware import rate_limit_response
from gatekeeper.app.middleware.request_id import RequestIdMiddleware, get_request_id


def create_redis_client(app_settings: Settings) -> redis.Redis:
    """Create the shared Redis client.

    Connections are opened lazily, so an unreachable Redis does not block
    startup; the circuit breaker absorbs the failures instead.
    """
    timeout = app_settings.store_timeout_seconds
    return redis.from_url(
        app_settings.redis_url,
        max_connections=app_settings.redis_max_connections,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
    )


def build_rate_limiter(
    app_settings: Settings,
    redis_client: Optional[Any] = None,
    metrics: Optional[RateLimitMetrics] = None,
    clock: Callable[[], float] = time.time,
) -> RateLimiter:
    """Wire the policy registry, stores and circuit breaker from settings.

    Args:
        app_settings: Settings to build from
        redis_client: Shared client; None runs the limiter in local-only mode
        metrics: Sink for decisions and circuit transitions
        clock: Time source for the local store and the breaker

    Raises:
        PolicyNotFoundError: The configured default policy does not exist
        ValueError: Duplicate policy names or bad proxy/bypass entries
    """
    registry = PolicyRegistry.from_config(
        app_settings.rate_limit_policies,
        stack_policies=app_settings.rate_limit_stack_policies,
        default_policy=app_settings.rate_limit_default_policy,
    )

    primary = None
    if redis_client is not None:
        primary = RedisSlidingWindowStore(
            redis_client,
            timeout=app_settings.store_timeout_seconds,
            key_prefix=app_settings.rate_limit_key_prefix,
        )

    store = ResilientStore(
        primary,
        LocalSlidingWindowStore(
            max_keys=app_settings.rate_limit_local_max_keys,
            sweep_interval_ms=app_settings.rate_limit_local_sweep_interval_ms,
            clock=clock,
        ),
        failure_threshold=app_settings.rate_limit_failure_threshold,
        cooldown_ms=app_settings.rate_limit_cooldown_ms,
        fail_closed=app_settings.rate_limit_fail_closed,
        clock=clock,
        metrics=metrics,
    )

    return RateLimiter(
        registry,
        store,
        ip_resolver=ClientIpResolver(app_settings.rate_limit_trusted_proxies),
        bypass_ips=app_settings.rate_limit_bypass_ips,
        user_attribute=app_settings.rate_limit_user_attribute,
        tier_attribute=app_settings.rate_limit_tier_attribute,
        api_key_header=app_settings.rate_limit_api_key_header,
        message=app_settings.rate_limit_message,
        metrics=metrics,
    )


def create_app(
    app_settings: Optional[Settings] = None,
    redis_client: Optional[Any] = None,
    clock: Callable[[], float] = time.time,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        app_settings: Settings override (defaults to the environment)
        redis_client: Pre-built Redis client; when omitted one is created
            from ``redis_url`` if Redis is enabled and closed on shutdown
        clock: Time source for the rate limiter

    Returns:
        Configured FastAPI application instance
    """
    app_settings = app_settings or settings

    # Setup logging
    setup_logging(app_settings)
    logger = get_logger(__name__)

    owns_redis = redis_client is None and app_settings.redis_enabled
    if owns_redis:
        redis_client = create_redis_client(app_settings)
    elif not app_settings.redis_enabled:
        redis_client = None

    metrics = RateLimitMetrics()
    limiter = build_rate_limiter(app_settings, redis_client, metrics=metrics, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Fails startup when a route depends on an unknown policy, and closes
        the Redis client on shutdown when this application created it.
        """
        referenced = validate_route_policies(app.routes, limiter.registry)
        logger.info(
            "Application startup complete",
            extra={
                "policies": limiter.registry.names,
                "route_policies": sorted(set(referenced)),
                "mode": limiter.store.circuit_state["mode"],
                "rate_limit_enabled": app_settings.rate_limit_enabled,
            },
        )

        yield

        if owns_redis:
            await redis_client.aclose()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Gatekeeper",
        description="Sliding window rate limiting backed by Redis with local failover",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.settings = app_settings
    app.state.rate_limiter = limiter
    app.state.rate_limit_store = limiter.store
    app.state.rate_limit_metrics = metrics
    app.state.policy_registry = limiter.registry

    # Add middleware (order matters: last added = first executed)
    # Rate limit middleware (innermost - closest to route)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=limiter,
        enabled=app_settings.rate_limit_enabled,
    )

    # Request ID middleware so limiter log lines carry the request id
    app.add_middleware(RequestIdMiddleware)

    # CORS middleware (outermost - handles preflight requests first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
        allow_headers=["*"],
        expose_headers=[
            "X-Request-ID",
            "Retry-After",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
        ],
        max_age=600,
    )

    # Include routers
    app.include_router(metrics_router, prefix="")

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check; matches no policy, so it is never rate limited."""
        store: ResilientStore = app.state.rate_limit_store
        circuit = store.circuit_state
        if store.local_only:
            redis_status = "disabled"
        elif await store.health_check():
            redis_status = "ok"
        else:
            redis_status = "degraded"

        return {
            "status": "ok",
            "components": {
                "redis": {"status": redis_status},
                "rate_limiter": {
                    "enabled": app_settings.rate_limit_enabled,
                    "circuit": circuit,
                    "policies": app.state.policy_registry.names,
                },
            },
        }

    @app.exception_handler(RateLimitExceeded)
    async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
        """Render RateLimitExceeded raised by route dependencies as HTTP 429."""
        return rate_limit_response(exc)

    @app.exception_handler(GatekeeperException)
    async def gatekeeper_exception_handler(request: Request, exc: GatekeeperException) -> JSONResponse:
        """Handle remaining gatekeeper errors without leaking internals."""
        request_id = get_request_id(request)
        logger.error(
            f"Unhandled gatekeeper error [request_id={request_id}]: {exc.message}",
            extra={"request_id": request_id, "exception_type": type(exc).__name__},
        )
        message = exc.message if app_settings.debug else "Internal server error"
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "internal_error", "message": message, "request_id": request_id},
        )

    return app


# Create the application instance (served with: uvicorn gatekeeper.app.main:app)
app = create_app()
