"""End-to-end tests for the rate limit middleware and route dependency."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.testclient import TestClient
from redis import exceptions as redis_exceptions

from gatekeeper.app.core.config import Settings
from gatekeeper.app.exceptions import PolicyNotFoundError, StoreError
from gatekeeper.app.main import create_app
from gatekeeper.app.middleware.rate_limit import CircuitStatus, require_rate_limit


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def set_offset(self, seconds: float) -> None:
        self.now = 1000.0 + seconds


def make_settings(**overrides) -> Settings:
    values = {
        "redis_enabled": False,
        "rate_limit_policies": [
            {
                "name": "api",
                "window_ms": 60000,
                "max_requests": 3,
                "scope": "ip",
                "route_match": [{"type": "prefix", "prefix": "/api"}],
            },
            {
                "name": "auth",
                "window_ms": 900000,
                "max_requests": 2,
                "scope": "composite",
                "route_match": [{"type": "exact", "path": "/login"}],
            },
            {
                "name": "public",
                "window_ms": 60000,
                "max_requests": 0,
                "route_match": [{"type": "prefix", "prefix": "/api/public"}],
            },
            {
                "name": "signin",
                "window_ms": 60000,
                "max_requests": 2,
                "skip_successful_requests": True,
                "route_match": [{"type": "exact", "path": "/signin"}],
            },
            {
                "name": "otp",
                "window_ms": 60000,
                "max_requests": 2,
                "skip_successful_requests": True,
            },
            {
                "name": "partner",
                "window_ms": 3600000,
                "max_requests": 2,
                "scope": "api_key",
                "tier_limits": {"pro": 4},
                "route_match": [{"type": "prefix", "prefix": "/partner"}],
            },
        ],
    }
    values.update(overrides)
    return Settings(**values)


def install_identity(app: FastAPI) -> None:
    """Stand-in for upstream auth: copies test headers onto request.state."""

    @app.middleware("http")
    async def identity(request: Request, call_next):
        client_ip = request.headers.get("X-Test-Client")
        if client_ip:
            request.state.client_ip = client_ip
        user_id = request.headers.get("X-Test-User")
        if user_id:
            request.state.user_id = user_id
        tier = request.headers.get("X-Test-Tier")
        if tier:
            request.state.user_tier = tier
        return await call_next(request)


def build_app(clock: FakeClock, redis_client=None, **overrides) -> FastAPI:
    app = create_app(make_settings(**overrides), redis_client=redis_client, clock=clock)
    app.state.handler_calls = 0

    @app.get("/api/items")
    async def items(request: Request):
        request.app.state.handler_calls += 1
        return {"items": []}

    @app.get("/api/public/docs")
    async def docs():
        return {"docs": True}

    @app.post("/login")
    async def login():
        return {"ok": True}

    @app.post("/session", dependencies=[Depends(require_rate_limit("auth"))])
    async def session():
        return {"ok": True}

    @app.post("/signin")
    async def signin(fail: bool = False):
        if fail:
            raise HTTPException(status_code=401, detail="Invalid credentials")
        return {"ok": True}

    @app.post("/otp", dependencies=[Depends(require_rate_limit("otp"))])
    async def otp(fail: bool = False):
        if fail:
            raise HTTPException(status_code=401, detail="Invalid code")
        return {"ok": True}

    @app.get("/partner/data")
    async def partner_data():
        return {"data": []}

    @app.get("/broken")
    async def broken():
        raise StoreError("lost connection to 10.0.0.5")

    install_identity(app)
    return app


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def app(clock):
    return build_app(clock)


@pytest.fixture
def client(app):
    with TestClient(app) as test_client:
        yield test_client


CLIENT = {"X-Test-Client": "1.2.3.4"}


class TestSlidingWindowOverHttp:
    """Sliding window behaviour seen by a client."""

    def test_window_progression(self, client, clock, app):
        remaining = []
        for second in (0, 1, 2):
            clock.set_offset(second)
            response = client.get("/api/items", headers=CLIENT)
            assert response.status_code == 200
            remaining.append(response.headers["X-RateLimit-Remaining"])
        assert remaining == ["2", "1", "0"]
        assert client.get("/api/items", headers=CLIENT).headers["X-RateLimit-Limit"] == "3"

    def test_denied_request(self, client, clock, app):
        for second in (0, 1, 2):
            clock.set_offset(second)
            client.get("/api/items", headers=CLIENT)

        clock.set_offset(3)
        response = client.get("/api/items", headers=CLIENT)

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "57"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert response.headers["X-RateLimit-Reset"] == "1062"
        assert response.json() == {
            "success": False,
            "error": {
                "code": "RATE_LIMIT_EXCEEDED",
                "message": "Too many requests, please try again later.",
                "retryAfterSeconds": 57,
            },
        }
        # Handler never ran for the rejected request
        assert app.state.handler_calls == 3

    def test_entries_age_out_of_window(self, client, clock):
        for second in (0, 1, 2):
            clock.set_offset(second)
            client.get("/api/items", headers=CLIENT)
        clock.set_offset(3)
        assert client.get("/api/items", headers=CLIENT).status_code == 429

        # Only the t=0 entry has left the window; t=1 and t=2 still count
        clock.set_offset(61)
        response = client.get("/api/items", headers=CLIENT)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "0"

        # t=1 and t=2 have left; only t=61 remains
        clock.set_offset(63)
        response = client.get("/api/items", headers=CLIENT)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "1"

    def test_clients_are_isolated(self, client):
        for _ in range(3):
            client.get("/api/items", headers=CLIENT)

        response = client.get("/api/items", headers={"X-Test-Client": "5.6.7.8"})

        assert response.status_code == 200

    def test_rejection_is_logged_with_hashed_key(self, client):
        headers = {**CLIENT, "X-Request-ID": "req-log"}
        with patch("gatekeeper.app.middleware.rate_limit.middleware.logger") as mock_logger:
            for _ in range(4):
                client.get("/api/items", headers=headers)

        mock_logger.warning.assert_called_once()
        extra = mock_logger.warning.call_args.kwargs["extra"]
        assert extra["event"] == "rate_limit.exceeded"
        assert extra["policy"] == "api"
        assert "1.2.3.4" not in extra["rate_limit_key"]
        assert extra["request_id"] == "req-log"


class TestUnmatchedRoutes:
    """Routes without a policy never touch the store."""

    def test_health_makes_no_store_calls(self, client, app):
        store = app.state.rate_limit_store
        store.increment = AsyncMock(wraps=store.increment)

        for _ in range(50):
            response = client.get("/health", headers=CLIENT)
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers

        store.increment.assert_not_awaited()

    def test_health_payload(self, client):
        body = client.get("/health").json()

        assert body["status"] == "ok"
        assert body["components"]["redis"]["status"] == "disabled"
        assert body["components"]["rate_limiter"]["circuit"]["mode"] == "local_only"

    def test_exempt_policy(self, client):
        for _ in range(10):
            response = client.get("/api/public/docs", headers=CLIENT)
            assert response.status_code == 200
            assert "X-RateLimit-Limit" not in response.headers


class TestConfiguration:
    """Settings that change middleware behaviour."""

    def test_disabled(self, clock):
        app = build_app(clock, rate_limit_enabled=False)
        with TestClient(app) as client:
            for _ in range(5):
                response = client.get("/api/items", headers=CLIENT)
                assert response.status_code == 200
                assert "X-RateLimit-Limit" not in response.headers

    def test_bypass_ips(self, clock):
        app = build_app(clock, rate_limit_bypass_ips="10.0.0.0/8")
        with TestClient(app) as client:
            for _ in range(5):
                response = client.get("/api/items", headers={"X-Test-Client": "10.1.2.3"})
                assert response.status_code == 200
            assert client.get("/api/items", headers=CLIENT).status_code == 200
        assert app.state.rate_limit_metrics.get_summary()["bypassed"] == 5

    def test_request_id_on_rejected_response(self, client):
        for _ in range(3):
            client.get("/api/items", headers=CLIENT)

        response = client.get("/api/items", headers={**CLIENT, "X-Request-ID": "req-123"})

        assert response.status_code == 429
        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        response = client.get("/api/items", headers=CLIENT)

        assert len(response.headers["X-Request-ID"]) == 36

    def test_error_response_carries_request_id(self, client):
        response = client.get("/broken", headers={"X-Request-ID": "req-err"})

        assert response.status_code == 503
        assert response.json() == {
            "error": "internal_error",
            "message": "Internal server error",
            "request_id": "req-err",
        }


class TestRequireRateLimit:
    """Per-route dependency."""

    def test_enforces_named_policy(self, client):
        headers = {**CLIENT, "X-Test-User": "alice"}
        assert client.post("/session", headers=headers).status_code == 200
        response = client.post("/session", headers=headers)
        assert response.status_code == 200
        assert response.headers["X-RateLimit-Remaining"] == "0"

        response = client.post("/session", headers=headers)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) == 900

    def test_composite_scope_separates_users(self, client):
        for _ in range(2):
            client.post("/session", headers={**CLIENT, "X-Test-User": "alice"})

        response = client.post("/session", headers={**CLIENT, "X-Test-User": "bob"})

        assert response.status_code == 200

    def test_unknown_policy_fails_startup(self, clock):
        app = build_app(clock)

        @app.get("/typo", dependencies=[Depends(require_rate_limit("nope"))])
        async def typo():
            return {}

        with pytest.raises(PolicyNotFoundError):
            with TestClient(app):
                pass


class TestSkipSuccessfulRequests:
    """Policies that only count failed attempts."""

    def test_successful_attempts_do_not_count(self, client, app):
        for _ in range(5):
            response = client.post("/signin", headers=CLIENT)
            assert response.status_code == 200

        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert app.state.rate_limit_metrics.get_summary()["refunded"] == {"signin": 5}

    def test_failed_attempts_count(self, client):
        for _ in range(2):
            assert client.post("/signin?fail=true", headers=CLIENT).status_code == 401

        response = client.post("/signin", headers=CLIENT)

        assert response.status_code == 429

    def test_route_dependency_refunds_success(self, client):
        for _ in range(4):
            assert client.post("/otp", headers=CLIENT).status_code == 200
        for _ in range(2):
            assert client.post("/otp?fail=true", headers=CLIENT).status_code == 401

        response = client.post("/otp", headers=CLIENT)

        assert response.status_code == 429


class TestTierLimits:
    """Per-tier limits and API key scoped counters."""

    def test_tier_raises_limit(self, client):
        headers = {**CLIENT, "X-API-Key": "key-a", "X-Test-Tier": "pro"}

        statuses = [client.get("/partner/data", headers=headers).status_code for _ in range(5)]

        assert statuses == [200, 200, 200, 200, 429]
        assert client.get("/partner/data", headers=headers).headers["X-RateLimit-Limit"] == "4"

    def test_unknown_tier_uses_default_limit(self, client):
        headers = {**CLIENT, "X-API-Key": "key-a", "X-Test-Tier": "free"}

        statuses = [client.get("/partner/data", headers=headers).status_code for _ in range(3)]

        assert statuses == [200, 200, 429]

    def test_api_keys_have_separate_windows(self, client):
        for _ in range(2):
            client.get("/partner/data", headers={**CLIENT, "X-API-Key": "key-a"})

        assert client.get("/partner/data", headers={**CLIENT, "X-API-Key": "key-a"}).status_code == 429
        assert client.get("/partner/data", headers={**CLIENT, "X-API-Key": "key-b"}).status_code == 200


class TestMetricsEndpoint:

    def test_counts_decisions(self, client):
        for _ in range(4):
            client.get("/api/items", headers=CLIENT)

        body = client.get("/metrics/rate-limit").json()

        assert body["policies"]["api"] == {"allowed": 3, "denied": 1}
        assert body["sources"]["local"] == 4
        assert body["circuit"]["status"] == "closed"


class TestSharedStoreOutage:
    """Redis failing underneath the middleware."""

    @pytest.fixture
    def redis_client(self):
        redis = MagicMock()
        redis.eval = AsyncMock(side_effect=redis_exceptions.ConnectionError("refused"))
        redis.ping = AsyncMock(return_value=True)
        return redis

    def test_outage_opens_circuit_and_recovers(self, clock, redis_client):
        app = build_app(clock, redis_client=redis_client, redis_enabled=True)
        store = app.state.rate_limit_store

        with TestClient(app) as client:
            with patch("gatekeeper.app.middleware.rate_limit.resilient.logger") as mock_logger:
                for _ in range(3):
                    assert client.get("/api/items", headers=CLIENT).status_code == 200
            assert store.state.status is CircuitStatus.OPEN
            opened = [
                c for c in mock_logger.warning.call_args_list
                if c.kwargs.get("extra", {}).get("event") == "circuit_open"
            ]
            assert len(opened) == 1

            # Served locally without touching Redis; the local window is full
            response = client.get("/api/items", headers=CLIENT)
            assert response.status_code == 429
            assert redis_client.eval.await_count == 3

            # Redis recovers; after the cooldown the health check closes the circuit
            redis_client.eval.side_effect = None
            redis_client.eval.return_value = [1, 0, 1020000, 1020000, 1020000]
            clock.set_offset(20)
            response = client.get("/api/items", headers=CLIENT)

            assert response.status_code == 200
            assert store.state.status is CircuitStatus.CLOSED
            redis_client.ping.assert_awaited_once()
            assert redis_client.eval.await_count == 4

    def test_health_reports_degraded_redis(self, clock, redis_client):
        app = build_app(clock, redis_client=redis_client, redis_enabled=True)
        with TestClient(app) as client:
            for _ in range(3):
                client.get("/api/items", headers=CLIENT)
            body = client.get("/health").json()

        assert body["components"]["redis"]["status"] == "degraded"
        assert body["components"]["rate_limiter"]["circuit"]["status"] == "open"
