"""
Tests for rate limiting and the admin IP whitelist.
"""
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from services.request_guards import (
    FixedWindowRateLimiter,
    IPWhitelistMiddleware,
    RateLimitMiddleware,
    client_ip,
    ip_matches,
    is_ip_allowed,
)


def make_app(middleware, **options):
    app = FastAPI()
    app.add_middleware(middleware, **options)

    @app.get("/api/health")
    async def health():
        return {"status": "healthy"}

    @app.get("/api/audit-logs")
    async def audit_logs():
        return {"ok": True}

    @app.get("/api/goals")
    async def goals():
        return {"ok": True}

    return app


class TestIsIpAllowed:

    def test_exact_match(self):
        assert is_ip_allowed("10.1.2.3", ["10.1.2.3"])

    def test_cidr_match(self):
        assert is_ip_allowed("192.168.4.17", ["192.168.4.0/24"])
        assert not is_ip_allowed("192.168.5.17", ["192.168.4.0/24"])

    def test_loopback_always_allowed(self):
        assert is_ip_allowed("127.0.0.1", [])
        assert is_ip_allowed("::1", [])

    def test_missing_or_invalid_ip(self):
        assert not is_ip_allowed(None, ["10.0.0.0/8"])
        assert not is_ip_allowed("not-an-ip", ["10.0.0.0/8"])

    def test_malformed_entry_ignored(self):
        assert is_ip_allowed("10.0.0.5", ["bogus/99", "10.0.0.5"])


class TestFixedWindowRateLimiter:

    def test_limit_within_window(self):
        limiter = FixedWindowRateLimiter(limit=2, window_seconds=60)
        assert limiter.hit("ip", now=0) == (True, 0)
        assert limiter.hit("ip", now=1) == (True, 0)
        allowed, retry_after = limiter.hit("ip", now=10)
        assert allowed is False
        assert retry_after == 50

    def test_window_resets(self):
        limiter = FixedWindowRateLimiter(limit=1, window_seconds=60)
        limiter.hit("ip", now=0)
        assert limiter.hit("ip", now=61)[0] is True

    def test_keys_are_independent(self):
        limiter = FixedWindowRateLimiter(limit=1, window_seconds=60)
        limiter.hit("a", now=0)
        assert limiter.hit("b", now=0)[0] is True

    def test_prune(self):
        limiter = FixedWindowRateLimiter(limit=1, window_seconds=60)
        limiter.hit("a", now=0)
        limiter.prune(now=100)
        assert limiter._windows == {}


class TestClientIp:
    """Forwarding headers only count when the peer is a trusted proxy."""

    def make_client(self, trusted_proxies):
        app = FastAPI()

        @app.get("/ip")
        async def ip(request: Request):
            return {"ip": client_ip(request, trusted_proxies)}

        return TestClient(app)

    def test_header_ignored_without_trusted_proxies(self):
        client = self.make_client([])
        response = client.get("/ip", headers={"X-Forwarded-For": "127.0.0.1", "X-Real-IP": "10.0.0.1"})
        assert response.json()["ip"] == "testclient"

    def test_header_used_behind_trusted_proxy(self):
        client = self.make_client(["testclient"])
        response = client.get("/ip", headers={"X-Forwarded-For": "203.0.113.9"})
        assert response.json()["ip"] == "203.0.113.9"

    def test_rightmost_untrusted_hop_wins(self):
        client = self.make_client(["testclient", "10.0.0.0/8"])
        response = client.get("/ip", headers={"X-Forwarded-For": "127.0.0.1, 203.0.113.9, 10.1.1.1"})
        assert response.json()["ip"] == "203.0.113.9"

    def test_real_ip_fallback(self):
        client = self.make_client(["testclient"])
        assert client.get("/ip", headers={"X-Real-IP": "198.51.100.4"}).json()["ip"] == "198.51.100.4"

    def test_ip_matches(self):
        assert ip_matches("10.9.8.7", ["10.0.0.0/8"])
        assert ip_matches("testclient", ["testclient"])
        assert not ip_matches(None, ["10.0.0.0/8"])


class TestRateLimitMiddleware:

    def test_returns_429_over_limit(self):
        client = TestClient(make_app(RateLimitMiddleware, limit_per_minute=2))
        assert client.get("/api/goals").status_code == 200
        assert client.get("/api/goals").status_code == 200
        response = client.get("/api/goals")
        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "RATE_LIMITED"
        assert body["error"]["message"] == "Too many requests, please try again later"
        assert body["error"]["details"]["retry_after"] == int(response.headers["Retry-After"])

    def test_rotating_forwarded_header_shares_one_bucket(self):
        client = TestClient(make_app(RateLimitMiddleware, limit_per_minute=2))
        codes = [client.get("/api/goals", headers={"X-Forwarded-For": f"203.0.113.{i}"}).status_code
                 for i in range(5)]
        assert codes == [200, 200, 429, 429, 429]

    def test_trusted_proxy_limits_per_forwarded_client(self):
        client = TestClient(make_app(RateLimitMiddleware, limit_per_minute=1, trusted_proxies=["testclient"]))
        assert client.get("/api/goals", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 200
        assert client.get("/api/goals", headers={"X-Forwarded-For": "203.0.113.2"}).status_code == 200
        assert client.get("/api/goals", headers={"X-Forwarded-For": "203.0.113.1"}).status_code == 429

    def test_health_is_exempt(self):
        client = TestClient(make_app(RateLimitMiddleware, limit_per_minute=1))
        for _ in range(3):
            assert client.get("/api/health").status_code == 200


class TestIPWhitelistMiddleware:

    def whitelisted(self, whitelist=("10.0.0.0/8",), **options):
        return TestClient(make_app(IPWhitelistMiddleware, enabled=True, whitelist=list(whitelist),
                                   path_prefixes=["/api/audit-logs"], **options))

    def test_blocks_admin_path_from_unknown_ip(self):
        response = self.whitelisted(trusted_proxies=["testclient"]).get(
            "/api/audit-logs", headers={"X-Forwarded-For": "203.0.113.9"})
        assert response.status_code == 403
        assert response.json() == {
            "success": False,
            "error": {
                "code": "FORBIDDEN",
                "message": "Access denied. Your IP address is not whitelisted for admin access.",
                "details": {"ip_address": "203.0.113.9"},
            },
        }

    def test_allows_whitelisted_ip_behind_trusted_proxy(self):
        response = self.whitelisted(trusted_proxies=["testclient"]).get(
            "/api/audit-logs", headers={"X-Forwarded-For": "10.2.3.4"})
        assert response.status_code == 200

    def test_spoofed_loopback_header_is_ignored(self):
        client = self.whitelisted(whitelist=["10.0.0.1"])
        assert client.get("/api/audit-logs").status_code == 403
        spoofed = client.get("/api/audit-logs", headers={"X-Forwarded-For": "127.0.0.1"})
        assert spoofed.status_code == 403
        assert spoofed.json()["error"]["details"]["ip_address"] == "testclient"

    def test_other_paths_untouched(self):
        response = self.whitelisted(whitelist=[]).get("/api/goals")
        assert response.status_code == 200

    def test_disabled(self):
        client = TestClient(make_app(IPWhitelistMiddleware, enabled=False, whitelist=[],
                                     path_prefixes=["/api/audit-logs"]))
        assert client.get("/api/audit-logs").status_code == 200
