"""
HRMS Approvals - Request Guards

Starlette middleware for per-IP rate limiting and the admin-route IP
whitelist.
"""

import ipaddress
import logging
import math
import time
from typing import Dict, Iterable, List, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESSES = {"127.0.0.1", "::1", "localhost"}


def ip_matches(ip: Optional[str], entries: Iterable[str]) -> bool:
    """Exact or CIDR match (IPv4 and IPv6) against a list of entries."""
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return ip in [entry.strip() for entry in entries]

    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            if "/" in entry:
                if address in ipaddress.ip_network(entry, strict=False):
                    return True
            elif address == ipaddress.ip_address(entry):
                return True
        except ValueError:
            logger.warning("Ignoring malformed address entry: %s", entry)
    return False


def client_ip(request: Request, trusted_proxies: Iterable[str] = ()) -> Optional[str]:
    """
    The socket peer, unless that peer is a trusted proxy.

    Behind a trusted proxy, X-Forwarded-For is walked from the right and the
    first hop that is not itself a trusted proxy wins. X-Real-IP is used
    when the proxy sends no X-Forwarded-For.
    """
    peer = request.client.host if request.client else None
    trusted = list(trusted_proxies)
    if not trusted or not ip_matches(peer, trusted):
        return peer

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        for hop in reversed(hops):
            if not ip_matches(hop, trusted):
                return hop
        return hops[0] if hops else peer
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return peer


def is_ip_allowed(ip: Optional[str], whitelist: Iterable[str]) -> bool:
    """Whitelist match. A loopback peer is always allowed."""
    if not ip:
        return False
    if ip in LOOPBACK_ADDRESSES:
        return True
    try:
        if ipaddress.ip_address(ip).is_loopback:
            return True
    except ValueError:
        return False
    return ip_matches(ip, whitelist)


def error_body(code: str, message: str, details: Dict) -> Dict:
    return {"success": False, "error": {"code": code, "message": message, "details": details}}


class FixedWindowRateLimiter:
    """Counts hits per key in fixed windows."""

    def __init__(self, limit: int, window_seconds: int = 60):
        self.limit = limit
        self.window_seconds = window_seconds
        self._windows: Dict[str, Tuple[float, int]] = {}

    def hit(self, key: str, now: Optional[float] = None) -> Tuple[bool, int]:
        """Register a hit. Returns (allowed, retry_after_seconds)."""
        now = time.monotonic() if now is None else now
        start, count = self._windows.get(key, (now, 0))
        if now - start >= self.window_seconds:
            start, count = now, 0
        count += 1
        self._windows[key] = (start, count)
        if count > self.limit:
            return False, max(1, math.ceil(start + self.window_seconds - now))
        return True, 0

    def prune(self, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._windows[key]


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Reject with 429 once an IP exceeds limit requests per window."""

    def __init__(self, app, limit_per_minute: int, window_seconds: int = 60,
                 exempt_paths: Iterable[str] = ("/api/health",), trusted_proxies: Iterable[str] = ()):
        super().__init__(app)
        self.limiter = FixedWindowRateLimiter(limit_per_minute, window_seconds)
        self.exempt_paths = set(exempt_paths)
        self.trusted_proxies = list(trusted_proxies)
        self._requests_since_prune = 0

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths:
            return await call_next(request)

        self._requests_since_prune += 1
        if self._requests_since_prune >= 1000:
            self.limiter.prune()
            self._requests_since_prune = 0

        ip = client_ip(request, self.trusted_proxies) or "unknown"
        allowed, retry_after = self.limiter.hit(ip)
        if not allowed:
            logger.warning("Rate limit exceeded: ip=%s path=%s", ip, request.url.path)
            return JSONResponse(
                status_code=429,
                content=error_body(
                    "RATE_LIMITED",
                    "Too many requests, please try again later",
                    {"retry_after": retry_after},
                ),
                headers={"Retry-After": str(retry_after)},
            )
        return await call_next(request)


class IPWhitelistMiddleware(BaseHTTPMiddleware):
    """Restrict admin path prefixes to whitelisted client IPs."""

    def __init__(self, app, enabled: bool, whitelist: List[str], path_prefixes: List[str],
                 trusted_proxies: Iterable[str] = ()):
        super().__init__(app)
        self.enabled = enabled
        self.whitelist = list(whitelist)
        self.path_prefixes = tuple(path_prefixes)
        self.trusted_proxies = list(trusted_proxies)

    async def dispatch(self, request: Request, call_next):
        if not self.enabled or not request.url.path.startswith(self.path_prefixes):
            return await call_next(request)

        ip = client_ip(request, self.trusted_proxies)
        if not is_ip_allowed(ip, self.whitelist):
            logger.warning("Blocked admin access: ip=%s path=%s", ip, request.url.path)
            return JSONResponse(
                status_code=403,
                content=error_body(
                    "FORBIDDEN",
                    "Access denied. Your IP address is not whitelisted for admin access.",
                    {"ip_address": ip},
                ),
            )
        return await call_next(request)
