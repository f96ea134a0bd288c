"""
api/limiter.py -- Rate limiting at the HTTP edge.

Two limiters, two jobs:

  limiter (slowapi, memory://): per-IP brute-force brake on the credential
      endpoints (register, login). Import this in both api/main.py (to mount
      as middleware) and the route modules (to apply @limiter.limit()). A
      single shared instance is required -- separate instances would each
      get their own counter store and never trigger.

  enforce_rate_limit(): the shared, DB-backed ratelimit.RateLimiter on
      app.state. Every application instance sees the same counts. Keyed by
      verified email when the caller is signed in, by client IP otherwise.
"""

from __future__ import annotations

from fastapi import HTTPException, Request
from slowapi import Limiter

from auth.models import Principal
from ratelimit.limiter import RateLimiter, client_key


def client_ip(request: Request) -> str:
    """Best-effort client address behind the edge proxy.

    X-Real-IP is set by the proxy itself. Otherwise the last X-Forwarded-For
    hop is the one the proxy appended; earlier hops are client-controlled.

    Assumes a reverse proxy that overwrites both headers. Exposed directly,
    a client can put any address in X-Real-IP and pick its own limit key.
    """
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        last_hop = forwarded.split(",")[-1].strip()
        if last_hop:
            return last_hop
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=client_ip, storage_uri="memory://")


def enforce_rate_limit(request: Request, endpoint: str, limit: int, principal: Principal | None = None) -> None:
    """Raise HTTP 429 unless the shared limiter allows this request.

    Datastore failures inside the limiter also end here as a 429 (fail closed).
    """
    rate_limiter: RateLimiter = request.app.state.rate_limiter
    window = request.app.state.settings.rate_limit_window_seconds
    key = client_key(email=principal.email if principal else None, ip=client_ip(request))
    if not rate_limiter.allow(key, endpoint, limit, window):
        raise HTTPException(
            status_code=429,
            detail={"code": "rate_limited", "message": "Too many requests."},
            headers={"Retry-After": str(window)},
        )
