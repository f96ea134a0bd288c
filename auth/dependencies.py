"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Token sources are checked in priority order by the guard:
  1. pc_auth / pc_pro cookies -- set by the web client sign-in flow.
  2. X-Auth-* / X-Pro-* headers -- wrapped-mobile clients without a cookie jar.

try_get_principal() is the soft variant (returns None on failure).
get_current_principal() wraps it and raises HTTP 401 if unauthenticated.
get_pro_principal() resolves the Pro flag but never rejects on it.
resolve_pro_flag() does the same for a Principal already in hand.
require_pro() raises HTTP 403 when the caller is authenticated but not Pro.

Handlers are plain def functions. FastAPI runs them in its thread pool, so
the session-version and license lookups block only the request that made them.

Layer rule: auth/dependencies.py may import from fastapi because this module
is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.codec import extract_pro_token
from auth.guard import AuthorizationGuard
from auth.models import Principal


def _guard(request: Request) -> AuthorizationGuard:
    return request.app.state.guard


def try_get_principal(request: Request) -> Principal | None:
    """Authenticate the request. Never raises."""
    return _guard(request).authenticate(request.cookies, request.headers)


def get_current_principal(request: Request) -> Principal:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Expired, forged and missing tokens all produce the same response.
    """
    principal = try_get_principal(request)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def get_pro_principal(request: Request) -> Principal:
    """Require authentication and resolve the Pro flag. Raises 401, never 403."""
    principal = _guard(request).authorize(request.cookies, request.headers, require_pro=True)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return principal


def resolve_pro_flag(request: Request, principal: Principal) -> bool:
    """Resolve the Pro flag for an already-authenticated caller.

    For routes that must do other work (rate limiting) between authentication
    and the license lookup.
    """
    return _guard(request).resolve_pro(principal, extract_pro_token(request.cookies, request.headers))


def require_pro(request: Request) -> Principal:
    """Require an active Pro entitlement. Raises 401 if unauthenticated, 403 if not Pro."""
    principal = get_pro_principal(request)
    if not principal.is_pro:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Pro subscription required."},
        )
    return principal
