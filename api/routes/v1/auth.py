"""
api/routes/v1/auth.py -- Sign-in, sign-out and account endpoints.

Routes:
  POST /api/v1/auth/register        -- create email/password account; issues Auth token
  POST /api/v1/auth/login           -- password login; issues Auth token
  POST /api/v1/auth/signout         -- bump session version (if signed in); clear cookies
  GET  /api/v1/auth/me              -- current identity and Pro flag (requires auth)
  POST /api/v1/auth/account/delete  -- delete own account (requires auth, email must match)

Security:
  [R1] register and login are rate-limited per IP by slowapi (SIGNIN_RATE_LIMIT).
  [R2] authenticate_user() provides timing equalization -- use it, never inline.
  [R3] Cache-Control: no-store on every response that carries a fresh token.
  [R4] Account deletion requires the body email to equal the token email, so
       a stolen cookie cannot be pointed at a different account.
  Wrong email and wrong password return the same error to avoid leaking
  which emails are registered.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    AuthTokenFields,
    EmailRequest,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from auth.dependencies import get_current_principal, get_pro_principal, try_get_principal
from auth.models import Principal, User
from auth.revocation import SessionRevoker
from auth.store import UserStore
from auth.tokens import (
    TokenIssuer,
    authenticate_user,
    clear_session_cookies,
    hash_password,
    set_auth_cookie,
)
from core.config import get_settings

logger = logging.getLogger("pcompass.api")

# Auth policy:
# - POST /api/v1/auth/register:        public, slowapi per IP [R1]
# - POST /api/v1/auth/login:           public, slowapi per IP [R1]
# - POST /api/v1/auth/signout:         public -- clearing cookies needs no prior auth
# - GET  /api/v1/auth/me:              requires auth (get_pro_principal)
# - POST /api/v1/auth/account/delete:  requires auth (get_current_principal) + email match
router = APIRouter()

_SIGNIN_LIMIT = get_settings().signin_rate_limit


def _session_response(request: Request, user: User, status_code: int = 200) -> JSONResponse:
    settings = request.app.state.settings
    issuer: TokenIssuer = request.app.state.issuer
    token = issuer.issue_auth(user)
    resp = JSONResponse(
        status_code=status_code,
        content=SessionResponse(
            user=UserResponse(id=user.id, email=user.email, name=user.name),
            auth=AuthTokenFields.from_token(token, settings.token_max_age_seconds),
        ).model_dump(),
    )
    set_auth_cookie(resp, token, max_age=settings.token_max_age_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"  # [R3]
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=SessionResponse, status_code=201)
@limiter.limit(_SIGNIN_LIMIT)  # [R1] below @router so the registered endpoint is the limited wrapper
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an email/password account and sign it in."""
    user_store: UserStore = request.app.state.user_store
    user = User(email=body.email, name=body.name or body.email.split("@")[0], hashed_password=hash_password(body.password))
    try:
        user.id = user_store.create_user(user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with this email already exists. Try signing in."},
        ) from exc
    return _session_response(request, user, status_code=201)


@router.post("/auth/login", response_model=SessionResponse)
@limiter.limit(_SIGNIN_LIMIT)  # [R1]
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the pc_auth cookie.

    Uses authenticate_user() which includes timing equalization [R2].
    """
    user_store: UserStore = request.app.state.user_store
    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"  # [R3]
        return resp
    user_store.update_last_login(user.id)
    return _session_response(request, user)


@router.post("/auth/signout", response_model=MessageResponse)
def signout(request: Request, principal: Principal | None = Depends(try_get_principal)) -> JSONResponse:
    """Revoke every current-format session for the caller and clear cookies.

    An unauthenticated or legacy-token caller still gets its cookies cleared,
    and so does every caller when the datastore cannot take the bump.
    """
    revoker: SessionRevoker = request.app.state.revoker
    try:
        revoked = revoker.sign_out(principal)
    except Exception as exc:
        logger.warning("Session bump on sign-out failed (%s); clearing cookies only", type(exc).__name__)
        revoked = False
    resp = JSONResponse(content=MessageResponse(message="Signed out." if revoked else None).model_dump())
    clear_session_cookies(resp, secure=request.app.state.settings.secure_cookies)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(principal: Principal = Depends(get_pro_principal)) -> MeResponse:
    """Return identity information for the currently authenticated caller."""
    return MeResponse(
        email=principal.email,
        user_id=principal.user_id or None,
        pro=principal.is_pro,
        legacy_token=principal.is_legacy,
    )


@router.post("/auth/account/delete", response_model=MessageResponse)
def delete_account(
    request: Request,
    body: EmailRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Delete the caller's account, Pro license and usage history [R4]."""
    if principal.email != body.email:
        raise HTTPException(
            status_code=403,
            detail={"code": "email_mismatch", "message": "Email does not match the signed-in account."},
        )
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(principal.user_id) if principal.user_id else user_store.get_by_email(principal.email)
    if user is None or user.email != principal.email:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "Account not found."},
        )
    revoker: SessionRevoker = request.app.state.revoker
    revoker.delete_account(user)
    resp = JSONResponse(content=MessageResponse(message="Account deleted.").model_dump())
    clear_session_cookies(resp, secure=request.app.state.settings.secure_cookies)
    return resp
