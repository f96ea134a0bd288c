"""
api/routes/v1/pro.py -- Pro entitlement endpoints.

Routes:
  POST /api/v1/pro/verify       -- live license check; issues a Pro token when active
  POST /api/v1/features/check   -- is the caller allowed to use a Pro feature?
  GET  /api/v1/pro/entitlement  -- plan of the caller's active license (Pro only)
  POST /api/v1/trial/start      -- start or report the caller's one free trial

Security:
  [P1] Every route requires a valid Auth token first.
  [P2] /pro/verify only checks the caller's own email. Without this, the
       endpoint would be an oracle for which emails hold a subscription.
  [P3] /pro/verify, /features/check and /trial/start go through the shared
       DB-backed limiter, keyed by the verified email.
  [P4] /features/check answers from the guard's Pro flag (token + anti-
       escalation + live license), never from the Pro token alone.
  [P5] /trial/start grants one trial per email, ever. The body email must
       match the token email, as for /pro/verify.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import enforce_rate_limit
from api.models import (
    EmailRequest,
    EntitlementResponse,
    FeatureCheckRequest,
    FeatureCheckResponse,
    ProVerifyResponse,
    TrialResponse,
)
from auth.dependencies import get_current_principal, require_pro, resolve_pro_flag
from auth.models import Principal
from auth.store import UserStore
from auth.tokens import TokenIssuer, set_pro_cookie

logger = logging.getLogger("pcompass.api")

router = APIRouter()


@router.post("/pro/verify", response_model=ProVerifyResponse)
def verify_pro(
    request: Request,
    body: EmailRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Check the caller's license and, if active, issue a fresh Pro token.

    Called after checkout and on "restore purchases". The returned token is
    valid for the same 4-hour window as Auth tokens; the guard re-checks the
    license on every use regardless.
    """
    if principal.email != body.email:  # [P2]
        raise HTTPException(
            status_code=403,
            detail={"code": "email_mismatch", "message": "Token email mismatch."},
        )
    settings = request.app.state.settings
    enforce_rate_limit(request, "verify-pro", settings.verify_pro_rate_limit, principal)  # [P3]

    user_store: UserStore = request.app.state.user_store
    lic = user_store.get_license(principal.email)
    if lic is None or not lic.active:
        resp = JSONResponse(content=ProVerifyResponse(pro=False).model_dump())
        resp.headers["Cache-Control"] = "no-store"
        return resp

    issuer: TokenIssuer = request.app.state.issuer
    token = issuer.issue_pro(principal.user_id, principal.email)
    resp = JSONResponse(
        content=ProVerifyResponse(
            pro=True,
            plan=lic.plan,
            expires_in=settings.token_max_age_seconds,
            user_id=token.user_id or None,
            issued_at=token.issued_at,
            token=token.signature,
        ).model_dump()
    )
    set_pro_cookie(resp, token, max_age=settings.token_max_age_seconds, secure=settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    logger.info("Pro token issued (plan=%s)", lic.plan)
    return resp


@router.post("/features/check", response_model=FeatureCheckResponse)
def check_feature(
    request: Request,
    body: FeatureCheckRequest,
    principal: Principal = Depends(get_current_principal),
) -> FeatureCheckResponse:
    """Report whether the caller may use a Pro feature [P4].

    The limiter runs before the license lookup so a throttled caller costs one
    insert, not a license query.
    """
    settings = request.app.state.settings
    enforce_rate_limit(request, "check-feature", settings.check_feature_rate_limit, principal)  # [P3]
    return FeatureCheckResponse(feature=body.feature, allowed=resolve_pro_flag(request, principal))


@router.get("/pro/entitlement", response_model=EntitlementResponse)
def entitlement(request: Request, principal: Principal = Depends(require_pro)) -> EntitlementResponse:
    """Return the plan behind the caller's active Pro license."""
    user_store: UserStore = request.app.state.user_store
    lic = user_store.get_license(principal.email)
    if lic is None or not lic.active:
        # Cancelled between the guard's lookup and this one.
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Pro subscription required."},
        )
    return EntitlementResponse(email=principal.email, plan=lic.plan)


@router.post("/trial/start", response_model=TrialResponse)
def start_trial(
    request: Request,
    body: EmailRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Start the caller's free trial, or report the one already running [P5].

    Repeating the call inside the trial returns the original start. Once the
    trial has lapsed the answer is trial_used for good.
    """
    if principal.email != body.email:
        raise HTTPException(
            status_code=403,
            detail={"code": "email_mismatch", "message": "Token email mismatch."},
        )
    settings = request.app.state.settings
    enforce_rate_limit(request, "start-trial", settings.start_trial_rate_limit, principal)

    user_store: UserStore = request.app.state.user_store
    now = request.app.state.clock.now()
    trial_start = user_store.get_trial_start(principal.email)
    if trial_start is not None and now - trial_start > settings.trial_length_seconds:
        result = TrialResponse(success=False, error="trial_used", message="Trial already used.")
    else:
        if trial_start is None:
            trial_start = user_store.start_trial(principal.email, now)
            logger.info("Trial started")
        result = TrialResponse(
            success=True,
            trial_start=trial_start,
            expires_at=trial_start + settings.trial_length_seconds,
        )
    resp = JSONResponse(content=result.model_dump())
    resp.headers["Cache-Control"] = "no-store"
    return resp
