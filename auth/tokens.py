"""
auth/tokens.py -- Token issuance, token verification, passwords, and cookies.

Security design decisions:
  Tokens: HMAC-SHA256 hex over a canonical string (auth/signing.py). Two
       independent secrets: AUTH_TOKEN_SECRET signs Auth tokens and
       PRO_TOKEN_SECRET signs Pro tokens. The "auth:" prefix on the Auth
       canonical string keeps the two families disjoint even under a shared
       secret in legacy deployments.

  Freshness: a token is valid while now - issuedAt <= max_age (4h) and
       issuedAt - now <= max_skew (5 min). Both bounds are inclusive.

  Revocation: current-format Auth tokens embed the user's session_version.
       TokenVerifier reads the live counter through a SessionVersionLookup on
       every check and rejects on mismatch. If the lookup fails for any reason
       the token is rejected -- the revocation check is a precondition, not an
       optimization. Legacy Auth tokens have no such hook and rely on expiry.

  Verification returns bool and never raises. The route layer turns False
       into a uniform 401 without saying which check failed.

  Passwords: bcrypt directly, with the _DUMMY_HASH constant for timing
       equalization in authenticate_user() so response time does not reveal
       whether an email is registered.

Layer rule: no imports from api/ or ratelimit/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Protocol

import bcrypt

from auth import signing
from auth.codec import AUTH_COOKIE, PRO_COOKIE, encode_auth_cookie, encode_pro_cookie, normalize_email
from auth.models import AuthToken, CurrentAuthToken, CurrentProToken, LegacyProToken, ProToken, User
from core.clock import Clock, SystemClock

if TYPE_CHECKING:
    from auth.store import UserStore

logger = logging.getLogger("pcompass.auth")

DEFAULT_MAX_AGE_SECONDS = 14400
DEFAULT_MAX_SKEW_SECONDS = 300

COOKIE_PATH = "/api"

_UNIX_SECONDS = re.compile(r"[0-9]{1,12}")


class SessionVersionLookup(Protocol):
    def get_session_version(self, user_id: str) -> int | None:
        """Return the live session version for user_id, or None if no such user.

        May raise on datastore failure; the verifier treats that as a reject.
        """
        ...


# ---------------------------------------------------------------------------
# Canonical strings
# ---------------------------------------------------------------------------


def auth_message(email: str, issued_at: str | int, user_id: str = "", session_version: str | int = "") -> str:
    email = normalize_email(email)
    if user_id and session_version not in ("", None):
        return f"auth:{user_id}:{email}:{session_version}:{issued_at}"
    return f"auth:{email}:{issued_at}"


def pro_message(email: str, issued_at: str | int, user_id: str = "") -> str:
    email = normalize_email(email)
    if user_id:
        return f"{user_id}:{email}:{issued_at}"
    return f"{email}:{issued_at}"


# ---------------------------------------------------------------------------
# Issuance
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints Auth and Pro tokens.

    Auth tokens are always issued in the current format. Legacy tokens are
    still accepted by TokenVerifier until they age out.
    """

    def __init__(self, auth_secret: str, pro_secret: str, clock: Clock | None = None) -> None:
        self._auth_secret = auth_secret
        self._pro_secret = pro_secret
        self._clock = clock or SystemClock()

    def issue_auth(self, user: User) -> CurrentAuthToken:
        if not self._auth_secret:
            raise RuntimeError("AUTH_TOKEN_SECRET not configured")
        issued_at = str(self._clock.now())
        user_id = str(user.id)
        email = normalize_email(user.email)
        session_version = str(user.session_version or 1)
        return CurrentAuthToken(
            user_id=user_id,
            email=email,
            session_version=session_version,
            issued_at=issued_at,
            signature=signing.sign(self._auth_secret, auth_message(email, issued_at, user_id, session_version)),
        )

    def issue_pro(self, user_id: str, email: str) -> ProToken:
        """Mint a Pro token bound to user_id and email.

        A caller still on a legacy Auth token has no user id; it gets a legacy
        Pro token, which the guard will accept next to that Auth token.
        """
        if not self._pro_secret:
            raise RuntimeError("PRO_TOKEN_SECRET not configured")
        issued_at = str(self._clock.now())
        email = normalize_email(email)
        if not user_id:
            return LegacyProToken(
                email=email,
                issued_at=issued_at,
                signature=signing.sign(self._pro_secret, pro_message(email, issued_at)),
            )
        return CurrentProToken(
            user_id=user_id,
            email=email,
            issued_at=issued_at,
            signature=signing.sign(self._pro_secret, pro_message(email, issued_at, user_id)),
        )


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TokenVerifier:
    """Checks freshness and signature of Auth and Pro tokens.

    Args:
        auth_secret:      Secret for Auth tokens. Empty -> every Auth check fails.
        pro_secret:       Secret for Pro tokens. Empty -> every Pro check fails.
        sessions:         Live session-version source for current-format Auth tokens.
        clock:            Time source; SystemClock when omitted.
        max_age_seconds:  Backward freshness bound (inclusive).
        max_skew_seconds: Forward clock-skew tolerance (inclusive).
    """

    def __init__(
        self,
        auth_secret: str,
        pro_secret: str,
        sessions: SessionVersionLookup,
        clock: Clock | None = None,
        max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS,
        max_skew_seconds: int = DEFAULT_MAX_SKEW_SECONDS,
    ) -> None:
        self._auth_secret = auth_secret
        self._pro_secret = pro_secret
        self._sessions = sessions
        self._clock = clock or SystemClock()
        self._max_age = max_age_seconds
        self._max_skew = max_skew_seconds

    def _fresh(self, issued_at: str) -> bool:
        if not isinstance(issued_at, str) or not _UNIX_SECONDS.fullmatch(issued_at):
            return False
        ts = int(issued_at)
        now = self._clock.now()
        return now - ts <= self._max_age and ts - now <= self._max_skew

    def verify_auth(
        self,
        email: str,
        token: str,
        issued_at: str,
        user_id: str | None = None,
        session_version: str | None = None,
    ) -> bool:
        """Verify an Auth token given its decoded fields.

        Both user_id and session_version present -> current format, which also
        requires the live session version to match. Otherwise the legacy
        canonical string is checked and no datastore call is made.
        """
        if not email or not token or not issued_at:
            return False
        if not self._fresh(issued_at):
            return False

        if user_id and session_version:
            message = auth_message(email, issued_at, user_id, session_version)
            if not signing.verify(token, self._auth_secret, message):
                return False
            try:
                live = self._sessions.get_session_version(user_id)
            except Exception as exc:  # fail closed on any datastore error
                logger.warning("Session version lookup failed (%s); rejecting token", type(exc).__name__)
                return False
            if live is None:
                return False
            return str(live) == session_version

        return signing.verify(token, self._auth_secret, auth_message(email, issued_at))

    def verify_pro(self, user_id: str | None, email: str, token: str, issued_at: str) -> bool:
        """Verify a Pro token. No session check -- entitlement freshness is the
        guard's live license lookup.
        """
        if not email or not token or not issued_at:
            return False
        if not self._fresh(issued_at):
            return False
        return signing.verify(token, self._pro_secret, pro_message(email, issued_at, user_id or ""))

    def verify_auth_token(self, token: AuthToken | None) -> bool:
        if token is None:
            return False
        if isinstance(token, CurrentAuthToken):
            return self.verify_auth(token.email, token.signature, token.issued_at, token.user_id, token.session_version)
        return self.verify_auth(token.email, token.signature, token.issued_at)

    def verify_pro_token(self, token: ProToken | None) -> bool:
        if token is None:
            return False
        return self.verify_pro(token.user_id, token.email, token.signature, token.issued_at)


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates at 72 bytes. The API layer caps password length well
    below anything that matters for that limit.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("pcompass_timing_dummy")


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the account exists, so an attacker
    cannot enumerate registered emails by response time. A row with no
    password hash is treated like a missing one.
    """
    user = store.get_by_email(email)
    if user is None or user.hashed_password is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: AuthToken, max_age: int = DEFAULT_MAX_AGE_SECONDS, secure: bool = False) -> None:
    """Write the Auth token as an httpOnly cookie scoped to /api.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST (CSRF mitigation).
    max_age: matches the token freshness window so both expire together.
    """
    response.set_cookie(
        AUTH_COOKIE,
        value=encode_auth_cookie(token),
        httponly=True,
        samesite="lax",
        secure=secure,
        path=COOKIE_PATH,
        max_age=max_age,
    )


def set_pro_cookie(response, token: ProToken, max_age: int = DEFAULT_MAX_AGE_SECONDS, secure: bool = False) -> None:
    response.set_cookie(
        PRO_COOKIE,
        value=encode_pro_cookie(token),
        httponly=True,
        samesite="lax",
        secure=secure,
        path=COOKIE_PATH,
        max_age=max_age,
    )


def clear_session_cookies(response, secure: bool = False) -> None:
    """Expire both token cookies. Path must match the one they were set with."""
    for name in (AUTH_COOKIE, PRO_COOKIE):
        response.delete_cookie(name, path=COOKIE_PATH, secure=secure, httponly=True, samesite="lax")
