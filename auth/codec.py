"""
auth/codec.py -- Wire format for Auth and Pro tokens.

Cookie values are pipe-delimited and URL-encoded as a whole:

  pc_auth  current  userId|email|sessionVersion|issuedAt|signatureHex
  pc_auth  legacy   email|issuedAt|signatureHex
  pc_pro   current  userId|email|issuedAt|signatureHex
  pc_pro   legacy   email|issuedAt|signatureHex

Non-browser clients that cannot keep a cookie jar send the same fields as one
header per field (X-Auth-*, X-Pro-*). There is no cryptographic binding
between those headers; the verifier re-derives the canonical string from the
parsed fields exactly as it does for a cookie.

Decoding never raises. Any missing or malformed field yields None, so callers
treat "absent" and "present but unusable" the same way.

Emails are lower-cased and trimmed here, once, so every canonical string built
from a decoded token sees the normalized form.

Layer rule: stdlib + auth.models only. Takes plain mappings, not framework
request objects.
"""

from __future__ import annotations

from collections.abc import Mapping
from urllib.parse import quote, unquote

from auth.models import (
    AuthToken,
    CurrentAuthToken,
    CurrentProToken,
    LegacyAuthToken,
    LegacyProToken,
    ProToken,
)

AUTH_COOKIE = "pc_auth"
PRO_COOKIE = "pc_pro"

AUTH_TOKEN_HEADER = "X-Auth-Token"
AUTH_EMAIL_HEADER = "X-Auth-Email"
AUTH_TS_HEADER = "X-Auth-Ts"
AUTH_USER_ID_HEADER = "X-Auth-User-Id"
AUTH_SESSION_VERSION_HEADER = "X-Auth-Session-Version"

PRO_TOKEN_HEADER = "X-Pro-Token"
PRO_EMAIL_HEADER = "X-Pro-Email"
PRO_TS_HEADER = "X-Pro-Ts"
PRO_USER_ID_HEADER = "X-Pro-User-Id"

FALLBACK_HEADERS = [
    AUTH_TOKEN_HEADER,
    AUTH_EMAIL_HEADER,
    AUTH_TS_HEADER,
    AUTH_USER_ID_HEADER,
    AUTH_SESSION_VERSION_HEADER,
    PRO_TOKEN_HEADER,
    PRO_EMAIL_HEADER,
    PRO_TS_HEADER,
    PRO_USER_ID_HEADER,
]

_SEPARATOR = "|"


def normalize_email(email: str | None) -> str:
    return (email or "").strip().lower()


def _split(raw: str | None) -> list[str] | None:
    """URL-decode and split a cookie value. None if any part is empty."""
    if not raw or not isinstance(raw, str):
        return None
    try:
        parts = unquote(raw, errors="strict").split(_SEPARATOR)
    except UnicodeDecodeError:
        return None
    if any(not p for p in parts):
        return None
    return parts


# ---------------------------------------------------------------------------
# Cookie decoding
# ---------------------------------------------------------------------------


def decode_auth_cookie(raw: str | None) -> AuthToken | None:
    parts = _split(raw)
    if parts is None:
        return None
    if len(parts) == 5:
        user_id, email, session_version, issued_at, signature = parts
        return CurrentAuthToken(
            user_id=user_id,
            email=normalize_email(email),
            session_version=session_version,
            issued_at=issued_at,
            signature=signature,
        )
    if len(parts) == 3:
        email, issued_at, signature = parts
        return LegacyAuthToken(email=normalize_email(email), issued_at=issued_at, signature=signature)
    return None


def decode_pro_cookie(raw: str | None) -> ProToken | None:
    parts = _split(raw)
    if parts is None:
        return None
    if len(parts) == 4:
        user_id, email, issued_at, signature = parts
        return CurrentProToken(
            user_id=user_id,
            email=normalize_email(email),
            issued_at=issued_at,
            signature=signature,
        )
    if len(parts) == 3:
        email, issued_at, signature = parts
        return LegacyProToken(email=normalize_email(email), issued_at=issued_at, signature=signature)
    return None


# ---------------------------------------------------------------------------
# Header fallback
# ---------------------------------------------------------------------------


def _header(headers: Mapping[str, str], name: str) -> str:
    # Starlette's Headers is case-insensitive; plain dicts in tests may not be.
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return (value or "").strip()


def auth_from_headers(headers: Mapping[str, str]) -> AuthToken | None:
    """Build an Auth token from X-Auth-* headers.

    The user id and session version headers must both be present for the
    current format; otherwise the legacy format is assumed.
    """
    signature = _header(headers, AUTH_TOKEN_HEADER)
    email = normalize_email(_header(headers, AUTH_EMAIL_HEADER))
    issued_at = _header(headers, AUTH_TS_HEADER)
    if not (signature and email and issued_at):
        return None
    user_id = _header(headers, AUTH_USER_ID_HEADER)
    session_version = _header(headers, AUTH_SESSION_VERSION_HEADER)
    if user_id and session_version:
        return CurrentAuthToken(
            user_id=user_id,
            email=email,
            session_version=session_version,
            issued_at=issued_at,
            signature=signature,
        )
    return LegacyAuthToken(email=email, issued_at=issued_at, signature=signature)


def pro_from_headers(headers: Mapping[str, str]) -> ProToken | None:
    signature = _header(headers, PRO_TOKEN_HEADER)
    email = normalize_email(_header(headers, PRO_EMAIL_HEADER))
    issued_at = _header(headers, PRO_TS_HEADER)
    if not (signature and email and issued_at):
        return None
    user_id = _header(headers, PRO_USER_ID_HEADER)
    if user_id:
        return CurrentProToken(user_id=user_id, email=email, issued_at=issued_at, signature=signature)
    return LegacyProToken(email=email, issued_at=issued_at, signature=signature)


# ---------------------------------------------------------------------------
# Cookie-first extraction
# ---------------------------------------------------------------------------


def extract_auth_token(cookies: Mapping[str, str], headers: Mapping[str, str]) -> AuthToken | None:
    """Return the request's Auth token: cookie first, headers as fallback.

    A cookie that is present but unparseable falls through to the headers,
    matching clients that carry a stale cookie alongside fresh headers.
    """
    token = decode_auth_cookie(cookies.get(AUTH_COOKIE))
    if token is not None:
        return token
    return auth_from_headers(headers)


def extract_pro_token(cookies: Mapping[str, str], headers: Mapping[str, str]) -> ProToken | None:
    token = decode_pro_cookie(cookies.get(PRO_COOKIE))
    if token is not None:
        return token
    return pro_from_headers(headers)


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_auth_cookie(token: AuthToken) -> str:
    if isinstance(token, CurrentAuthToken):
        fields = [token.user_id, token.email, token.session_version, token.issued_at, token.signature]
    else:
        fields = [token.email, token.issued_at, token.signature]
    return quote(_SEPARATOR.join(fields), safe="")


def encode_pro_cookie(token: ProToken) -> str:
    if isinstance(token, CurrentProToken):
        fields = [token.user_id, token.email, token.issued_at, token.signature]
    else:
        fields = [token.email, token.issued_at, token.signature]
    return quote(_SEPARATOR.join(fields), safe="")
