"""
auth/guard.py -- Request authorization: Auth token, Pro token, anti-escalation.

AuthorizationGuard composes the pieces every protected operation needs:

  1. Extract the Auth token (cookie first, header fallback) and verify it.
     Failure -> no Principal; the route layer answers 401.
  2. Extract the Pro token the same way and verify it against the Pro secret.
  3. Anti-escalation. Both rules are enforced independently:
       - the Pro token's email must equal the authenticated email
         (case-insensitive, trimmed), and
       - if the Pro token carries a user id, it must equal the Auth token's.
     A mismatch forces Pro = False regardless of the Pro token's validity.
     Without these rules a signed-in user could present somebody else's
     valid Pro token next to their own Auth token.
  4. Live license lookup by the lower-cased email. Pro tokens live for up to
     4 hours; a cancellation or failed payment must take effect immediately.
     Lookup errors force Pro = False.

The resulting Principal carries a boolean is_pro. The Pro token itself is
never handed to downstream code.

Layer rule: no imports from api/ or ratelimit/. Works on plain mappings so it
can be driven without a web framework.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Protocol

from auth.codec import extract_auth_token, extract_pro_token, normalize_email
from auth.models import AuthToken, Principal, ProToken
from auth.tokens import TokenVerifier

logger = logging.getLogger("pcompass.auth")


class LicenseLookup(Protocol):
    def has_active_license(self, email: str) -> bool: ...


class AuthorizationGuard:
    def __init__(self, verifier: TokenVerifier, licenses: LicenseLookup) -> None:
        self._verifier = verifier
        self._licenses = licenses

    def authenticate(self, cookies: Mapping[str, str], headers: Mapping[str, str]) -> Principal | None:
        """Return the verified identity of the request, or None."""
        token = extract_auth_token(cookies, headers)
        if token is None or not self._verifier.verify_auth_token(token):
            return None
        return Principal(email=token.email, user_id=token.user_id, session_version=token.session_version)

    def resolve_pro(self, auth_token: AuthToken | Principal, pro_token: ProToken | None) -> bool:
        """Return the Pro flag for an already-authenticated caller."""
        if pro_token is None or not self._verifier.verify_pro_token(pro_token):
            return False

        auth_email = normalize_email(auth_token.email)
        if normalize_email(pro_token.email) != auth_email:
            logger.info("Pro token email does not match authenticated email; Pro denied")
            return False
        if pro_token.user_id and pro_token.user_id != auth_token.user_id:
            logger.info("Pro token user id does not match authenticated user; Pro denied")
            return False

        try:
            return bool(self._licenses.has_active_license(auth_email))
        except Exception as exc:  # fail closed on any datastore error
            logger.warning("License lookup failed (%s); Pro denied", type(exc).__name__)
            return False

    def authorize(
        self,
        cookies: Mapping[str, str],
        headers: Mapping[str, str],
        require_pro: bool = False,
    ) -> Principal | None:
        """Authenticate the request and, when asked, resolve its Pro flag.

        Returns None only when authentication fails. A caller without Pro still
        gets a Principal (is_pro=False); whether that is a 403 is the route's
        decision.
        """
        principal = self.authenticate(cookies, headers)
        if principal is None or not require_pro:
            return principal
        is_pro = self.resolve_pro(principal, extract_pro_token(cookies, headers))
        return Principal(
            email=principal.email,
            user_id=principal.user_id,
            session_version=principal.session_version,
            is_pro=is_pro,
        )
