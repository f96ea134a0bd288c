"""
auth/revocation.py -- Instant session revocation without a token blacklist.

Tokens are stateless; the only server-side state they reference is the
per-user session_version. Bumping it makes every current-format Auth token
issued before the bump fail its next verification, however much of its
4-hour window is left.

Legacy-format Auth tokens carry no session version and are not affected.
They expire on their own within 4 hours.

Layer rule: no imports from api/. ratelimit/ is used only for the
account-deletion cleanup of the caller's usage rows.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from auth.models import Principal, User
from ratelimit.limiter import client_key

if TYPE_CHECKING:
    from auth.store import UserStore
    from ratelimit.store import UsageStore

logger = logging.getLogger("pcompass.auth")


class SessionRevoker:
    def __init__(self, users: UserStore, usage: UsageStore | None = None) -> None:
        self._users = users
        self._usage = usage

    def bump_session_version(self, user_id: str | int) -> None:
        """Invalidate every outstanding current-format Auth token for user_id."""
        self._users.bump_session_version(user_id)
        logger.info("Session version bumped for user %s", user_id)

    def sign_out(self, principal: Principal | None) -> bool:
        """Revoke the caller's sessions. Returns True if a bump happened.

        Only current-format callers carry a user id to revoke. Legacy and
        anonymous sign-outs just clear cookies at the HTTP layer.
        """
        if principal is None or principal.is_legacy:
            return False
        self.bump_session_version(principal.user_id)
        return True

    def delete_account(self, user: User) -> bool:
        """Delete the user and everything keyed by their identity.

        Order: revoke first so no token stays usable while the rest of the
        cleanup runs, then licenses and usage rows, then the user row. The
        trial row stays so the email cannot claim a second trial.
        Returns True if the user row was deleted.
        """
        self.bump_session_version(user.id)
        self._users.delete_license(user.email)
        if self._usage is not None:
            self._usage.delete_for_key(client_key(email=user.email))
        deleted = self._users.delete_user(user.id)
        logger.info("Account %s deleted (found=%s)", user.id, deleted)
        return deleted
