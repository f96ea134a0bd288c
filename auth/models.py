"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the guard
do the work; these classes own domain shape.

Token variants:
  Each token family has a legacy and a current wire format. The format is
  resolved exactly once, in auth/codec.py, into one of the variant classes
  below. Downstream code dispatches on the class instead of re-counting
  fields. Legacy variants carry no user id or session version; the properties
  return "" so callers can read them uniformly.

Layer rule: no imports from api/ or ratelimit/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass
class User:
    """A registered account.

    session_version is the revocation counter embedded in every current-format
    Auth token. Bumping it invalidates all outstanding tokens for this user.
    NULL in the database is read as 1.

    hashed_password is None only for rows provisioned without a password
    (seeded or imported directly into the table). Such accounts cannot log
    in; authenticate_user() rejects them after a dummy bcrypt round.
    """

    email: str
    id: int | None = None
    name: str | None = None
    hashed_password: str | None = None
    session_version: int = 1
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class ProLicense:
    """An entitlement record written by the payment webhook processor.

    Only the active flag matters for authorization. plan is reported back to
    clients for display.
    """

    email: str
    plan: str
    active: bool = True
    id: int | None = None
    customer_id: str | None = None
    purchased_at: str | None = None
    cancelled_at: str | None = None


# ---------------------------------------------------------------------------
# Auth tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LegacyAuthToken:
    """email|issuedAt|signature -- no revocation hook, expires on its own."""

    email: str
    issued_at: str
    signature: str

    @property
    def user_id(self) -> str:
        return ""

    @property
    def session_version(self) -> str:
        return ""


@dataclass(frozen=True)
class CurrentAuthToken:
    """userId|email|sessionVersion|issuedAt|signature."""

    user_id: str
    email: str
    session_version: str
    issued_at: str
    signature: str


AuthToken = Union[LegacyAuthToken, CurrentAuthToken]


# ---------------------------------------------------------------------------
# Pro tokens
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class LegacyProToken:
    """email|issuedAt|signature."""

    email: str
    issued_at: str
    signature: str

    @property
    def user_id(self) -> str:
        return ""


@dataclass(frozen=True)
class CurrentProToken:
    """userId|email|issuedAt|signature."""

    user_id: str
    email: str
    issued_at: str
    signature: str


ProToken = Union[LegacyProToken, CurrentProToken]


# ---------------------------------------------------------------------------
# Authorization outcome
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Principal:
    """The verified caller of a request, as produced by AuthorizationGuard.

    is_pro is the only thing downstream code may use to gate Pro behavior.
    The raw Pro token never leaves the guard.
    """

    email: str
    user_id: str = ""
    session_version: str = ""
    is_pro: bool = False

    @property
    def is_legacy(self) -> bool:
        return not self.user_id
