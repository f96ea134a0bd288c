"""
API request and response models for pcompass-auth REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.models import CurrentAuthToken

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

EMAIL_PATTERN = r"^[^@\s|]+@[^@\s|]+$"


class FeatureEnum(str, Enum):
    pdf = "pdf"
    picks = "picks"
    slots = "slots"


class _EmailBody(BaseModel):
    """Shared email normalization: trimmed and lower-cased before pattern validation."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=255, pattern=EMAIL_PATTERN)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return str(value).strip().lower()


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_EmailBody):
    """Request body for POST /api/v1/auth/register."""

    password: str = Field(min_length=8, max_length=128)
    name: Optional[str] = Field(default=None, max_length=255)


class LoginRequest(_EmailBody):
    """Request body for POST /api/v1/auth/login."""

    password: str = Field(min_length=1, max_length=128)


class EmailRequest(_EmailBody):
    """Request body carrying the email the caller claims to act on.

    Used by account deletion and Pro verification; the route rejects with 403
    when it differs from the authenticated email.
    """


class FeatureCheckRequest(BaseModel):
    """Request body for POST /api/v1/features/check."""

    feature: FeatureEnum


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AuthTokenFields(BaseModel):
    """The issued Auth token, field by field.

    Browser clients ignore this and rely on the pc_auth cookie. Clients that
    cannot keep cookies echo these back as X-Auth-* headers.
    """

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    session_version: str
    issued_at: str
    token: str
    expires_in: int

    @classmethod
    def from_token(cls, token: CurrentAuthToken, expires_in: int) -> "AuthTokenFields":
        return cls(
            user_id=token.user_id,
            email=token.email,
            session_version=token.session_version,
            issued_at=token.issued_at,
            token=token.signature,
            expires_in=expires_in,
        )


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    name: Optional[str] = None


class SessionResponse(BaseModel):
    """Response for register and login."""

    model_config = ConfigDict(frozen=True)

    user: UserResponse
    auth: AuthTokenFields


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    user_id: Optional[str] = None
    pro: bool = False
    legacy_token: bool = False


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    success: bool = True
    message: Optional[str] = None


class ProVerifyResponse(BaseModel):
    """Response for POST /api/v1/pro/verify.

    Pro token fields are only present when pro is true. Browser clients use
    the pc_pro cookie instead.
    """

    model_config = ConfigDict(frozen=True)

    pro: bool
    plan: Optional[str] = None
    expires_in: Optional[int] = None
    user_id: Optional[str] = None
    issued_at: Optional[str] = None
    token: Optional[str] = None


class FeatureCheckResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    feature: FeatureEnum
    allowed: bool


class EntitlementResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: str
    plan: str


class TrialResponse(BaseModel):
    """Response for POST /api/v1/trial/start.

    success is false with error="trial_used" once the email's one trial has
    lapsed. Otherwise trial_start and expires_at describe the running trial.
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    trial_start: Optional[int] = None
    expires_at: Optional[int] = None
    error: Optional[str] = None
    message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
