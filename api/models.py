"""
API request and response models for the accounts REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models only enforce shape and upper bounds. Business rules (minimum
username/password length, uniqueness) live in AuthService so they hold for
every caller, not just HTTP.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import AuditLogEntry, Profile, User

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignupRequest(BaseModel):
    """Request body for POST /api/auth/signup."""

    email: str = Field(max_length=255)
    username: str = Field(max_length=64)
    # bcrypt only looks at the first 72 bytes; keep inputs well below that.
    password: str = Field(max_length=72)


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    email: str = Field(max_length=255)
    password: str = Field(max_length=72)


class ProfileUpdate(BaseModel):
    """Request body for PUT /api/profile. Omitted fields are cleared."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    bio: Optional[str] = Field(default=None, max_length=2000)
    avatar_url: Optional[str] = Field(default=None, max_length=2048)
    display_name: Optional[str] = Field(default=None, max_length=100)
    location: Optional[str] = Field(default=None, max_length=100)
    website: Optional[str] = Field(default=None, max_length=2048)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    """The public slice of a user returned by signup and login."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: str
    created_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserSummary":
        return cls(id=user.id, email=user.email, username=user.username, created_at=user.created_at)


class AuthResponse(BaseModel):
    """Response for signup (201) and login (200)."""

    message: str
    user: UserSummary
    token: str


class MessageResponse(BaseModel):
    message: str


class LogoutAllResponse(BaseModel):
    message: str
    sessions_revoked: int


class ProfileResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    display_name: Optional[str] = None
    location: Optional[str] = None
    website: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileResponse":
        return cls(
            bio=profile.bio,
            avatar_url=profile.avatar_url,
            display_name=profile.display_name,
            location=profile.location,
            website=profile.website,
            updated_at=profile.updated_at,
        )


class ProfileEnvelope(BaseModel):
    """GET/PUT /api/profile. profile is an empty object until first written."""

    profile: dict[str, Any]


class MeUser(BaseModel):
    id: int
    email: str
    username: str
    email_verified: bool
    is_active: bool
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_login_at: Optional[str] = None
    profile: ProfileResponse


class MeResponse(BaseModel):
    """Response for GET /api/me."""

    user: MeUser


class AuditLogResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: AuditLogEntry) -> "AuditLogResponse":
        return cls(
            id=entry.id,
            action=entry.action,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            metadata=entry.metadata,
            created_at=entry.created_at or "",
        )


class AuditLogPage(BaseModel):
    logs: list[AuditLogResponse]
    limit: int
    offset: int


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    service: str = "outr-accounts"
