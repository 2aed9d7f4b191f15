"""
API request and response models for the tokengate REST endpoints.

These Pydantic v2 models define the HTTP transport contract. They are
separate from the dataclasses in auth/models.py, which own the internal
domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, Field

from auth.models import Role

# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Uniform error body: {"error": {"code", "message", "detail"}}."""

    error: ErrorDetail


class HealthResponse(BaseModel):
    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Auth requests
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    email: str = Field(min_length=3, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Body for /auth/refresh and /auth/logout. The refreshToken cookie is used when absent."""

    refresh_token: Optional[str] = Field(default=None, max_length=512)


# ---------------------------------------------------------------------------
# Auth responses
# ---------------------------------------------------------------------------


class UserSummary(BaseModel):
    id: int
    username: str
    email: str
    role: Role
    is_active: bool


class TokenResponse(BaseModel):
    """Returned by login and refresh.

    refresh_token is only present when a new refresh credential was issued
    (login, or refresh with rotation enabled).
    """

    access_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None
    user: Optional[UserSummary] = None


class MeResponse(BaseModel):
    user_id: str
    username: Optional[str]
    email: Optional[str]
    role: str
    expires_at: Optional[int]


class SessionInfo(BaseModel):
    """A refresh session without its secret value."""

    id: int
    created_at: str
    expires_at: str


class LogoutResponse(BaseModel):
    message: str
    revoked: int = 0


class TokenInfoResponse(BaseModel):
    """Unverified view of the presented access token (debugging aid)."""

    remaining_seconds: int
    claims: dict
