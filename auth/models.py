"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Stores, codecs and
routes do the work; these classes own the shape.

AuthConfig is the one configuration struct for the auth core. It is built
once per process (core.config.Settings.auth_config()) and passed into the
constructors of TokenCodec, TokenIssuer, RefreshTokenStore and
BearerAuthenticator. Nothing in auth/ reads the environment directly.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from auth.errors import AuthErrorKind, SecretMisconfigured

# Symmetric algorithms only. The process picks one and never accepts another.
SUPPORTED_ALGORITHMS = ("HS256", "HS384", "HS512")

MIN_SECRET_LENGTH = 32


class Role(str, Enum):
    admin = "admin"
    service_staff = "service_staff"
    technician = "technician"
    manufacturer_staff = "manufacturer_staff"


@dataclass(frozen=True)
class AuthConfig:
    """Immutable auth configuration.

    secret, issuer and audience have no defaults: a process has to state them.
    The TTLs, header name and scheme default to the deployed values
    (24h access, 7d refresh, "Authorization: Bearer <token>").
    """

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_ttl: timedelta = timedelta(hours=24)
    refresh_ttl: timedelta = timedelta(days=7)
    header_name: str = "Authorization"
    scheme: str = "Bearer"

    def __post_init__(self) -> None:
        if not self.secret:
            raise SecretMisconfigured("signing secret is empty")
        if len(self.secret) < MIN_SECRET_LENGTH:
            raise SecretMisconfigured(f"signing secret shorter than {MIN_SECRET_LENGTH} characters")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise ValueError(f"Unsupported signing algorithm {self.algorithm!r}; use one of {SUPPORTED_ALGORITHMS}")
        if not self.issuer or not self.audience:
            raise ValueError("issuer and audience must be non-empty")
        if self.access_ttl.total_seconds() <= 0 or self.refresh_ttl.total_seconds() <= 0:
            raise ValueError("token TTLs must be positive")
        if not self.scheme or " " in self.scheme:
            raise ValueError("scheme must be a single non-empty word")

    def __repr__(self) -> str:
        # Never let the secret end up in a log line or traceback.
        return (
            f"AuthConfig(issuer={self.issuer!r}, audience={self.audience!r}, algorithm={self.algorithm!r}, "
            f"access_ttl={self.access_ttl!r}, refresh_ttl={self.refresh_ttl!r}, "
            f"header_name={self.header_name!r}, scheme={self.scheme!r})"
        )


@dataclass
class VerifyResult:
    """Tagged outcome of TokenCodec.verify(): exactly one of claims / error is set."""

    claims: dict[str, Any] | None = None
    error: AuthErrorKind | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class Principal:
    """The verified identity attached to a request after authentication."""

    user_id: str
    role: str
    email: str | None = None
    username: str | None = None
    issuer: str | None = None
    audience: str | None = None
    issued_at: int | None = None
    expires_at: int | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> Principal:
        # Older tokens carried the subject as "userId" rather than "sub".
        user_id = claims.get("sub") or claims.get("userId")
        return cls(
            user_id=str(user_id),
            role=str(claims["role"]),
            email=claims.get("email"),
            username=claims.get("username"),
            issuer=claims.get("iss"),
            audience=claims.get("aud"),
            issued_at=claims.get("iat"),
            expires_at=claims.get("exp"),
        )


@dataclass
class RefreshTokenRecord:
    """A persisted refresh credential.

    token is an opaque 256-bit random hex string, not a signed token. The
    store only ever looks it up; it never needs to verify it.

    is_revoked only moves False -> True. Revocation never deletes the row so
    the record stays around for audit until the purge sweep removes it after
    expires_at.
    """

    token: str
    user_id: str
    expires_at: datetime
    is_revoked: bool = False
    id: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_valid(self, now: datetime) -> bool:
        return not self.is_revoked and now < self.expires_at


@dataclass
class User:
    """A login identity, owned by the user-management side of the system.

    The auth core reads it to build access-token claims and to gate login and
    refresh on account state. hashed_password is a bcrypt hash.
    """

    username: str
    email: str
    role: str
    id: int | None = None
    hashed_password: str | None = None
    is_active: bool = True
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class TokenPair:
    """What a successful login or refresh hands back to the client."""

    access_token: str
    expires_in: int
    refresh_token: str | None = None
    refresh_expires_in: int | None = None
    token_type: str = "bearer"
    user: User | None = field(default=None, repr=False)
