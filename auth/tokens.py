"""
auth/tokens.py -- JWT codec and issuer, password hashing, opaque secrets.

Security design decisions:
  JWT: python-jose with one HMAC algorithm fixed by AuthConfig. TokenCodec
       passes algorithms=[config.algorithm] to jose and exposes no algorithm
       parameter anywhere, so a token header naming another algorithm ("none",
       RS256, ...) is rejected as a bad signature. Verification returns a
       VerifyResult tagged with an AuthErrorKind instead of raising; jose's
       exception text is logged at debug level and never returned.

       exp and nbf are checked here rather than by jose: jose treats
       exp == now as still valid, but a TTL of zero must produce a token that
       is already expired.

  Refresh credentials: the default strategy stores an opaque
       secrets.token_hex(32) value (256 bits) per session in RefreshTokenStore.
       TokenIssuer.issue_refresh_token() produces the signed alternative used
       by the stateless "signed" strategy only. See auth/sessions.py.

  Passwords: bcrypt directly (no passlib wrapper). _DUMMY_HASH equalizes
       login timing so response time does not reveal whether an account
       exists.

Layer rule: no imports from api/ or core/. Config arrives as an AuthConfig.
"""

from __future__ import annotations

import logging
import math
import re
import secrets
import time
from collections.abc import Callable
from datetime import timedelta
from typing import Any

import bcrypt
from jose import JWTError, jwt

from auth.errors import AuthError, AuthErrorKind
from auth.models import AuthConfig, User, VerifyResult

logger = logging.getLogger("tokengate.auth")

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"

# Claims the codec owns. Callers cannot override them through encode().
_RESERVED_CLAIMS = frozenset({"iat", "exp", "iss", "aud"})


def _ttl_seconds(ttl: timedelta | float | int) -> float:
    if isinstance(ttl, timedelta):
        return ttl.total_seconds()
    return float(ttl)


# ---------------------------------------------------------------------------
# TokenCodec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Stateless encode / verify of compact signed tokens with one shared secret.

    Usage:
        codec = TokenCodec(config)
        token = codec.encode({"sub": "42", "role": "admin"}, timedelta(minutes=5))
        result = codec.verify(token)
        if result.ok:
            claims = result.claims
    """

    def __init__(self, config: AuthConfig, clock: Callable[[], float] = time.time) -> None:
        self._config = config
        self._clock = clock

    @property
    def config(self) -> AuthConfig:
        return self._config

    def encode(self, claims: dict[str, Any], ttl: timedelta | float | int) -> str:
        """Sign claims with iat=now, exp=iat+ceil(ttl), and the configured iss/aud.

        TTLs are rounded up to whole seconds so a positive TTL always yields
        exp > iat. A TTL of 0 yields exp == iat, which verify() reports as
        expired.
        """
        seconds = _ttl_seconds(ttl)
        if seconds < 0:
            raise ValueError("ttl must not be negative")
        issued_at = int(self._clock())
        payload = {k: v for k, v in claims.items() if k not in _RESERVED_CLAIMS}
        payload.update(
            {
                "iat": issued_at,
                "exp": issued_at + math.ceil(seconds),
                "iss": self._config.issuer,
                "aud": self._config.audience,
            }
        )
        return jwt.encode(payload, self._config.secret, algorithm=self._config.algorithm)

    def verify(self, token: str) -> VerifyResult:
        """Verify signature, iss, aud, exp and nbf. Never raises for a bad token."""
        if not token:
            return VerifyResult(error=AuthErrorKind.INVALID_SIGNATURE)
        try:
            claims = jwt.decode(
                token,
                self._config.secret,
                algorithms=[self._config.algorithm],
                audience=self._config.audience,
                issuer=self._config.issuer,
                options={"verify_exp": False, "verify_nbf": False, "require_aud": True, "require_iss": True},
            )
        except JWTError as exc:
            logger.debug("Token rejected by codec: %s", exc)
            return VerifyResult(error=AuthErrorKind.INVALID_SIGNATURE)

        exp = claims.get("exp")
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return VerifyResult(error=AuthErrorKind.INVALID_SIGNATURE)
        now = self._clock()
        if now >= exp:
            return VerifyResult(error=AuthErrorKind.EXPIRED_TOKEN)
        nbf = claims.get("nbf")
        if nbf is not None:
            if not isinstance(nbf, (int, float)) or isinstance(nbf, bool):
                return VerifyResult(error=AuthErrorKind.INVALID_SIGNATURE)
            if now < nbf:
                return VerifyResult(error=AuthErrorKind.NOT_YET_VALID)
        return VerifyResult(claims=claims)

    def verify_or_raise(self, token: str) -> dict[str, Any]:
        result = self.verify(token)
        if not result.ok:
            raise AuthError(result.error)
        return result.claims

    def decode_unsafe(self, token: str) -> dict[str, Any]:
        """Return the claims WITHOUT checking signature, expiry, issuer or audience.

        For introspection and debugging only. Never base an authorization
        decision on the result: anyone can forge these claims.
        """
        try:
            return jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE, str(exc)) from exc

    def remaining_seconds(self, token: str) -> int:
        """Seconds until exp, or 0 if the token is unparsable or already expired."""
        try:
            exp = jwt.get_unverified_claims(token).get("exp")
        except JWTError:
            return 0
        if not isinstance(exp, (int, float)) or isinstance(exp, bool):
            return 0
        return max(0, int(exp - self._clock()))


# ---------------------------------------------------------------------------
# TokenIssuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Builds access and refresh claim sets and signs them with the right TTL."""

    def __init__(self, codec: TokenCodec) -> None:
        self._codec = codec
        self._config = codec.config

    @property
    def access_ttl_seconds(self) -> int:
        return int(self._config.access_ttl.total_seconds())

    @property
    def refresh_ttl_seconds(self) -> int:
        return int(self._config.refresh_ttl.total_seconds())

    def issue_access_token(self, principal_claims: dict[str, Any]) -> str:
        if "role" not in principal_claims or not (principal_claims.get("sub") or principal_claims.get("userId")):
            raise ValueError("access token claims need a subject and a role")
        claims = dict(principal_claims)
        claims["typ"] = ACCESS_TOKEN_TYPE
        return self._codec.encode(claims, self._config.access_ttl)

    def issue_refresh_token(self, user_id: str | int) -> str:
        """Signed refresh token carrying only the user id. Used by the stateless strategy."""
        return self._codec.encode({"userId": str(user_id), "typ": REFRESH_TOKEN_TYPE}, self._config.refresh_ttl)

    def verify_refresh_token(self, token: str) -> VerifyResult:
        result = self._codec.verify(token)
        if result.ok and (result.claims.get("typ") != REFRESH_TOKEN_TYPE or not result.claims.get("userId")):
            return VerifyResult(error=AuthErrorKind.INVALID_SIGNATURE)
        return result

    @staticmethod
    def access_claims_for(user: User) -> dict[str, Any]:
        return {
            "sub": str(user.id),
            "role": user.role,
            "email": user.email,
            "username": user.username,
        }


# ---------------------------------------------------------------------------
# Opaque secrets
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    """Return a 64 hex char opaque refresh credential (256 bits of entropy)."""
    return secrets.token_hex(32)


def generate_secret(length: int = 64) -> str:
    """Return a hex signing secret built from `length` random bytes."""
    if length < 32:
        raise ValueError("secret length must be at least 32 bytes")
    return secrets.token_hex(length)


def check_secret_strength(secret: str) -> dict[str, Any]:
    """Grade a signing secret. Returns {"is_valid", "strength", "issues"}.

    A secret is usable when it is at least 32 characters long; it is rated
    strong only when it raises no issue at all.
    """
    issues: list[str] = []
    if not secret:
        return {"is_valid": False, "strength": "weak", "issues": ["Secret is empty"]}
    if len(secret) < 32:
        issues.append("Secret is too short (minimum 32 characters)")
    if len(secret) < 64:
        issues.append("Secret should be at least 64 characters for better security")
    if re.fullmatch(r"[0-9]+", secret):
        issues.append("Secret contains only numbers")
    if re.fullmatch(r"[a-zA-Z]+", secret):
        issues.append("Secret contains only letters")
    if secret == secret.lower() or secret == secret.upper():
        issues.append("Secret should contain mixed case characters")

    if not issues:
        return {"is_valid": True, "strength": "strong", "issues": issues}
    if len(issues) <= 2:
        return {"is_valid": len(secret) >= 32, "strength": "medium", "issues": issues}
    return {"is_valid": False, "strength": "weak", "issues": issues}


# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("tokengate_timing_dummy")


def equalize_password_timing(plain: str) -> None:
    """Burn one bcrypt check against a dummy hash (unknown-user login path)."""
    verify_password(plain, _DUMMY_HASH)
