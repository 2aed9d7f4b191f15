"""
auth/sessions.py -- Login, refresh and logout flows.

SessionService ties the issuer, the refresh strategy and the user store
together. Exactly one refresh strategy is used per process:

  StoreRefreshStrategy (default) -- the refresh credential is an opaque
      random string persisted in RefreshTokenStore. Supports real revocation
      (logout, logout everywhere, force logout) and rotation.

  SignedRefreshStrategy -- the refresh credential is a signed token from
      TokenIssuer.issue_refresh_token(). Nothing is stored, so nothing can be
      revoked before it expires; logout only discards the client copy.

Flows raise AuthError subclasses; the API layer maps them onto responses.
Login failures are reported as LoginFailed with a reason for the logs and a
single client-visible message.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Protocol

from auth.errors import AuthError, AuthErrorKind
from auth.models import TokenPair, User
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import TokenIssuer, equalize_password_timing, verify_password

logger = logging.getLogger("tokengate.auth.sessions")


class LoginFailed(Exception):
    """Credentials rejected. reason is one of: bad_credentials, locked, inactive."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class AccountUnavailable(Exception):
    """A valid refresh credential whose account can no longer be used.

    status_code is 403 for a deactivated account and 423 for a locked one.
    """

    def __init__(self, reason: str, status_code: int) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Refresh strategies
# ---------------------------------------------------------------------------


class RefreshStrategy(Protocol):
    name: str
    supports_revocation: bool

    def issue(self, user_id: str) -> tuple[str, int]: ...

    def resolve(self, credential: str) -> str | None: ...

    def rotate(self, credential: str) -> tuple[str, str, int] | None: ...

    def revoke(self, credential: str) -> bool: ...

    def revoke_all(self, user_id: str) -> int: ...


class StoreRefreshStrategy:
    """Opaque refresh credentials persisted in RefreshTokenStore."""

    name = "store"
    supports_revocation = True

    def __init__(self, store: RefreshTokenStore) -> None:
        self.store = store

    def _ttl(self) -> int:
        return int(self.store.refresh_ttl.total_seconds())

    def issue(self, user_id: str) -> tuple[str, int]:
        record = self.store.create_refresh_token(user_id)
        return record.token, self._ttl()

    def resolve(self, credential: str) -> str | None:
        record = self.store.find_valid_token(credential)
        return record.user_id if record is not None else None

    def rotate(self, credential: str) -> tuple[str, str, int] | None:
        record = self.store.rotate(credential)
        if record is None:
            return None
        return record.user_id, record.token, self._ttl()

    def revoke(self, credential: str) -> bool:
        return self.store.revoke_token(credential)

    def revoke_all(self, user_id: str) -> int:
        return self.store.revoke_all_for_user(user_id)


class SignedRefreshStrategy:
    """Stateless signed refresh tokens. No server-side state, no revocation."""

    name = "signed"
    supports_revocation = False

    def __init__(self, issuer: TokenIssuer) -> None:
        self.issuer = issuer

    def issue(self, user_id: str) -> tuple[str, int]:
        return self.issuer.issue_refresh_token(user_id), self.issuer.refresh_ttl_seconds

    def resolve(self, credential: str) -> str | None:
        result = self.issuer.verify_refresh_token(credential)
        if not result.ok:
            logger.info("Signed refresh token rejected (%s)", result.error.value)
            return None
        return str(result.claims["userId"])

    def rotate(self, credential: str) -> tuple[str, str, int] | None:
        # Without server state the old token stays usable until it expires.
        user_id = self.resolve(credential)
        if user_id is None:
            return None
        token, ttl = self.issue(user_id)
        return user_id, token, ttl

    def revoke(self, credential: str) -> bool:
        return False

    def revoke_all(self, user_id: str) -> int:
        return 0


# ---------------------------------------------------------------------------
# SessionService
# ---------------------------------------------------------------------------


class SessionService:
    """Login / refresh / logout orchestration.

    Usage:
        service = SessionService(issuer, StoreRefreshStrategy(token_store), user_store)
        pair = service.login("alice@example.com", "s3cret")
        pair = service.refresh(pair.refresh_token)
        service.logout(pair.refresh_token)
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        strategy: RefreshStrategy,
        users: UserStore,
        *,
        rotate_refresh_tokens: bool = True,
        max_login_attempts: int = 5,
        lockout: timedelta = timedelta(minutes=15),
    ) -> None:
        self.issuer = issuer
        self.strategy = strategy
        self.users = users
        self.rotate_refresh_tokens = rotate_refresh_tokens
        self.max_login_attempts = max_login_attempts
        self.lockout = lockout

    def _access_for(self, user: User) -> str:
        return self.issuer.issue_access_token(self.issuer.access_claims_for(user))

    def login(self, email: str, password: str) -> TokenPair:
        """Check credentials and open a new session (access + refresh)."""
        user = self.users.get_by_email(email)
        if user is None or user.hashed_password is None:
            equalize_password_timing(password)
            raise LoginFailed("bad_credentials")
        if self.users.is_locked(user):
            equalize_password_timing(password)
            raise LoginFailed("locked")
        if not user.is_active:
            equalize_password_timing(password)
            raise LoginFailed("inactive")
        if not verify_password(password, user.hashed_password):
            self.users.record_failed_login(user.id, self.max_login_attempts, self.lockout)
            raise LoginFailed("bad_credentials")

        self.users.record_successful_login(user.id)
        refresh_token, refresh_ttl = self.strategy.issue(str(user.id))
        logger.info("User %s logged in (refresh strategy=%s)", user.id, self.strategy.name)
        return TokenPair(
            access_token=self._access_for(user),
            expires_in=self.issuer.access_ttl_seconds,
            refresh_token=refresh_token,
            refresh_expires_in=refresh_ttl,
            user=user,
        )

    def refresh(self, credential: str) -> TokenPair:
        """Exchange a refresh credential for a new access token.

        With rotation on, the presented credential is revoked and replaced in
        the same store transaction and the new one is returned.

        Raises AuthError(TOKEN_REVOKED) for an unknown, revoked or expired
        credential, AccountUnavailable when the account was deactivated (all
        of its sessions are revoked) or is locked, and StoreUnavailable on
        infrastructure failure.
        """
        if not credential:
            raise AuthError(AuthErrorKind.MISSING_CREDENTIAL)

        new_refresh: str | None = None
        new_refresh_ttl: int | None = None
        if self.rotate_refresh_tokens:
            rotated = self.strategy.rotate(credential)
            if rotated is None:
                raise AuthError(AuthErrorKind.TOKEN_REVOKED, "refresh credential not valid")
            user_id, new_refresh, new_refresh_ttl = rotated
        else:
            user_id = self.strategy.resolve(credential)
            if user_id is None:
                raise AuthError(AuthErrorKind.TOKEN_REVOKED, "refresh credential not valid")

        user = self.users.get_by_id(user_id)
        if user is None or not user.is_active:
            revoked = self.strategy.revoke_all(user_id)
            logger.warning("Refresh for inactive or missing user %s; revoked %d session(s)", user_id, revoked)
            raise AccountUnavailable("inactive", 403)
        if self.users.is_locked(user):
            if new_refresh is not None:
                self.strategy.revoke(new_refresh)
            raise AccountUnavailable("locked", 423)

        return TokenPair(
            access_token=self._access_for(user),
            expires_in=self.issuer.access_ttl_seconds,
            refresh_token=new_refresh,
            refresh_expires_in=new_refresh_ttl,
            user=user,
        )

    def logout(self, credential: str | None) -> bool:
        """Single-device logout. Always acknowledges; returns whether a session was revoked."""
        if not credential:
            return False
        return self.strategy.revoke(credential)

    def logout_everywhere(self, user_id: str | int) -> int:
        """Revoke every session of user_id (logout everywhere, force logout, compromise response)."""
        return self.strategy.revoke_all(str(user_id))
