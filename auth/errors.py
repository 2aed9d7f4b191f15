"""
auth/errors.py -- Error taxonomy for the auth layer.

Every failure the auth layer can report is one AuthErrorKind. Callers branch
on the kind, never on message text. Each kind carries the public error code
and the HTTP status the API layer maps it to:

  401 -- the caller must (re)authenticate: missing/malformed header, expired,
         bad signature, not-yet-valid, revoked refresh credential.
  403 -- the caller is authenticated but lacks the role.
  503 -- the refresh store is unreachable; retryable by the caller.
  500 -- the process was started without a usable signing secret.

Client-visible messages are deliberately coarse. Only EXPIRED_TOKEN gets its
own code so clients know to refresh instead of sending the user to login.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class AuthErrorKind(str, Enum):
    MISSING_CREDENTIAL = "missing_credential"
    MALFORMED_HEADER = "malformed_header"
    EXPIRED_TOKEN = "expired_token"
    INVALID_SIGNATURE = "invalid_signature"
    NOT_YET_VALID = "not_yet_valid"
    TOKEN_REVOKED = "token_revoked"
    INSUFFICIENT_ROLE = "insufficient_role"
    UNAUTHENTICATED = "unauthenticated"
    STORE_UNAVAILABLE = "store_unavailable"
    SECRET_MISCONFIGURED = "secret_misconfigured"

    @property
    def status_code(self) -> int:
        return _STATUS.get(self, 401)

    @property
    def public_code(self) -> str:
        """Code exposed to clients. Collapses authentication causes to avoid an oracle."""
        return _PUBLIC_CODE.get(self, "unauthorized")

    @property
    def public_message(self) -> str:
        return _PUBLIC_MESSAGE.get(self, "Authentication required.")


_STATUS = {
    AuthErrorKind.INSUFFICIENT_ROLE: 403,
    AuthErrorKind.STORE_UNAVAILABLE: 503,
    AuthErrorKind.SECRET_MISCONFIGURED: 500,
}

_PUBLIC_CODE = {
    AuthErrorKind.EXPIRED_TOKEN: "token_expired",
    AuthErrorKind.INSUFFICIENT_ROLE: "forbidden",
    AuthErrorKind.STORE_UNAVAILABLE: "store_unavailable",
    AuthErrorKind.SECRET_MISCONFIGURED: "internal_error",
}

_PUBLIC_MESSAGE = {
    AuthErrorKind.EXPIRED_TOKEN: "Access token expired. Refresh and retry.",
    AuthErrorKind.INSUFFICIENT_ROLE: "You do not have permission to access this resource.",
    AuthErrorKind.STORE_UNAVAILABLE: "Session store temporarily unavailable. Retry later.",
    AuthErrorKind.SECRET_MISCONFIGURED: "An unexpected error occurred.",
}


class AuthError(Exception):
    """An auth failure of a known kind.

    `detail` is for logs only. It may hold library exception text and must
    never be copied into a response body.
    """

    def __init__(self, kind: AuthErrorKind, detail: str = "") -> None:
        super().__init__(f"{kind.value}: {detail}" if detail else kind.value)
        self.kind = kind
        self.detail = detail

    @property
    def status_code(self) -> int:
        return self.kind.status_code


class StoreUnavailable(AuthError):
    """The refresh-token store could not be reached or timed out."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(AuthErrorKind.STORE_UNAVAILABLE, detail)


class SecretMisconfigured(AuthError):
    """Fatal: the signing secret is absent or too weak. The process must not start."""

    def __init__(self, detail: str = "") -> None:
        super().__init__(AuthErrorKind.SECRET_MISCONFIGURED, detail)
