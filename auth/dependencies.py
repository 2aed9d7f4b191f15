"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication and roles.

BearerAuthenticator (authentication) walks one header through:

  NoToken -> (header present?) -> NoScheme/BadFormat -> TokenPresent -> Verified | Rejected

  - header absent                          -> MISSING_CREDENTIAL
  - not "<scheme> <token>" exactly          -> MALFORMED_HEADER
    (wrong or differently cased scheme, no single space, empty token,
    embedded whitespace)
  - token fails TokenCodec.verify()         -> EXPIRED_TOKEN / INVALID_SIGNATURE / NOT_YET_VALID
  - token is not an access token            -> INVALID_SIGNATURE

On success the Principal is stored on request.state.principal. Verification
is CPU-only: no store lookups, no shared mutable state, safe under any
request parallelism.

RoleGate (authorization) reads request.state.principal and never
authenticates by itself. It must run after the authenticator:

    @router.get("/admin", dependencies=[Depends(authenticate), Depends(require_admin)])

or simply take the principal from RoleGate, which returns it.

Both raise AuthError; api/main.py turns it into 401 / 403 with the uniform
error envelope. The specific rejection cause goes to the log only.

Layer rule: may import from fastapi (part of the DI system); no imports from
api/ or core/.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import Callable, Iterable
from typing import Any, TypeVar

from fastapi import Request

from auth.errors import AuthError, AuthErrorKind
from auth.models import AuthConfig, Principal, Role
from auth.tokens import ACCESS_TOKEN_TYPE, TokenCodec

logger = logging.getLogger("tokengate.auth")

F = TypeVar("F", bound=Callable[..., Any])


class BearerAuthenticator:
    """Verify the bearer access token of a request and attach the principal."""

    def __init__(self, codec: TokenCodec, config: AuthConfig | None = None) -> None:
        self._codec = codec
        config = config or codec.config
        self._header_name = config.header_name
        self._prefix = f"{config.scheme} "

    def extract_token(self, header_value: str | None) -> str:
        """Return the token part of the header or raise the matching AuthError."""
        if header_value is None or header_value == "":
            raise AuthError(AuthErrorKind.MISSING_CREDENTIAL)
        if not header_value.startswith(self._prefix):
            raise AuthError(AuthErrorKind.MALFORMED_HEADER, "wrong scheme or separator")
        token = header_value[len(self._prefix) :]
        if not token or token != token.strip() or any(ch.isspace() for ch in token):
            raise AuthError(AuthErrorKind.MALFORMED_HEADER, "empty or whitespace-padded token")
        return token

    def authenticate(self, header_value: str | None) -> Principal:
        """Pure header -> Principal step. Raises AuthError on any rejection."""
        token = self.extract_token(header_value)
        result = self._codec.verify(token)
        if not result.ok:
            raise AuthError(result.error)
        claims = result.claims
        if claims.get("typ", ACCESS_TOKEN_TYPE) != ACCESS_TOKEN_TYPE:
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE, "not an access token")
        if "role" not in claims or not (claims.get("sub") or claims.get("userId")):
            raise AuthError(AuthErrorKind.INVALID_SIGNATURE, "required claims missing")
        return Principal.from_claims(claims)

    def __call__(self, request: Request) -> Principal:
        try:
            principal = self.authenticate(request.headers.get(self._header_name))
        except AuthError as exc:
            logger.info(
                "Authentication rejected (%s) on %s %s", exc.kind.value, request.method, request.url.path
            )
            raise
        request.state.principal = principal
        return principal


class RoleGate:
    """Allow the request only if the attached principal holds one of the roles."""

    def __init__(self, roles: str | Role | Iterable[str | Role]) -> None:
        if isinstance(roles, (str, Role)):
            roles = [roles]
        self.allowed = frozenset(r.value if isinstance(r, Role) else str(r) for r in roles)
        if not self.allowed:
            raise ValueError("RoleGate needs at least one role")

    def authorize(self, principal: Principal | None) -> Principal:
        if principal is None:
            raise AuthError(AuthErrorKind.UNAUTHENTICATED)
        if principal.role not in self.allowed:
            logger.info("Role %r denied (allowed: %s)", principal.role, sorted(self.allowed))
            raise AuthError(AuthErrorKind.INSUFFICIENT_ROLE)
        return principal

    def __call__(self, request: Request) -> Principal:
        return self.authorize(getattr(request.state, "principal", None))

    def wrap(self, handler: F) -> F:
        """Decorate a plain callable whose first argument is the principal."""

        @functools.wraps(handler)
        def wrapper(principal: Principal | None, *args: Any, **kwargs: Any) -> Any:
            return handler(self.authorize(principal), *args, **kwargs)

        return wrapper  # type: ignore[return-value]


require_admin = RoleGate(Role.admin)


# ---------------------------------------------------------------------------
# app.state accessors
# ---------------------------------------------------------------------------


def authenticate(request: Request) -> Principal:
    """Dependency using the authenticator wired onto app.state at startup."""
    return request.app.state.authenticator(request)
