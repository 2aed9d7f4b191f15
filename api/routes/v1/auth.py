"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST /api/v1/auth/login                      -- password login; access token + refresh credential
  POST /api/v1/auth/refresh                    -- refresh credential -> new access token (rotates by default)
  POST /api/v1/auth/logout                     -- revoke one refresh credential (this device)
  POST /api/v1/auth/logout-all                 -- revoke every session of the caller (requires auth)
  GET  /api/v1/auth/me                         -- principal of the presented access token
  GET  /api/v1/auth/sessions                   -- caller's active refresh sessions (no secrets)
  GET  /api/v1/auth/token-info                 -- unverified claims + remaining seconds (admin)
  POST /api/v1/auth/users/{user_id}/force-logout -- revoke every session of a user (admin)

Security:
  Login and refresh are rate-limited per IP.
  Login returns the same error for unknown email, wrong password, locked and
  inactive accounts so the response does not reveal which one applied.
  Cache-Control: no-store on every response that carries a credential.
  The refresh credential is also set as an httpOnly, path-scoped cookie
  (refreshToken) for browser clients; the body value wins when both exist.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    LoginRequest,
    LogoutResponse,
    MeResponse,
    RefreshRequest,
    SessionInfo,
    TokenInfoResponse,
    TokenResponse,
    UserSummary,
)
from auth.dependencies import authenticate, require_admin
from auth.errors import AuthError, AuthErrorKind
from auth.models import Principal, TokenPair, User
from auth.sessions import AccountUnavailable, LoginFailed, SessionService
from auth.store import RefreshTokenStore, UserStore
from core.config import get_settings

_settings = get_settings()

REFRESH_COOKIE = "refreshToken"
_REFRESH_COOKIE_PATH = "/api/v1/auth"

# Auth policy:
# - POST /auth/login, /auth/refresh, /auth/logout: public (the credential in the body is the proof)
# - POST /auth/logout-all, GET /auth/me, GET /auth/sessions: requires auth (authenticate)
# - GET /auth/token-info, POST /auth/users/{id}/force-logout: requires admin (authenticate + require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _service(request: Request) -> SessionService:
    return request.app.state.session_service


def _user_summary(user: Optional[User]) -> Optional[UserSummary]:
    if user is None:
        return None
    return UserSummary(id=user.id, username=user.username, email=user.email, role=user.role, is_active=user.is_active)


def _token_response(pair: TokenPair) -> JSONResponse:
    body = TokenResponse(
        access_token=pair.access_token,
        token_type=pair.token_type,
        expires_in=pair.expires_in,
        refresh_token=pair.refresh_token,
        refresh_expires_in=pair.refresh_expires_in,
        user=_user_summary(pair.user),
    )
    resp = JSONResponse(status_code=200, content=body.model_dump(mode="json", exclude_none=True))
    if pair.refresh_token:
        resp.set_cookie(
            REFRESH_COOKIE,
            value=pair.refresh_token,
            httponly=True,
            samesite="strict",
            secure=_settings.secure_cookies,
            max_age=pair.refresh_expires_in,
            path=_REFRESH_COOKIE_PATH,
        )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _presented_refresh(request: Request, body: Optional[RefreshRequest]) -> Optional[str]:
    if body is not None and body.refresh_token:
        return body.refresh_token
    return request.cookies.get(REFRESH_COOKIE)


def _error(status_code: int, code: str, message: str, clear_cookie: bool = False) -> JSONResponse:
    resp = JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})
    if clear_cookie:
        resp.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; open a new session."""
    try:
        pair = _service(request).login(body.email.strip(), body.password)
    except LoginFailed:
        return _error(401, "bad_credentials", "Invalid email or password.")
    return _token_response(pair)


@limiter.limit(_settings.refresh_rate_limit)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Exchange a refresh credential for a new access token.

    401 token_revoked -- the credential is unknown, revoked or expired: log in again.
    403 account_inactive -- the account was deactivated; all its sessions were revoked.
    423 account_locked -- the account is temporarily locked.
    503 -- the session store is unavailable: retry later, the credential is kept.
    """
    credential = _presented_refresh(request, body)
    if not credential:
        return _error(401, "unauthorized", "Refresh credential required.")
    try:
        pair = _service(request).refresh(credential)
    except AccountUnavailable as exc:
        code = "account_locked" if exc.status_code == 423 else "account_inactive"
        return _error(exc.status_code, code, "Account cannot be used.", clear_cookie=True)
    except AuthError as exc:
        if exc.kind is AuthErrorKind.TOKEN_REVOKED:
            return _error(401, "token_revoked", "Refresh credential is not valid. Log in again.", clear_cookie=True)
        raise
    return _token_response(pair)


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request, body: Optional[RefreshRequest] = None) -> JSONResponse:
    """Revoke the presented refresh credential. Acknowledges even if it was already gone."""
    revoked = _service(request).logout(_presented_refresh(request, body))
    resp = JSONResponse(content=LogoutResponse(message="Logged out.", revoked=int(revoked)).model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutResponse)
def logout_all(request: Request, principal: Principal = Depends(authenticate)) -> JSONResponse:
    """Revoke every refresh session of the caller (logout on all devices)."""
    revoked = _service(request).logout_everywhere(principal.user_id)
    resp = JSONResponse(content=LogoutResponse(message="Logged out everywhere.", revoked=revoked).model_dump())
    resp.delete_cookie(REFRESH_COOKIE, path=_REFRESH_COOKIE_PATH)
    return resp


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: Principal = Depends(authenticate)) -> MeResponse:
    """Return the identity carried by the presented access token."""
    return MeResponse(
        user_id=principal.user_id,
        username=principal.username,
        email=principal.email,
        role=principal.role,
        expires_at=principal.expires_at,
    )


@router.get("/auth/sessions", response_model=list[SessionInfo])
def list_sessions(request: Request, principal: Principal = Depends(authenticate)) -> list[SessionInfo]:
    """List the caller's active refresh sessions. Token values are never returned."""
    store: Optional[RefreshTokenStore] = request.app.state.token_store
    if store is None:
        return []
    return [
        SessionInfo(id=r.id, created_at=r.created_at.isoformat(), expires_at=r.expires_at.isoformat())
        for r in store.list_for_user(principal.user_id)
    ]


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/token-info", response_model=TokenInfoResponse, dependencies=[Depends(authenticate)])
def token_info(request: Request, _admin: Principal = Depends(require_admin)) -> TokenInfoResponse:
    """Show the presented token's claims as decoded WITHOUT verification. Debugging aid only."""
    authenticator = request.app.state.authenticator
    token = authenticator.extract_token(request.headers.get(request.app.state.auth_config.header_name))
    codec = request.app.state.codec
    return TokenInfoResponse(remaining_seconds=codec.remaining_seconds(token), claims=codec.decode_unsafe(token))


@router.post(
    "/auth/users/{user_id}/force-logout",
    response_model=LogoutResponse,
    dependencies=[Depends(authenticate)],
)
def force_logout(request: Request, user_id: int, _admin: Principal = Depends(require_admin)) -> LogoutResponse:
    """Revoke every refresh session of another user. Admin only."""
    users: UserStore = request.app.state.user_store
    if users.get_by_id(user_id) is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    revoked = _service(request).logout_everywhere(user_id)
    return LogoutResponse(message="User sessions revoked.", revoked=revoked)
