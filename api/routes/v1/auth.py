"""
api/routes/v1/auth.py -- Registration, login, password recovery, logout and identity endpoints.

Routes:
  POST /api/v1/auth/register   -- create a user account (role "user")
  POST /api/v1/auth/login      -- password login; returns access + refresh token,
                                  sets the refreshToken cookie
  POST /api/v1/auth/forgot-password  -- issue a one-time reset code (always 200)
  POST /api/v1/auth/reset-password   -- set a new password with that code; ends
                                         the session
  POST /api/v1/auth/logout     -- ends the session (clears the stored fingerprint
                                  and the cookie); requires auth
  GET  /api/v1/auth/me         -- claims of the current principal; requires auth

Security:
  POST /login and /register are rate-limited per IP (Settings.login_rate_limit).
  The two recovery routes use Settings.recovery_rate_limit.
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on responses that carry tokens.
  Every login replaces the stored refresh fingerprint, so a second login
  invalidates the refresh token of the first.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    RegisterRequest,
    ResetPasswordRequest,
)
from auth.dependencies import get_current_principal
from auth.models import AccessClaims, User
from auth.recovery import PasswordRecovery
from auth.sessions import SessionManager
from auth.tokens import (
    TokenAuthority,
    authenticate_user,
    clear_refresh_cookie,
    hash_password,
    set_refresh_cookie,
)
from blog.service import UserDirectory
from core.config import get_settings

router = APIRouter()

_settings = get_settings()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/register", response_model=MessageResponse, status_code=201)
async def register(request: Request, body: RegisterRequest) -> MessageResponse:
    """Create a regular user account. Duplicate emails yield 409 conflict."""
    users: UserDirectory = request.app.state.users
    created = await users.register(
        User(username=body.username, email=body.email, hashed_password=hash_password(body.password))
    )
    return MessageResponse(message="User registered successfully.", data=created)


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/login", response_model=LoginResponse)
async def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; start a session.

    Returns the same generic error for unknown email and wrong password
    ("bad_credentials") to avoid leaking which accounts exist.
    """
    sessions: SessionManager = request.app.state.sessions
    authority: TokenAuthority = request.app.state.token_authority
    user = await authenticate_user(sessions.store, body.email, body.password)
    if user is None:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    refresh_token = await sessions.start_session(user.id)
    access_token = authority.issue_access_token(user.id, user.role)
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=authority.access_ttl,
            user=user.to_public(),
        ).model_dump(by_alias=True),
    )
    set_refresh_cookie(resp, refresh_token, max_age=authority.refresh_ttl, secure=_settings.secure_cookies)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
async def forgot_password(request: Request, body: ForgotPasswordRequest) -> MessageResponse:
    """Send a one-time reset code. The response is identical whether or not the email exists."""
    recovery: PasswordRecovery = request.app.state.recovery
    await recovery.request_reset(body.email)
    return MessageResponse(message="If the account exists, a reset code has been sent.")


@limiter.limit(_settings.recovery_rate_limit)
@router.post("/auth/reset-password", response_model=MessageResponse)
async def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    """Set a new password with a reset code; also ends the current session.

    400 invalid_reset_code for a wrong, unknown or already used code,
    400 reset_code_expired once the code's lifetime has passed.
    """
    recovery: PasswordRecovery = request.app.state.recovery
    await recovery.reset_password(body.email, body.code, body.new_password)
    return MessageResponse(message="Password reset successfully.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout", response_model=MessageResponse)
async def logout(
    request: Request,
    response: Response,
    principal: AccessClaims = Depends(get_current_principal),
) -> MessageResponse:
    """End the session. A second logout returns 409 session_already_ended.

    Uses the injected Response (not a JSONResponse) so the cookie deletion is
    merged with any x-access-token header set during authentication.
    """
    sessions: SessionManager = request.app.state.sessions
    await sessions.end_session(principal.principal_id)
    clear_refresh_cookie(response)
    return MessageResponse(message="Logout successful.")


@router.get("/auth/me", response_model=MeResponse)
async def me(principal: AccessClaims = Depends(get_current_principal)) -> MeResponse:
    """Return the identity carried by the (possibly just rotated) access token."""
    return MeResponse(user_id=principal.principal_id, role=principal.role)
