"""
api/routes/v1/auth.py -- Login, session, password, and two-factor endpoints.

Routes:
  POST /api/v1/auth/login                  -- password step; tokens or 2FA challenge
  POST /api/v1/auth/login/2fa              -- complete login with a TOTP code
  POST /api/v1/auth/login/2fa/recovery     -- complete login with a recovery code
  POST /api/v1/auth/refresh                -- rotate the refresh token (body or cookie)
  POST /api/v1/auth/logout                 -- revoke every session (requires auth)
  POST /api/v1/auth/set-password           -- first password for external-only accounts
  POST /api/v1/auth/change-password        -- requires current password
  POST /api/v1/auth/register               -- self-service sign-up
  POST /api/v1/auth/forgot-password        -- always 200, never reveals registration
  POST /api/v1/auth/reset-password         -- consume a single-use reset token
  GET  /api/v1/auth/me                     -- current account (requires auth)
  DELETE /api/v1/auth/me                   -- delete own account, requires password
  POST /api/v1/auth/2fa/setup              -- new TOTP secret + otpauth URI
  POST /api/v1/auth/2fa/verify-setup       -- enable 2FA, returns recovery codes
  POST /api/v1/auth/2fa/disable            -- requires password
  POST /api/v1/auth/2fa/recovery-codes     -- regenerate, requires password

Security:
  Login, both 2FA steps, refresh, and forgot-password share the login rate
  limit (LOGIN_RATE_LIMIT, per client IP).
  Every response that carries or concerns credentials sets Cache-Control:
  no-store. Error responses get it from the ServiceError handler.
  Services raise ServiceError subclasses; nothing here builds error bodies.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LoginResponse,
    MeResponse,
    MessageResponse,
    PasswordChangeRequest,
    PasswordConfirmRequest,
    PasswordSetRequest,
    RecoveryCodesResponse,
    RecoveryLoginRequest,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TokenResponse,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
    TwoFactorSetupResponse,
    UserResponse,
)
from auth.dependencies import get_current_account
from auth.models import Account, TokenPair
from auth.roles import Permissions, is_superadmin
from auth.tokens import clear_auth_cookies, set_auth_cookies
from core.config import get_settings
from core.cookies import REFRESH_COOKIE

# Auth policy:
# - login, login/2fa, login/2fa/recovery, refresh:  public, rate-limited
# - register, forgot-password, reset-password:      public (forgot is rate-limited)
# - everything else:                                requires auth (get_current_account)
router = APIRouter()


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _no_store(resp: JSONResponse) -> JSONResponse:
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _token_response(request: Request, pair: TokenPair, use_cookies: bool) -> JSONResponse:
    """Return the token pair in the body, or only in httpOnly cookies."""
    resp = JSONResponse(content=TokenResponse.from_pair(pair, use_cookies).model_dump())
    if use_cookies:
        set_auth_cookies(resp, pair, request.app.state.settings)
    return _no_store(resp)


def _message(text: str) -> JSONResponse:
    return _no_store(JSONResponse(content=MessageResponse(message=text).model_dump()))


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Verify email and password.

    Unknown email and wrong password produce the same invalid_credentials
    error. 2FA accounts receive a challenge_token and no tokens.
    """
    outcome = request.app.state.sessions.login(body.email, body.password, body.remember_me)
    if outcome.requires_two_factor:
        content = LoginResponse(requires_two_factor=True, challenge_token=outcome.challenge_token)
        return _no_store(JSONResponse(content=content.model_dump()))

    content = LoginResponse(tokens=TokenResponse.from_pair(outcome.tokens, body.use_cookies))
    resp = JSONResponse(content=content.model_dump())
    if body.use_cookies:
        set_auth_cookies(resp, outcome.tokens, request.app.state.settings)
    return _no_store(resp)


@limiter.limit(_login_rate_limit)
@router.post("/auth/login/2fa", response_model=TokenResponse)
def login_two_factor(request: Request, body: TwoFactorLoginRequest) -> JSONResponse:
    pair = request.app.state.sessions.complete_two_factor(body.challenge_token, body.code)
    return _token_response(request, pair, body.use_cookies)


@limiter.limit(_login_rate_limit)
@router.post("/auth/login/2fa/recovery", response_model=TokenResponse)
def login_recovery(request: Request, body: RecoveryLoginRequest) -> JSONResponse:
    pair = request.app.state.sessions.complete_two_factor_recovery(body.challenge_token, body.recovery_code)
    return _token_response(request, pair, body.use_cookies)


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@limiter.limit(_login_rate_limit)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest | None = None) -> JSONResponse:
    """Rotate a refresh token.

    The token comes from the body, or from the refresh cookie when the body
    has none. A cookie-sourced refresh always answers with cookies so the
    client middleware never sees a plaintext token.
    """
    body = body or RefreshRequest()
    token = body.refresh_token
    use_cookies = body.use_cookies
    if not token:
        token = request.cookies.get(REFRESH_COOKIE, "")
        use_cookies = True
    pair = request.app.state.sessions.refresh(token)
    return _token_response(request, pair, use_cookies)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    """Revoke every refresh token of the caller and clear the auth cookies."""
    request.app.state.sessions.logout(account.id)
    resp = _message("Logged out.")
    clear_auth_cookies(resp)
    return resp


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, account: Account = Depends(get_current_account)) -> MeResponse:
    """Return identity information for the currently authenticated account."""
    if is_superadmin(account.roles):
        permissions = Permissions.ALL
    else:
        permissions = request.app.state.store.get_permissions_for_roles(account.roles)
    return MeResponse(
        user_id=account.id,
        email=account.email,
        email_confirmed=account.email_confirmed,
        roles=sorted(account.roles),
        permissions=sorted(permissions),
        two_factor_enabled=account.two_factor_enabled,
        has_password=account.hashed_password is not None,
        external_logins=request.app.state.broker.linked_providers(account.id),
    )


@router.delete("/auth/me", response_model=MessageResponse)
def delete_me(
    request: Request, body: PasswordConfirmRequest, account: Account = Depends(get_current_account)
) -> JSONResponse:
    """Delete the caller's own account. Every session is revoked first."""
    request.app.state.sessions.delete_account(account.id, body.password)
    resp = _message("Account deleted.")
    clear_auth_cookies(resp)
    return resp


# ---------------------------------------------------------------------------
# Passwords and registration
# ---------------------------------------------------------------------------


@router.post("/auth/set-password", response_model=MessageResponse)
def set_password(
    request: Request, body: PasswordSetRequest, account: Account = Depends(get_current_account)
) -> JSONResponse:
    request.app.state.sessions.set_password(account.id, body.new_password)
    resp = _message("Password set. Please sign in again.")
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request, body: PasswordChangeRequest, account: Account = Depends(get_current_account)
) -> JSONResponse:
    """Change the password; every session, this one included, is revoked."""
    request.app.state.sessions.change_password(account.id, body.current_password, body.new_password)
    resp = _message("Password changed. Please sign in again.")
    clear_auth_cookies(resp)
    return resp


@router.post("/auth/register", response_model=UserResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    account = request.app.state.sessions.register(body.email, body.password)
    content = UserResponse.from_account(account, is_locked=False)
    return _no_store(JSONResponse(status_code=201, content=content.model_dump()))


@limiter.limit(_login_rate_limit)
@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Identical response whether or not the email is registered."""
    request.app.state.sessions.request_password_reset(body.email)
    return _message("If that address is registered, a reset link has been sent.")


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    request.app.state.sessions.reset_password(body.token, body.new_password)
    return _message("Password has been reset. Please sign in.")


# ---------------------------------------------------------------------------
# Two-factor management (authenticated)
# ---------------------------------------------------------------------------


@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def two_factor_setup(request: Request, account: Account = Depends(get_current_account)) -> JSONResponse:
    secret, uri = request.app.state.two_factor.setup(account.id)
    return _no_store(JSONResponse(content=TwoFactorSetupResponse(secret=secret, otpauth_uri=uri).model_dump()))


@router.post("/auth/2fa/verify-setup", response_model=RecoveryCodesResponse)
def two_factor_verify_setup(
    request: Request, body: TwoFactorCodeRequest, account: Account = Depends(get_current_account)
) -> JSONResponse:
    codes = request.app.state.two_factor.verify_setup(account.id, body.code)
    return _no_store(JSONResponse(content=RecoveryCodesResponse(recovery_codes=codes).model_dump()))


@router.post("/auth/2fa/disable", response_model=MessageResponse)
def two_factor_disable(
    request: Request, body: PasswordConfirmRequest, account: Account = Depends(get_current_account)
) -> JSONResponse:
    request.app.state.two_factor.disable(account.id, body.password)
    return _message("Two-factor authentication disabled.")


@router.post("/auth/2fa/recovery-codes", response_model=RecoveryCodesResponse)
def two_factor_recovery_codes(
    request: Request, body: PasswordConfirmRequest, account: Account = Depends(get_current_account)
) -> JSONResponse:
    codes = request.app.state.two_factor.regenerate_recovery_codes(account.id, body.password)
    return _no_store(JSONResponse(content=RecoveryCodesResponse(recovery_codes=codes).model_dump()))
