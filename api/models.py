"""
API request and response models for Keyward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Passwords are length-capped at 128 characters at the transport edge; the
service layer owns the minimum-strength rule so the same check applies to
every entry point (register, reset, change, set).
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from auth.models import Account, Role, TokenPair

# ---------------------------------------------------------------------------
# Auth -- request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: str = Field(min_length=1, max_length=320)
    password: str = Field(min_length=1, max_length=128)
    remember_me: bool = False
    use_cookies: bool = False


class TwoFactorLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login/2fa."""

    model_config = ConfigDict(str_strip_whitespace=True)

    challenge_token: str = Field(min_length=1, max_length=256)
    code: str = Field(min_length=6, max_length=8)
    use_cookies: bool = False


class RecoveryLoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login/2fa/recovery."""

    model_config = ConfigDict(str_strip_whitespace=True)

    challenge_token: str = Field(min_length=1, max_length=256)
    recovery_code: str = Field(min_length=1, max_length=32)
    use_cookies: bool = False


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh.

    Cookie clients send an empty body; the refresh token is read from the
    refresh cookie instead.
    """

    refresh_token: Optional[str] = Field(default=None, max_length=256)
    use_cookies: bool = False


class PasswordChangeRequest(BaseModel):
    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(min_length=1, max_length=128)


class PasswordSetRequest(BaseModel):
    new_password: str = Field(min_length=1, max_length=128)


class RegisterRequest(BaseModel):
    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(min_length=1, max_length=128)


class ForgotPasswordRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=1, max_length=320)


class ResetPasswordRequest(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    new_password: str = Field(min_length=1, max_length=128)


class TwoFactorCodeRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=6, max_length=8)


class PasswordConfirmRequest(BaseModel):
    """Body for 2FA operations that re-check the current password."""

    password: str = Field(min_length=1, max_length=128)


# ---------------------------------------------------------------------------
# Auth -- response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    """Issued token pair.

    With use_cookies=true both token fields are null: the tokens travel only
    in httpOnly cookies and never reach JavaScript.
    """

    model_config = ConfigDict(frozen=True)

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair, use_cookies: bool) -> "TokenResponse":
        if use_cookies:
            return cls(expires_in=pair.expires_in)
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            expires_in=pair.expires_in,
        )


class LoginResponse(BaseModel):
    """Response for POST /api/v1/auth/login.

    requires_two_factor=true carries a challenge_token and no tokens.
    """

    model_config = ConfigDict(frozen=True)

    requires_two_factor: bool = False
    challenge_token: Optional[str] = None
    tokens: Optional[TokenResponse] = None


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: int
    email: str
    email_confirmed: bool
    roles: list[str]
    permissions: list[str]
    two_factor_enabled: bool
    has_password: bool
    external_logins: list[str]


class TwoFactorSetupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str
    otpauth_uri: str


class RecoveryCodesResponse(BaseModel):
    """Recovery codes are shown ONCE; only their hashes are stored."""

    model_config = ConfigDict(frozen=True)

    recovery_codes: list[str]


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# External providers
# ---------------------------------------------------------------------------


class ProviderInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str


class ChallengeRequest(BaseModel):
    """Request body for POST /api/v1/auth/external/challenge."""

    model_config = ConfigDict(str_strip_whitespace=True)

    provider: str = Field(min_length=1, max_length=50)
    redirect_uri: str = Field(min_length=1, max_length=2048)


class ChallengeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    authorization_url: str


class CallbackRequest(BaseModel):
    """Request body for POST /api/v1/auth/external/callback (mobile apps)."""

    code: str = Field(min_length=1, max_length=2048)
    state: str = Field(min_length=1, max_length=256)
    use_cookies: bool = False


class CallbackResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: str
    user_id: int
    is_new_account: bool
    is_link_only: bool
    tokens: Optional[TokenResponse] = None


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------


class UserCreate(BaseModel):
    """Request body for POST /api/v1/admin/users (invite)."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: str = Field(min_length=3, max_length=320, pattern=r"^[^@\s]+@[^@\s]+$")


class RoleAssign(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    role: str = Field(min_length=1, max_length=50)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    email_confirmed: bool
    is_locked: bool
    two_factor_enabled: bool
    roles: list[str]
    created_at: Optional[str]
    last_login: Optional[str]

    @classmethod
    def from_account(cls, account: Account, is_locked: bool) -> "UserResponse":
        return cls(
            id=account.id,
            email=account.email,
            email_confirmed=account.email_confirmed,
            is_locked=is_locked,
            two_factor_enabled=account.two_factor_enabled,
            roles=sorted(account.roles),
            created_at=account.created_at,
            last_login=account.last_login,
        )


class UserListResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    items: list[UserResponse]
    total: int
    page: int
    page_size: int


class RoleCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=50)
    permissions: list[str] = Field(default_factory=list, max_length=50)


class RolePermissionsUpdate(BaseModel):
    permissions: list[str] = Field(default_factory=list, max_length=50)


class RoleResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    permissions: list[str]
    is_system: bool
    user_count: int

    @classmethod
    def from_role(cls, role: Role) -> "RoleResponse":
        return cls(
            name=role.name,
            permissions=sorted(role.permissions),
            is_system=role.is_system,
            user_count=role.holder_count,
        )


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str
    version: str
    components: dict[str, str]
