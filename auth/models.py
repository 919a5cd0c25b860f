"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own the
domain shape; stores and services do the work.

Timestamps are ISO 8601 UTC strings, the same representation the store
writes, so comparisons in SQL and in Python agree.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class Account:
    """A user identity.

    email doubles as the login identifier. hashed_password is None for
    accounts created through an external provider that never set a password.

    security_stamp is an opaque version marker embedded in every access token.
    Rotating it invalidates all outstanding access tokens without a revocation
    list.

    lockout_until is set both by repeated failed logins (minutes) and by an
    admin lock (effectively permanent). None means not locked.
    """

    email: str
    id: int | None = None
    hashed_password: str | None = None
    security_stamp: str = ""
    email_confirmed: bool = False
    lockout_until: str | None = None
    failed_login_count: int = 0
    two_factor_enabled: bool = False
    totp_secret: str | None = None
    roles: list[str] = field(default_factory=list)
    created_at: str | None = None
    last_login: str | None = None


@dataclass
class Role:
    name: str
    permissions: set[str] = field(default_factory=set)
    is_system: bool = False
    holder_count: int = 0


@dataclass
class RefreshToken:
    """A persisted refresh token record. Only the hash of the token is stored.

    A token is redeemable while is_used and is_invalidated are both False and
    expires_at is in the future. Redemption flips is_used and issues a
    successor; mass revocation flips is_invalidated.
    """

    account_id: int
    token_hash: str
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    is_used: bool = False
    used_at: str | None = None
    is_invalidated: bool = False
    is_persistent: bool = False


@dataclass
class ExternalAuthState:
    """Single-use CSRF nonce for one OAuth authorization round trip.

    account_id is set when an authenticated user starts the flow to link a
    provider to their existing account.
    """

    token_hash: str
    provider: str
    redirect_uri: str
    expires_at: str
    id: int | None = None
    account_id: int | None = None
    created_at: str | None = None
    is_used: bool = False


@dataclass
class TwoFactorChallenge:
    """Binds a password-verified login to its pending second factor."""

    token_hash: str
    account_id: int
    expires_at: str
    id: int | None = None
    created_at: str | None = None
    is_used: bool = False
    is_persistent: bool = False
    failed_attempts: int = 0


@dataclass
class ExternalLogin:
    provider: str
    provider_key: str
    account_id: int
    created_at: str | None = None


@dataclass
class ExternalUserInfo:
    """Normalized identity returned by a provider after code exchange."""

    provider_key: str
    email: str
    email_verified: bool
    first_name: str | None = None
    last_name: str | None = None


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"  # noqa: S105 -- OAuth token type, not a password
    # Carried so the refresh cookie keeps the lifetime the login chose.
    persistent: bool = False


@dataclass
class LoginOutcome:
    """Result of the password step.

    Exactly one of tokens / challenge_token is set: a 2FA-enabled account gets
    a challenge and no tokens.
    """

    account: Account
    tokens: TokenPair | None = None
    requires_two_factor: bool = False
    challenge_token: str | None = None


@dataclass
class CallbackOutcome:
    """Result of an OAuth callback.

    tokens is None for link-only outcomes (the caller was already signed in).
    """

    provider: str
    account_id: int
    tokens: TokenPair | None = None
    is_new_account: bool = False
    is_link_only: bool = False
