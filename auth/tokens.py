"""
auth/tokens.py -- Password hashing, opaque token hashing, and the TokenIssuer.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry the account id, email, roles, permission claims, and the account's
       security stamp. validate_access_token() re-reads the account and
       rejects the token when the stamp no longer matches, so rotating the
       stamp revokes every outstanding access token without a deny-list.

  Passwords: bcrypt used directly. The _DUMMY_HASH constant enables timing
       equalization in authenticate_account() so response time does not
       reveal whether an email is registered.

  Opaque tokens (refresh, OAuth state, 2FA challenge, recovery codes, reset
       links): secrets.token_urlsafe(32) gives 256 bits of entropy. We store
       HMAC-SHA256(SECRET_KEY, raw) so lookup is O(1) and a stolen database
       alone cannot be replayed. bcrypt's slowness buys nothing at this
       entropy.

  Refresh rotation: redeem_refresh_token() delegates the check-and-mark to
       AccountStore.rotate_refresh_token(), one conditional UPDATE plus the
       successor insert in a single transaction. A replay of an already used
       token revokes every session of its owner, unless it arrives within
       REFRESH_REUSE_GRACE_SECONDS of the redemption: that is a concurrent
       refresh that lost the race, and the winner keeps its tokens.

Layer rule: no imports from api/, admin/, or client/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from auth.errors import TOKEN_ALREADY_USED, TOKEN_EXPIRED, TOKEN_INVALIDATED, TokenError
from auth.models import Account, RefreshToken, TokenPair
from auth.store import utc_iso
from core.config import Settings, get_settings
from core.cookies import ACCESS_COOKIE, REFRESH_COOKIE

if TYPE_CHECKING:
    from auth.store import AccountStore

logger = logging.getLogger("keyward.auth")

_ALGORITHM = "HS256"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input past 72 bytes. The API layer caps passwords at 128
    characters, and the Pydantic models reject anything longer.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash or >72-byte input on bcrypt 4.x+
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than later ones. Always call verify_password() even when the email
# is unknown.
_DUMMY_HASH: str = hash_password("keyward_timing_dummy")


def authenticate_account(store: AccountStore, email: str, password: str) -> Account | None:
    """Verify an email/password pair with timing equalization.

    Always runs bcrypt whether or not the account exists:
    - Unknown email or password-less account: bcrypt runs against _DUMMY_HASH
    - Wrong password: bcrypt runs against the real hash

    Returns the Account when the password matches, None otherwise. Lockout
    is NOT checked here; the caller decides how to report a locked account.
    """
    account = store.get_by_email(email)
    if account is None or account.hashed_password is None:
        # Do NOT return early before running bcrypt
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, account.hashed_password):
        return None
    return account


def is_locked_out(account: Account, now: datetime | None = None) -> bool:
    """True while account.lockout_until lies in the future."""
    if not account.lockout_until:
        return False
    moment = now or datetime.now(timezone.utc)
    return account.lockout_until > utc_iso(moment)


# ---------------------------------------------------------------------------
# Opaque token generation and hashing
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return a fresh 256-bit URL-safe random token."""
    return secrets.token_urlsafe(32)


def hash_token(raw: str, secret_key: str) -> str:
    """Return HMAC-SHA256(secret_key, raw) as a hex string.

    Deterministic so the hash can be used as a lookup key. An attacker holding
    only the database cannot derive a usable token without SECRET_KEY.
    """
    return hmac.new(secret_key.encode(), raw.encode(), hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# TokenIssuer
# ---------------------------------------------------------------------------


class TokenIssuer:
    """Mints access tokens and owns the refresh-token lifecycle.

    Usage:
        issuer = TokenIssuer(store, settings)
        pair = issuer.issue_tokens(account, persistent=True)
        account, pair = issuer.redeem_refresh_token(pair.refresh_token)
    """

    def __init__(self, store: AccountStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    @property
    def access_lifetime_seconds(self) -> int:
        return self._settings.access_token_minutes * 60

    def refresh_lifetime(self, persistent: bool) -> timedelta:
        if persistent:
            return timedelta(days=self._settings.refresh_persistent_days)
        return timedelta(hours=self._settings.refresh_session_hours)

    def hash_token(self, raw: str) -> str:
        return hash_token(raw, self._settings.secret_key)

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    def issue_access_token(self, account: Account) -> str:
        now = datetime.now(timezone.utc)
        permissions = self._store.get_permissions_for_roles(account.roles)
        payload = {
            "sub": str(account.id),
            "email": account.email,
            "roles": list(account.roles),
            "permissions": sorted(permissions),
            "stamp": account.security_stamp,
            "iss": self._settings.jwt_issuer,
            "aud": self._settings.jwt_audience,
            "iat": now,
            "exp": now + timedelta(seconds=self.access_lifetime_seconds),
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._settings.secret_key, algorithm=_ALGORITHM)

    def decode_access_token(self, token: str) -> dict | None:
        """Verify signature, expiry, issuer and audience. Returns the claims or None."""
        try:
            payload = jwt.decode(
                token,
                self._settings.secret_key,
                algorithms=[_ALGORITHM],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
            )
        except JWTError:
            return None
        if "sub" not in payload or "stamp" not in payload:
            return None
        return payload

    def validate_access_token(self, token: str) -> Account | None:
        """Resolve an access token to its live Account.

        Returns None when the JWT is invalid, the account no longer exists,
        the stamp claim is stale, or the account is locked.
        """
        payload = self.decode_access_token(token)
        if payload is None:
            return None
        try:
            account_id = int(payload["sub"])
        except (TypeError, ValueError):
            return None
        account = self._store.get_by_id(account_id)
        if account is None:
            return None
        if not hmac.compare_digest(str(payload["stamp"]), account.security_stamp):
            return None
        if is_locked_out(account):
            return None
        return account

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def _new_refresh_record(self, account_id: int, persistent: bool) -> tuple[str, RefreshToken]:
        plaintext = generate_token()
        now = datetime.now(timezone.utc)
        record = RefreshToken(
            account_id=account_id,
            token_hash=self.hash_token(plaintext),
            created_at=utc_iso(now),
            expires_at=utc_iso(now + self.refresh_lifetime(persistent)),
            is_persistent=persistent,
        )
        return plaintext, record

    def issue_refresh_token(self, account: Account, persistent: bool) -> tuple[str, RefreshToken]:
        """Persist a new refresh token and return (plaintext, record).

        The plaintext is never stored; it leaves this method exactly once.
        """
        plaintext, record = self._new_refresh_record(account.id, persistent)
        record.id = self._store.add_refresh_token(record)
        return plaintext, record

    def issue_tokens(self, account: Account, persistent: bool) -> TokenPair:
        refresh_plaintext, _record = self.issue_refresh_token(account, persistent)
        return TokenPair(
            access_token=self.issue_access_token(account),
            refresh_token=refresh_plaintext,
            expires_in=self.access_lifetime_seconds,
            persistent=persistent,
        )

    def redeem_refresh_token(self, plaintext: str) -> tuple[Account, TokenPair]:
        """Redeem a refresh token and rotate it.

        Exactly one of N concurrent callers presenting the same token wins.
        The others raise TokenError("token_already_used") and leave the
        winner's new tokens alive.

        Raises:
            TokenError: token_expired, token_already_used, or token_invalidated
                (also used for tokens that were never issued).
        """
        token_hash = self.hash_token(plaintext)
        now = utc_iso(datetime.now(timezone.utc))
        successor_plaintext: list[str] = []

        def make_successor(redeemed: RefreshToken) -> RefreshToken:
            raw, record = self._new_refresh_record(redeemed.account_id, redeemed.is_persistent)
            successor_plaintext.append(raw)
            return record

        rotated = self._store.rotate_refresh_token(token_hash, now, make_successor)
        if rotated is None:
            raise self._classify_failure(token_hash, now)

        redeemed, _successor = rotated
        account = self._store.get_by_id(redeemed.account_id)
        if account is None or is_locked_out(account):
            # Deleted or locked between issue and redeem; kill what we just minted.
            self._store.invalidate_refresh_tokens(redeemed.account_id)
            raise TokenError("token_invalidated", TOKEN_INVALIDATED)

        pair = TokenPair(
            access_token=self.issue_access_token(account),
            refresh_token=successor_plaintext[0],
            expires_in=self.access_lifetime_seconds,
            persistent=redeemed.is_persistent,
        )
        return account, pair

    def _classify_failure(self, token_hash: str, now: str) -> TokenError:
        record = self._store.get_refresh_token(token_hash)
        if record is None:
            return TokenError("token_invalidated", TOKEN_INVALIDATED)
        if record.is_used:
            if self._settings.refresh_reuse_revokes_sessions and self._is_replay(record, now):
                logger.warning(
                    "Refresh token reuse detected for account_id=%d -- revoking all sessions",
                    record.account_id,
                )
                self.revoke_all_sessions(record.account_id)
            return TokenError("token_already_used", TOKEN_ALREADY_USED)
        if record.is_invalidated:
            return TokenError("token_invalidated", TOKEN_INVALIDATED)
        if record.expires_at <= now:
            return TokenError("token_expired", TOKEN_EXPIRED)
        # The row was valid when re-read: it lost a race that committed between
        # the UPDATE and this SELECT. Report it as used.
        return TokenError("token_already_used", TOKEN_ALREADY_USED)

    def _is_replay(self, record: RefreshToken, now: str) -> bool:
        """True when the token was redeemed before the grace window around `now`.

        `now` is when the failing caller started. A caller that started before
        or shortly after the winning redemption was racing it, not replaying it.
        """
        if record.used_at is None:
            return True
        grace = timedelta(seconds=self._settings.refresh_reuse_grace_seconds)
        cutoff = utc_iso(datetime.fromisoformat(now) - grace)
        return record.used_at < cutoff

    # ------------------------------------------------------------------
    # Revocation
    # ------------------------------------------------------------------

    def revoke_all_sessions(self, account_id: int) -> int:
        """Invalidate every live refresh token and rotate the security stamp.

        Returns the number of refresh tokens invalidated.
        """
        count = self._store.invalidate_refresh_tokens(account_id)
        self._store.rotate_security_stamp(account_id)
        logger.info("Revoked %d refresh token(s) for account_id=%d", count, account_id)
        return count

    def rotate_security_stamp(self, account_id: int) -> str:
        """Rotate the stamp only. Refresh tokens survive so clients can silently re-auth."""
        return self._store.rotate_security_stamp(account_id)


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookies(response, pair: TokenPair, settings: Settings) -> None:
    """Write both tokens as httpOnly cookies on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    The refresh cookie is a session cookie unless the login was persistent.
    """
    persistent = pair.persistent
    response.set_cookie(
        ACCESS_COOKIE,
        value=pair.access_token,
        httponly=True,
        samesite="lax",
        secure=True,
        max_age=pair.expires_in,
    )
    refresh_max_age = settings.refresh_persistent_days * 24 * 60 * 60 if persistent else None
    response.set_cookie(
        REFRESH_COOKIE,
        value=pair.refresh_token,
        httponly=True,
        samesite="lax",
        secure=True,
        max_age=refresh_max_age,
    )


def clear_auth_cookies(response) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(name, httponly=True, samesite="lax", secure=True)
