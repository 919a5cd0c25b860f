"""
auth/session.py -- The login state machine and credential self-service.

States of one login attempt:

    Anonymous -> CredentialsPending -> TwoFactorPending -> Authenticated
                         |                    |
                         +---> Rejected <-----+

login() is the CredentialsPending step. It either returns tokens
(Authenticated), or a challenge token (TwoFactorPending) and no tokens. A
challenge is completed with complete_two_factor() or
complete_two_factor_recovery(); both carry the original remember-me choice
forward through the challenge row.

Enumeration resistance:
  Unknown email, password-less account, and wrong password all raise the same
  invalid_credentials error after the same bcrypt work. account_locked is
  reported only to a caller who presented the correct password, so lockout
  state cannot be probed without the credential.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth import audit
from auth.audit import AuditSink
from auth.errors import (
    ACCOUNT_LOCKED,
    INVALID_CREDENTIALS,
    LAST_ADMIN_CANNOT_DELETE_SELF,
    ConflictError,
    UnauthorizedError,
    ValidationError,
)
from auth.models import Account, LoginOutcome, TokenPair, TwoFactorChallenge
from auth.notifications import EmailSender, send_safely
from auth.roles import ADMINISTRATIVE_ROLES, DEFAULT_ROLE
from auth.store import AccountStore, utc_iso
from auth.tokens import TokenIssuer, authenticate_account, generate_token, hash_password, is_locked_out, verify_password
from auth.twofactor import TwoFactorService, verify_totp
from core.config import Settings

logger = logging.getLogger("keyward.session")

MIN_PASSWORD_LENGTH = 8

_CHALLENGE_NOT_FOUND = "Two-factor challenge not found or expired."
_CHALLENGE_LOCKED = "Too many failed attempts. Please log in again."


def normalize_email(email: str) -> str:
    return email.strip().lower()


def check_password_strength(password: str) -> None:
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError("password_too_short", f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")


class SessionService:
    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        two_factor: TwoFactorService,
        settings: Settings,
        audit_sink: AuditSink,
        email_sender: EmailSender,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._two_factor = two_factor
        self._settings = settings
        self._audit = audit_sink
        self._email = email_sender

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def login(self, identifier: str, password: str, remember_me: bool = False) -> LoginOutcome:
        """Verify credentials and either issue tokens or open a 2FA challenge.

        Raises:
            UnauthorizedError: invalid_credentials for any credential failure,
                account_locked only when the password was correct.
        """
        email = normalize_email(identifier)
        account = authenticate_account(self._store, email, password)
        if account is None:
            self._record_failure(email)
            raise UnauthorizedError("invalid_credentials", INVALID_CREDENTIALS)

        if is_locked_out(account):
            audit.emit(self._audit, audit.LOGIN_FAILED, None, "account", account.id, reason="locked")
            raise UnauthorizedError("account_locked", ACCOUNT_LOCKED)

        if account.two_factor_enabled:
            self._store.update_account(account.id, failed_login_count=0)
            challenge_token = self._open_challenge(account, remember_me)
            audit.emit(self._audit, audit.TWO_FACTOR_CHALLENGED, account.id, "account", account.id)
            return LoginOutcome(account=account, requires_two_factor=True, challenge_token=challenge_token)

        tokens = self._sign_in(account, remember_me, method="password")
        return LoginOutcome(account=account, tokens=tokens)

    def _record_failure(self, email: str) -> None:
        account = self._store.get_by_email(email)
        if account is None:
            audit.emit(self._audit, audit.LOGIN_FAILED, None, "account", None, reason="unknown")
            return
        if account.hashed_password is None:
            # Password guesses must not lock out a provider-only account.
            audit.emit(self._audit, audit.LOGIN_FAILED, None, "account", account.id, reason="no_password")
            return
        if is_locked_out(account):
            return
        lockout_until = utc_iso(datetime.now(timezone.utc) + timedelta(minutes=self._settings.lockout_minutes))
        locked = self._store.record_failed_login(account.id, self._settings.lockout_max_attempts, lockout_until)
        audit.emit(self._audit, audit.LOGIN_FAILED, None, "account", account.id, reason="password")
        if locked:
            logger.warning("Account account_id=%d locked after repeated failed logins", account.id)
            audit.emit(self._audit, audit.LOGIN_LOCKED_OUT, None, "account", account.id)

    def _open_challenge(self, account: Account, remember_me: bool) -> str:
        plaintext = generate_token()
        now = datetime.now(timezone.utc)
        self._store.add_challenge(
            TwoFactorChallenge(
                token_hash=self._issuer.hash_token(plaintext),
                account_id=account.id,
                created_at=utc_iso(now),
                expires_at=utc_iso(now + timedelta(minutes=self._settings.two_factor_challenge_minutes)),
                is_persistent=remember_me,
            )
        )
        return plaintext

    def _sign_in(self, account: Account, persistent: bool, method: str) -> TokenPair:
        tokens = self._issuer.issue_tokens(account, persistent)
        self._store.record_successful_login(account.id)
        audit.emit(self._audit, audit.LOGIN_SUCCEEDED, account.id, "account", account.id, method=method)
        return tokens

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    def complete_two_factor(self, challenge_token: str, code: str) -> TokenPair:
        return self._complete(challenge_token, lambda account: verify_totp(account.totp_secret, code), "totp")

    def complete_two_factor_recovery(self, challenge_token: str, recovery_code: str) -> TokenPair:
        return self._complete(
            challenge_token,
            lambda account: self._two_factor.redeem_recovery_code(account.id, recovery_code),
            "recovery_code",
        )

    def _complete(self, challenge_token: str, verifier: Callable[[Account], bool], method: str) -> TokenPair:
        now = utc_iso(datetime.now(timezone.utc))
        max_attempts = self._settings.two_factor_max_attempts
        challenge = self._store.get_challenge(self._issuer.hash_token(challenge_token))
        if challenge is None or challenge.is_used or challenge.expires_at <= now:
            raise UnauthorizedError("challenge_not_found", _CHALLENGE_NOT_FOUND)
        if challenge.failed_attempts >= max_attempts:
            raise UnauthorizedError("challenge_locked", _CHALLENGE_LOCKED)

        account = self._store.get_by_id(challenge.account_id)
        if account is None:
            raise UnauthorizedError("challenge_not_found", _CHALLENGE_NOT_FOUND)
        if is_locked_out(account):
            raise UnauthorizedError("account_locked", ACCOUNT_LOCKED)

        if not verifier(account):
            self._store.record_challenge_failure(challenge.id)
            audit.emit(self._audit, audit.TWO_FACTOR_FAILED, None, "account", account.id, method=method)
            if method == "recovery_code":
                raise UnauthorizedError("invalid_recovery_code", "The recovery code is invalid.")
            raise UnauthorizedError("invalid_two_factor_code", "The two-factor code is invalid.")

        if not self._store.consume_challenge(challenge.id, now, max_attempts):
            raise UnauthorizedError("challenge_not_found", _CHALLENGE_NOT_FOUND)

        return self._sign_in(account, challenge.is_persistent, method=method)

    # ------------------------------------------------------------------
    # Refresh / logout
    # ------------------------------------------------------------------

    def refresh(self, refresh_token: str) -> TokenPair:
        """Rotate a refresh token. TokenError from the issuer propagates unchanged."""
        if not refresh_token:
            raise UnauthorizedError("token_missing", "Refresh token is missing.")
        _account, pair = self._issuer.redeem_refresh_token(refresh_token)
        return pair

    def logout(self, account_id: int) -> None:
        self._issuer.revoke_all_sessions(account_id)
        audit.emit(self._audit, audit.LOGOUT, account_id, "account", account_id)

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def _require(self, account_id: int) -> Account:
        account = self._store.get_by_id(account_id)
        if account is None:
            raise UnauthorizedError("not_authenticated", "User is not authenticated.")
        return account

    def change_password(self, account_id: int, current_password: str, new_password: str) -> None:
        account = self._require(account_id)
        if account.hashed_password is None or not verify_password(current_password, account.hashed_password):
            raise ValidationError("password_incorrect", "Current password is incorrect.")
        if verify_password(new_password, account.hashed_password):
            raise ValidationError(
                "password_same_as_current", "New password must be different from your current password."
            )
        check_password_strength(new_password)
        self._store.update_account(account_id, hashed_password=hash_password(new_password))
        self._issuer.revoke_all_sessions(account_id)
        audit.emit(self._audit, audit.PASSWORD_CHANGED, account_id, "account", account_id)

    def set_password(self, account_id: int, new_password: str) -> None:
        """Give an external-only account a local password."""
        account = self._require(account_id)
        if account.hashed_password is not None:
            raise ValidationError("password_already_set", "This account already has a password.")
        check_password_strength(new_password)
        self._store.update_account(account_id, hashed_password=hash_password(new_password))
        self._issuer.revoke_all_sessions(account_id)
        audit.emit(self._audit, audit.PASSWORD_SET, account_id, "account", account_id)

    def delete_account(self, account_id: int, password: str) -> None:
        """Delete the caller's own account after re-checking the password.

        Sessions are revoked before the row is removed. The sole holder of
        Admin or SuperAdmin cannot delete itself; the store re-checks that
        atomically in case a concurrent removal raced the pre-check.
        """
        account = self._require(account_id)
        if account.hashed_password is None or not verify_password(password, account.hashed_password):
            raise ValidationError("password_incorrect", "Password is incorrect.")
        for role in account.roles:
            if role in ADMINISTRATIVE_ROLES and self._store.count_role_holders(role) <= 1:
                raise ConflictError("last_admin_cannot_delete", LAST_ADMIN_CANNOT_DELETE_SELF)

        self._issuer.revoke_all_sessions(account_id)
        if not self._store.delete_account_if_not_last_admin(account_id):
            raise ConflictError("last_admin_cannot_delete", LAST_ADMIN_CANNOT_DELETE_SELF)
        logger.info("Account account_id=%d deleted by its owner", account_id)
        audit.emit(self._audit, audit.ACCOUNT_DELETED, account_id, "account", account_id)

    def register(self, email: str, password: str) -> Account:
        email = normalize_email(email)
        check_password_strength(password)
        if self._store.get_by_email(email) is not None:
            raise ConflictError("email_taken", "A user with this email address already exists.")
        try:
            account_id = self._store.create_account(
                Account(email=email, hashed_password=hash_password(password)), roles=[DEFAULT_ROLE]
            )
        except IntegrityError:
            raise ConflictError("email_taken", "A user with this email address already exists.")
        audit.emit(self._audit, audit.REGISTERED, account_id, "account", account_id)
        return self._store.get_by_id(account_id)

    def issue_password_reset(self, account: Account, subject: str = "Reset your password") -> bool:
        """Store a single-use reset token and email the link. Returns False if the email failed."""
        plaintext = generate_token()
        expires = datetime.now(timezone.utc) + timedelta(hours=self._settings.password_reset_hours)
        self._store.add_password_reset_token(account.id, self._issuer.hash_token(plaintext), utc_iso(expires))
        link = f"{self._settings.frontend_base_url.rstrip('/')}/reset-password?token={plaintext}"
        body = (
            f"Use the link below to choose a new password. It expires in "
            f"{self._settings.password_reset_hours} hours.\n\n{link}\n"
        )
        return send_safely(self._email, account.email, subject, body)

    def request_password_reset(self, email: str) -> None:
        """Send a reset link if the email is registered. Silent otherwise."""
        account = self._store.get_by_email(normalize_email(email))
        if account is None:
            logger.info("Password reset requested for unknown email")
            return
        self.issue_password_reset(account)

    def reset_password(self, token: str, new_password: str) -> None:
        check_password_strength(new_password)
        now = utc_iso(datetime.now(timezone.utc))
        account_id = self._store.consume_password_reset_token(self._issuer.hash_token(token), now)
        if account_id is None:
            raise ValidationError("reset_token_invalid", "Invalid or expired password reset token.")
        self._store.update_account(
            account_id,
            hashed_password=hash_password(new_password),
            lockout_until=None,
            failed_login_count=0,
        )
        self._issuer.revoke_all_sessions(account_id)
        audit.emit(self._audit, audit.PASSWORD_RESET, account_id, "account", account_id)
