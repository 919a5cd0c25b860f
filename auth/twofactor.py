"""
auth/twofactor.py -- TOTP enrollment and recovery codes.

Enrollment is two-step so an account never ends up with 2FA enabled against
a secret the user failed to scan:

  setup()         -> stores a fresh base32 secret, returns it plus the
                     otpauth:// URI for the QR code. 2FA stays disabled.
  verify_setup()  -> first valid code flips two_factor_enabled and returns
                     ten one-time recovery codes (shown once, stored hashed).

TOTP verification uses pyotp with valid_window=1 (one 30 s step of clock
drift either way).

Recovery codes are normalized before hashing (lowercase, no dashes or
spaces) so "ABCDE-12345" and "abcde12345" are the same code.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

import logging
import secrets

import pyotp

from auth import audit
from auth.audit import AuditSink
from auth.errors import UnauthorizedError, ValidationError
from auth.models import Account
from auth.store import AccountStore
from auth.tokens import hash_token, verify_password
from core.config import Settings

logger = logging.getLogger("keyward.twofactor")

RECOVERY_CODE_COUNT = 10

_ALREADY_ENABLED = "Two-factor authentication is already enabled."
_NOT_ENABLED = "Two-factor authentication is not enabled."
_VERIFICATION_FAILED = "The verification code is invalid. Please try again."
_PASSWORD_INCORRECT = "Current password is incorrect."


def verify_totp(secret: str | None, code: str) -> bool:
    """Check a six-digit TOTP code against a base32 secret."""
    if not secret:
        return False
    code = code.strip().replace(" ", "")
    if not (code.isdigit() and len(code) == 6):
        return False
    return pyotp.TOTP(secret).verify(code, valid_window=1)


def normalize_recovery_code(code: str) -> str:
    return code.strip().lower().replace("-", "").replace(" ", "")


def _generate_recovery_code() -> str:
    raw = secrets.token_hex(5)  # 10 hex chars
    return f"{raw[:5]}-{raw[5:]}"


class TwoFactorService:
    def __init__(self, store: AccountStore, settings: Settings, audit_sink: AuditSink) -> None:
        self._store = store
        self._settings = settings
        self._audit = audit_sink

    def _account(self, account_id: int) -> Account:
        account = self._store.get_by_id(account_id)
        if account is None:
            raise UnauthorizedError("not_authenticated", "User is not authenticated.")
        return account

    def _check_password(self, account: Account, password: str) -> None:
        if account.hashed_password is None or not verify_password(password, account.hashed_password):
            raise ValidationError("password_incorrect", _PASSWORD_INCORRECT)

    # ------------------------------------------------------------------
    # Enrollment
    # ------------------------------------------------------------------

    def setup(self, account_id: int) -> tuple[str, str]:
        """Generate and store a new (not yet active) secret. Returns (secret, otpauth_uri)."""
        account = self._account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two_factor_already_enabled", _ALREADY_ENABLED)
        secret = pyotp.random_base32()
        self._store.update_account(account_id, totp_secret=secret)
        uri = pyotp.TOTP(secret).provisioning_uri(name=account.email, issuer_name=self._settings.totp_issuer)
        return secret, uri

    def verify_setup(self, account_id: int, code: str) -> list[str]:
        """Activate 2FA with a first valid code and return fresh recovery codes."""
        account = self._account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two_factor_already_enabled", _ALREADY_ENABLED)
        if not verify_totp(account.totp_secret, code):
            raise ValidationError("invalid_two_factor_code", _VERIFICATION_FAILED)
        self._store.update_account(account_id, two_factor_enabled=True)
        codes = self._issue_recovery_codes(account_id)
        audit.emit(self._audit, audit.TWO_FACTOR_ENABLED, account_id, "account", account_id)
        logger.info("2FA enabled for account_id=%d", account_id)
        return codes

    def disable(self, account_id: int, password: str) -> None:
        account = self._account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two_factor_not_enabled", _NOT_ENABLED)
        self._check_password(account, password)
        self._store.update_account(account_id, two_factor_enabled=False, totp_secret=None)
        self._store.replace_recovery_codes(account_id, [])
        audit.emit(self._audit, audit.TWO_FACTOR_DISABLED, account_id, "account", account_id)
        logger.info("2FA disabled for account_id=%d", account_id)

    def regenerate_recovery_codes(self, account_id: int, password: str) -> list[str]:
        account = self._account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two_factor_not_enabled", _NOT_ENABLED)
        self._check_password(account, password)
        codes = self._issue_recovery_codes(account_id)
        audit.emit(self._audit, audit.RECOVERY_CODES_REGENERATED, account_id, "account", account_id)
        return codes

    # ------------------------------------------------------------------
    # Recovery codes
    # ------------------------------------------------------------------

    def _issue_recovery_codes(self, account_id: int) -> list[str]:
        codes = [_generate_recovery_code() for _ in range(RECOVERY_CODE_COUNT)]
        hashes = [hash_token(normalize_recovery_code(c), self._settings.secret_key) for c in codes]
        self._store.replace_recovery_codes(account_id, hashes)
        return codes

    def redeem_recovery_code(self, account_id: int, code: str) -> bool:
        """Burn a recovery code. True only for the first use of a valid code."""
        normalized = normalize_recovery_code(code)
        if not normalized:
            return False
        return self._store.consume_recovery_code(account_id, hash_token(normalized, self._settings.secret_key))

    def remaining_recovery_codes(self, account_id: int) -> int:
        return self._store.count_recovery_codes(account_id)
