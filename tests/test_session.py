"""
tests/test_session.py -- Unit tests for SessionService (auth/session.py).

Covers:
  - identical invalid_credentials for unknown email and wrong password
  - lockout after repeated failures; account_locked only with the right password
  - 2FA login: challenge instead of tokens, TOTP and recovery completion,
    challenge single-use and attempt lockout
  - refresh delegation, logout, password change/set/reset, registration
  - self-service deletion: password check, last-admin protection
"""

from __future__ import annotations

from unittest.mock import patch

import pyotp
import pytest

from auth import audit
from auth.errors import ConflictError, TokenError, UnauthorizedError, ValidationError
from auth.roles import ADMIN
from auth.tokens import verify_password
from tests.conftest import PASSWORD


def _enable_2fa(two_factor, account_id: int) -> tuple[str, list[str]]:
    secret, _uri = two_factor.setup(account_id)
    codes = two_factor.verify_setup(account_id, pyotp.TOTP(secret).now())
    return secret, codes


class TestPasswordLogin:
    def test_success_issues_tokens(self, sessions, make_account, audit_sink) -> None:
        make_account("a@example.com")
        outcome = sessions.login("A@Example.com ", PASSWORD)
        assert outcome.tokens is not None
        assert outcome.requires_two_factor is False
        assert audit.LOGIN_SUCCEEDED in audit_sink.actions()

    def test_unknown_email_and_wrong_password_are_identical(self, sessions, make_account) -> None:
        make_account("known@example.com")
        with pytest.raises(UnauthorizedError) as unknown:
            sessions.login("nobody@example.com", PASSWORD)
        with pytest.raises(UnauthorizedError) as wrong:
            sessions.login("known@example.com", "wrong-password")
        assert unknown.value.code == wrong.value.code == "invalid_credentials"
        assert unknown.value.message == wrong.value.message
        assert unknown.value.status_code == wrong.value.status_code

    def test_lockout_after_max_attempts(self, sessions, store, make_account) -> None:
        """lockout_max_attempts is 3 in the test settings."""
        account = make_account("lock@example.com")
        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                sessions.login("lock@example.com", "bad")
        assert store.get_by_id(account.id).lockout_until is not None

        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.login("lock@example.com", PASSWORD)
        assert exc_info.value.code == "account_locked"

    def test_locked_account_with_wrong_password_looks_like_bad_credentials(self, sessions, make_account) -> None:
        make_account("lock2@example.com")
        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                sessions.login("lock2@example.com", "bad")
        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.login("lock2@example.com", "still-bad")
        assert exc_info.value.code == "invalid_credentials"

    def test_failures_never_lock_a_passwordless_account(self, sessions, store, make_account) -> None:
        account = make_account("provider-only@example.com", password=None)
        for _ in range(5):
            with pytest.raises(UnauthorizedError) as exc_info:
                sessions.login("provider-only@example.com", "guess")
            assert exc_info.value.code == "invalid_credentials"
        reloaded = store.get_by_id(account.id)
        assert reloaded.lockout_until is None
        assert reloaded.failed_login_count == 0

    def test_success_resets_failure_counter(self, sessions, store, make_account) -> None:
        account = make_account("reset@example.com")
        with pytest.raises(UnauthorizedError):
            sessions.login("reset@example.com", "bad")
        sessions.login("reset@example.com", PASSWORD)
        refreshed = store.get_by_id(account.id)
        assert refreshed.failed_login_count == 0
        assert refreshed.last_login is not None


class TestTwoFactorLogin:
    def test_login_returns_challenge_without_tokens(self, sessions, two_factor, make_account) -> None:
        account = make_account("tfa@example.com")
        _enable_2fa(two_factor, account.id)
        outcome = sessions.login("tfa@example.com", PASSWORD)
        assert outcome.requires_two_factor is True
        assert outcome.challenge_token
        assert outcome.tokens is None

    def test_complete_with_totp(self, sessions, two_factor, issuer, make_account) -> None:
        account = make_account("totp@example.com")
        secret, _codes = _enable_2fa(two_factor, account.id)
        outcome = sessions.login("totp@example.com", PASSWORD, remember_me=True)
        pair = sessions.complete_two_factor(outcome.challenge_token, pyotp.TOTP(secret).now())
        assert pair.persistent is True
        assert issuer.validate_access_token(pair.access_token).id == account.id

    def test_challenge_is_single_use(self, sessions, two_factor, make_account) -> None:
        account = make_account("once@example.com")
        secret, _codes = _enable_2fa(two_factor, account.id)
        outcome = sessions.login("once@example.com", PASSWORD)
        sessions.complete_two_factor(outcome.challenge_token, pyotp.TOTP(secret).now())
        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.complete_two_factor(outcome.challenge_token, pyotp.TOTP(secret).now())
        assert exc_info.value.code == "challenge_not_found"

    def test_wrong_codes_lock_the_challenge(self, sessions, two_factor, settings, make_account) -> None:
        account = make_account("brute@example.com")
        secret, _codes = _enable_2fa(two_factor, account.id)
        outcome = sessions.login("brute@example.com", PASSWORD)
        for _ in range(settings.two_factor_max_attempts):
            with pytest.raises(UnauthorizedError) as exc_info:
                sessions.complete_two_factor(outcome.challenge_token, "000000")
            assert exc_info.value.code == "invalid_two_factor_code"
        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.complete_two_factor(outcome.challenge_token, pyotp.TOTP(secret).now())
        assert exc_info.value.code == "challenge_locked"

    def test_recovery_code_is_single_use(self, sessions, two_factor, make_account) -> None:
        account = make_account("rec@example.com")
        _secret, codes = _enable_2fa(two_factor, account.id)

        first = sessions.login("rec@example.com", PASSWORD)
        sessions.complete_two_factor_recovery(first.challenge_token, codes[0].upper())
        assert two_factor.remaining_recovery_codes(account.id) == len(codes) - 1

        second = sessions.login("rec@example.com", PASSWORD)
        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.complete_two_factor_recovery(second.challenge_token, codes[0])
        assert exc_info.value.code == "invalid_recovery_code"

    def test_unknown_challenge(self, sessions) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.complete_two_factor("bogus", "123456")
        assert exc_info.value.code == "challenge_not_found"


class TestRefreshAndLogout:
    def test_refresh_rotates(self, sessions, make_account) -> None:
        make_account("ref@example.com")
        pair = sessions.login("ref@example.com", PASSWORD).tokens
        new_pair = sessions.refresh(pair.refresh_token)
        assert new_pair.refresh_token != pair.refresh_token

    def test_missing_refresh_token(self, sessions) -> None:
        with pytest.raises(UnauthorizedError) as exc_info:
            sessions.refresh("")
        assert exc_info.value.code == "token_missing"

    def test_logout_revokes_everything(self, sessions, issuer, make_account, audit_sink) -> None:
        account = make_account("out@example.com")
        pair = sessions.login("out@example.com", PASSWORD).tokens
        sessions.logout(account.id)
        assert issuer.validate_access_token(pair.access_token) is None
        with pytest.raises(TokenError):
            sessions.refresh(pair.refresh_token)
        assert audit.LOGOUT in audit_sink.actions()


class TestPasswords:
    def test_change_password(self, sessions, store, issuer, make_account) -> None:
        account = make_account("cp@example.com")
        pair = sessions.login("cp@example.com", PASSWORD).tokens
        sessions.change_password(account.id, PASSWORD, "a-brand-new-password")
        assert verify_password("a-brand-new-password", store.get_by_id(account.id).hashed_password)
        assert issuer.validate_access_token(pair.access_token) is None

    def test_change_password_wrong_current(self, sessions, make_account) -> None:
        account = make_account("cp2@example.com")
        with pytest.raises(ValidationError) as exc_info:
            sessions.change_password(account.id, "nope", "a-brand-new-password")
        assert exc_info.value.code == "password_incorrect"

    def test_change_password_same_as_current(self, sessions, make_account) -> None:
        account = make_account("cp3@example.com")
        with pytest.raises(ValidationError) as exc_info:
            sessions.change_password(account.id, PASSWORD, PASSWORD)
        assert exc_info.value.code == "password_same_as_current"

    def test_set_password_only_when_missing(self, sessions, store, make_account) -> None:
        external = make_account("ext@example.com", password=None)
        sessions.set_password(external.id, "first-password-ever")
        assert store.get_by_id(external.id).hashed_password is not None
        with pytest.raises(ValidationError) as exc_info:
            sessions.set_password(external.id, "second-password")
        assert exc_info.value.code == "password_already_set"

    def test_short_password_rejected(self, sessions) -> None:
        with pytest.raises(ValidationError) as exc_info:
            sessions.register("short@example.com", "abc")
        assert exc_info.value.code == "password_too_short"


class TestRegistrationAndReset:
    def test_register(self, sessions) -> None:
        account = sessions.register("New@Example.com", "long-enough-password")
        assert account.email == "new@example.com"
        assert account.roles == ["User"]
        assert account.email_confirmed is False

    def test_register_duplicate(self, sessions, make_account) -> None:
        make_account("dup@example.com")
        with pytest.raises(ConflictError) as exc_info:
            sessions.register("dup@example.com", "long-enough-password")
        assert exc_info.value.code == "email_taken"

    def test_forgot_password_is_silent_for_unknown_email(self, sessions, email_sender) -> None:
        sessions.request_password_reset("ghost@example.com")
        assert email_sender.sent == []

    def test_reset_flow(self, sessions, store, make_account, email_sender) -> None:
        account = make_account("rp@example.com")
        sessions.request_password_reset("rp@example.com")
        assert email_sender.sent[-1][0] == "rp@example.com"
        token = email_sender.last_token()

        sessions.reset_password(token, "recovered-password")
        assert verify_password("recovered-password", store.get_by_id(account.id).hashed_password)

        with pytest.raises(ValidationError) as exc_info:
            sessions.reset_password(token, "again-password")
        assert exc_info.value.code == "reset_token_invalid"

    def test_reset_clears_lockout(self, sessions, store, make_account, email_sender) -> None:
        account = make_account("lr@example.com")
        for _ in range(3):
            with pytest.raises(UnauthorizedError):
                sessions.login("lr@example.com", "bad")
        sessions.request_password_reset("lr@example.com")
        sessions.reset_password(email_sender.last_token(), "unlocked-password")
        assert store.get_by_id(account.id).lockout_until is None
        assert sessions.login("lr@example.com", "unlocked-password").tokens is not None

    def test_email_failure_is_swallowed(self, sessions, make_account, email_sender) -> None:
        make_account("smtp@example.com")
        email_sender.fail = True
        sessions.request_password_reset("smtp@example.com")


class TestAccountDeletion:
    def test_delete_own_account(self, sessions, store, issuer, make_account, audit_sink) -> None:
        account = make_account("bye@example.com")
        pair = sessions.login("bye@example.com", PASSWORD).tokens
        sessions.delete_account(account.id, PASSWORD)
        assert store.get_by_id(account.id) is None
        assert issuer.validate_access_token(pair.access_token) is None
        with pytest.raises(TokenError):
            sessions.refresh(pair.refresh_token)
        assert audit.ACCOUNT_DELETED in audit_sink.actions()

    def test_wrong_password_keeps_account(self, sessions, store, make_account) -> None:
        account = make_account("stay@example.com")
        with pytest.raises(ValidationError) as exc_info:
            sessions.delete_account(account.id, "not-the-password")
        assert exc_info.value.code == "password_incorrect"
        assert store.get_by_id(account.id) is not None

    def test_passwordless_account_cannot_confirm(self, sessions, make_account) -> None:
        account = make_account("nopw@example.com", password=None)
        with pytest.raises(ValidationError) as exc_info:
            sessions.delete_account(account.id, PASSWORD)
        assert exc_info.value.code == "password_incorrect"

    def test_sole_admin_cannot_delete_itself(self, sessions, store, issuer, make_account) -> None:
        account = make_account("only-admin@example.com", roles=[ADMIN])
        pair = sessions.login("only-admin@example.com", PASSWORD).tokens
        with pytest.raises(ConflictError) as exc_info:
            sessions.delete_account(account.id, PASSWORD)
        assert exc_info.value.code == "last_admin_cannot_delete"
        assert store.get_by_id(account.id) is not None
        assert issuer.validate_access_token(pair.access_token) is not None

    def test_admin_with_peer_can_delete_itself(self, sessions, store, make_account) -> None:
        account = make_account("admin-a@example.com", roles=[ADMIN])
        make_account("admin-b@example.com", roles=[ADMIN])
        sessions.delete_account(account.id, PASSWORD)
        assert store.get_by_id(account.id) is None

    def test_sessions_revoked_before_delete(self, sessions, store, issuer, make_account) -> None:
        """The atomic delete refusing after the pre-check still leaves no live session."""
        account = make_account("raced@example.com", roles=[ADMIN])
        make_account("peer@example.com", roles=[ADMIN])
        pair = sessions.login("raced@example.com", PASSWORD).tokens
        with patch.object(store, "delete_account_if_not_last_admin", return_value=False):
            with pytest.raises(ConflictError):
                sessions.delete_account(account.id, PASSWORD)
        assert issuer.validate_access_token(pair.access_token) is None
