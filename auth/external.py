"""
auth/external.py -- External (OAuth 2.0) sign-in and account linking.

Flow:
  1. create_challenge()  -- validate the redirect URI against the allow-list,
     store HMAC(state) with a short TTL, return the provider's authorize URL.
  2. handle_callback()   -- atomically consume the state (single-use, TTL
     bounded, exactly like a refresh token), exchange the code under a hard
     timeout, then branch:

       existing link, anonymous caller          -> sign in as the linked account
       existing link, same caller               -> no-op, link-only success
       existing link, different caller          -> already_linked_to_other_user
       no link, authenticated caller            -> link to caller, no tokens
       no link, anonymous, email matches        -> auto-link (only if that
                                                   account's email is confirmed)
       no link, anonymous, new email            -> create a User account

Security notes:
  The state nonce replaces the cookie session the CSRF check would otherwise
  need. Only its HMAC is stored; replaying a consumed state fails with
  invalid_state.

  Provider exceptions never leave this module. They are logged and turned
  into code_exchange_failed so raw provider errors cannot reach a client.

  Auto-link requires the EXISTING account's email to be confirmed. An
  attacker who registers a victim's address locally (unconfirmed) must not
  be able to capture the victim's later provider sign-in, and vice versa.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from auth import audit
from auth.audit import AuditSink
from auth.errors import ACCOUNT_LOCKED, UnauthorizedError, ValidationError
from auth.models import Account, CallbackOutcome, ExternalAuthState, ExternalLogin, ExternalUserInfo
from auth.providers import ExternalProvider
from auth.roles import DEFAULT_ROLE
from auth.store import AccountStore, utc_iso
from auth.tokens import TokenIssuer, generate_token, is_locked_out
from core.config import Settings

logger = logging.getLogger("keyward.auth.external")

_INVALID_STATE = "Invalid or expired authorization state."
_PROVIDER_NOT_CONFIGURED = "This sign-in provider is not configured."


class ExternalAuthBroker:
    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        providers: dict[str, ExternalProvider],
        settings: Settings,
        audit_sink: AuditSink,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._providers = {name.lower(): p for name, p in providers.items()}
        self._settings = settings
        self._audit = audit_sink

    # ------------------------------------------------------------------
    # Provider registry
    # ------------------------------------------------------------------

    def available_providers(self) -> list[tuple[str, str]]:
        """Return (name, display_name) for every configured provider."""
        return [(p.name, p.display_name) for p in self._providers.values()]

    def linked_providers(self, account_id: int) -> list[str]:
        return [login.provider for login in self._store.list_external_logins(account_id)]

    def _provider(self, name: str) -> ExternalProvider:
        provider = self._providers.get((name or "").lower())
        if provider is None:
            raise ValidationError("provider_not_configured", _PROVIDER_NOT_CONFIGURED)
        return provider

    def _redirect_allowed(self, redirect_uri: str) -> bool:
        wanted = redirect_uri.lower()
        return any(allowed.lower() == wanted for allowed in self._settings.allowed_redirect_uris)

    # ------------------------------------------------------------------
    # Challenge
    # ------------------------------------------------------------------

    def create_challenge(self, provider: str, redirect_uri: str, account_id: int | None = None) -> str:
        """Persist a single-use state and return the provider authorization URL.

        The redirect URI is checked before the provider so an attacker probing
        open redirects learns nothing about which providers are configured.
        """
        if not redirect_uri or not self._redirect_allowed(redirect_uri):
            raise ValidationError("invalid_redirect_uri", "The redirect URI is not allowed.")
        adapter = self._provider(provider)

        state = generate_token()
        now = datetime.now(timezone.utc)
        self._store.add_external_state(
            ExternalAuthState(
                token_hash=self._issuer.hash_token(state),
                provider=adapter.name,
                redirect_uri=redirect_uri,
                account_id=account_id,
                created_at=utc_iso(now),
                expires_at=utc_iso(now + timedelta(minutes=self._settings.external_state_minutes)),
            )
        )
        return adapter.build_authorization_url(state, redirect_uri)

    # ------------------------------------------------------------------
    # Callback
    # ------------------------------------------------------------------

    async def handle_callback(self, code: str, state: str, account_id: int | None = None) -> CallbackOutcome:
        """Consume the state, exchange the code, and sign in, link, or create.

        account_id is the currently authenticated caller, if any. A caller
        recorded on the state itself (link flow started while signed in) takes
        precedence.
        """
        if not state or not code:
            raise ValidationError("invalid_state", _INVALID_STATE)
        now = utc_iso(datetime.now(timezone.utc))
        record = self._store.consume_external_state(self._issuer.hash_token(state), now)
        if record is None:
            raise ValidationError("invalid_state", _INVALID_STATE)

        adapter = self._provider(record.provider)
        info = await self._exchange(adapter, code, record.redirect_uri)

        caller_id = record.account_id if record.account_id is not None else account_id
        existing = self._store.get_external_login(adapter.name, info.provider_key)
        if existing is not None:
            return self._existing_link(existing, caller_id, adapter.name)
        if caller_id is not None:
            return self._link(caller_id, adapter.name, info)
        return self._anonymous(adapter.name, info)

    async def _exchange(self, adapter: ExternalProvider, code: str, redirect_uri: str) -> ExternalUserInfo:
        try:
            return await asyncio.wait_for(
                adapter.exchange_code(code, redirect_uri),
                timeout=self._settings.provider_timeout_seconds,
            )
        except Exception:
            logger.exception("Code exchange failed for provider %s", adapter.name)
            raise ValidationError("code_exchange_failed", "Failed to complete sign-in with the provider.")

    def _existing_link(self, login: ExternalLogin, caller_id: int | None, provider: str) -> CallbackOutcome:
        if caller_id is None:
            account = self._load_signin_account(login.account_id)
            tokens = self._issuer.issue_tokens(account, persistent=False)
            self._store.record_successful_login(account.id)
            audit.emit(self._audit, audit.EXTERNAL_LOGIN, account.id, "account", account.id, provider=provider)
            return CallbackOutcome(provider=provider, account_id=account.id, tokens=tokens)
        if caller_id == login.account_id:
            return CallbackOutcome(provider=provider, account_id=caller_id, is_link_only=True)
        raise ValidationError(
            "already_linked_to_other_user", "This external account is already linked to a different user."
        )

    def _link(self, account_id: int, provider: str, info: ExternalUserInfo) -> CallbackOutcome:
        if self._store.get_by_id(account_id) is None:
            raise UnauthorizedError("not_authenticated", "User is not authenticated.")
        self._add_login(account_id, provider, info)
        audit.emit(self._audit, audit.EXTERNAL_LINKED, account_id, "account", account_id, provider=provider)
        return CallbackOutcome(provider=provider, account_id=account_id, is_link_only=True)

    def _anonymous(self, provider: str, info: ExternalUserInfo) -> CallbackOutcome:
        email = info.email.strip().lower()
        account = self._store.get_by_email(email)
        if account is not None:
            if not account.email_confirmed:
                audit.emit(
                    self._audit, audit.LOGIN_FAILED, None, "account", account.id,
                    provider=provider, reason="email_not_verified",
                )
                raise ValidationError(
                    "email_not_verified",
                    "An account with this email exists but its email address is not verified.",
                )
            account = self._load_signin_account(account.id)
            self._add_login(account.id, provider, info)
            tokens = self._issuer.issue_tokens(account, persistent=False)
            self._store.record_successful_login(account.id)
            audit.emit(
                self._audit, audit.EXTERNAL_LINKED, account.id, "account", account.id,
                provider=provider, auto_linked=True,
            )
            audit.emit(self._audit, audit.EXTERNAL_LOGIN, account.id, "account", account.id, provider=provider)
            return CallbackOutcome(provider=provider, account_id=account.id, tokens=tokens)

        try:
            new_id = self._store.create_account(
                Account(email=email, email_confirmed=info.email_verified), roles=[DEFAULT_ROLE]
            )
        except IntegrityError:
            # Concurrent callback created the same email first.
            raise ValidationError("provider_error", "Could not complete sign-in. Please try again.")
        self._add_login(new_id, provider, info)
        account = self._store.get_by_id(new_id)
        tokens = self._issuer.issue_tokens(account, persistent=False)
        self._store.record_successful_login(new_id)
        audit.emit(self._audit, audit.EXTERNAL_ACCOUNT_CREATED, new_id, "account", new_id, provider=provider)
        logger.info("Created account_id=%d from %s sign-in", new_id, provider)
        return CallbackOutcome(provider=provider, account_id=new_id, tokens=tokens, is_new_account=True)

    def _load_signin_account(self, account_id: int) -> Account:
        account = self._store.get_by_id(account_id)
        if account is None:
            raise ValidationError("invalid_state", _INVALID_STATE)
        if is_locked_out(account):
            raise UnauthorizedError("account_locked", ACCOUNT_LOCKED)
        return account

    def _add_login(self, account_id: int, provider: str, info: ExternalUserInfo) -> None:
        try:
            self._store.add_external_login(
                ExternalLogin(provider=provider, provider_key=info.provider_key, account_id=account_id)
            )
        except IntegrityError:
            raise ValidationError(
                "already_linked_to_other_user", "This external account is already linked to a different user."
            )

    # ------------------------------------------------------------------
    # Unlink
    # ------------------------------------------------------------------

    def unlink_provider(self, account_id: int, provider: str) -> None:
        """Remove a provider link, refusing to strand a password-less account."""
        account = self._store.get_by_id(account_id)
        if account is None:
            raise UnauthorizedError("not_authenticated", "User is not authenticated.")
        logins = self._store.list_external_logins(account_id)
        match = next((login for login in logins if login.provider.lower() == (provider or "").lower()), None)
        if match is None:
            raise ValidationError("provider_not_linked", "This provider is not linked to your account.")
        if account.hashed_password is None and len(logins) <= 1:
            raise ValidationError(
                "cannot_unlink_last_method", "Cannot unlink your only sign-in method. Set a password first."
            )
        self._store.remove_external_login(account_id, match.provider)
        audit.emit(self._audit, audit.EXTERNAL_UNLINKED, account_id, "account", account_id, provider=match.provider)
