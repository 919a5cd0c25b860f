"""
auth/providers.py -- OAuth 2.0 provider adapters (GitHub, Google).

Each provider knows three things: how to build its authorization URL, how to
exchange an authorization code for an access token, and how to turn its
profile endpoints into one ExternalUserInfo. Everything else (state, linking,
account creation) lives in auth/external.py.

The code exchange uses authlib's httpx integration (AsyncOAuth2Client), so
token requests, Accept headers and Bearer injection on follow-up calls are
authlib's job. Extra keyword arguments are forwarded to httpx, which is how
tests plug in an httpx.MockTransport.

Security notes:
  email_verified is reported exactly as the provider states it. The broker
  decides what an unverified address may do; the adapters never upgrade it.

  Provider registration is driven by configuration: a provider is active only
  when both client id and secret are set.

Layer rule: no imports from api/, admin/, or client/. Import from core/ is
allowed -- core/ is the kernel layer.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from authlib.integrations.httpx_client import AsyncOAuth2Client
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri

from auth.models import ExternalUserInfo
from core.config import Settings

logger = logging.getLogger("keyward.auth.providers")


class ProviderError(Exception):
    """Raised by an adapter when the provider's response is unusable."""


class ExternalProvider(ABC):
    """One OAuth 2.0 identity provider."""

    name: str
    display_name: str
    authorize_url: str
    token_url: str
    scope: str

    def __init__(self, client_id: str, client_secret: str, **client_kwargs) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self._client_kwargs = client_kwargs

    def build_authorization_url(self, state: str, redirect_uri: str) -> str:
        return prepare_grant_uri(
            self.authorize_url,
            self.client_id,
            "code",
            redirect_uri=redirect_uri,
            scope=self.scope,
            state=state,
            **self.extra_authorize_params(),
        )

    def extra_authorize_params(self) -> dict:
        return {}

    def _client(self, redirect_uri: str) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self.client_secret,
            scope=self.scope,
            redirect_uri=redirect_uri,
            **self._client_kwargs,
        )

    async def exchange_code(self, code: str, redirect_uri: str) -> ExternalUserInfo:
        """Trade an authorization code for the caller's identity."""
        async with self._client(redirect_uri) as client:
            token = await client.fetch_token(self.token_url, code=code, redirect_uri=redirect_uri)
            if not token or not token.get("access_token"):
                raise ProviderError(f"{self.display_name} token response did not contain an access_token")
            return await self.fetch_user_info(client)

    @abstractmethod
    async def fetch_user_info(self, client: AsyncOAuth2Client) -> ExternalUserInfo: ...


def _split_name(full_name: str | None) -> tuple[str | None, str | None]:
    if not full_name:
        return None, None
    parts = full_name.split(None, 1)
    return parts[0], (parts[1] if len(parts) > 1 else None)


class GitHubProvider(ExternalProvider):
    """GitHub OAuth app.

    GitHub does not return the email with the token. Two API calls are needed:
      1. GET /user         -- numeric id (stable provider key) and display name.
      2. GET /user/emails  -- the address list; pick primary+verified, then
                              primary, then any verified.
    """

    name = "github"
    display_name = "GitHub"
    authorize_url = "https://github.com/login/oauth/authorize"
    token_url = "https://github.com/login/oauth/access_token"  # noqa: S105 -- URL, not a password
    user_url = "https://api.github.com/user"
    emails_url = "https://api.github.com/user/emails"
    scope = "read:user user:email"

    async def fetch_user_info(self, client: AsyncOAuth2Client) -> ExternalUserInfo:
        headers = {"Accept": "application/vnd.github+json", "User-Agent": "Keyward"}
        resp = await client.get(self.user_url, headers=headers)
        resp.raise_for_status()
        profile = resp.json()

        emails_resp = await client.get(self.emails_url, headers=headers)
        emails_resp.raise_for_status()
        email, verified = _pick_github_email(emails_resp.json())

        first, last = _split_name(profile.get("name"))
        return ExternalUserInfo(
            provider_key=str(profile["id"]),
            email=email,
            email_verified=verified,
            first_name=first,
            last_name=last,
        )


def _pick_github_email(entries: list[dict]) -> tuple[str, bool]:
    for predicate in (
        lambda e: e.get("primary") and e.get("verified"),
        lambda e: e.get("primary"),
        lambda e: e.get("verified"),
    ):
        for entry in entries:
            if predicate(entry) and entry.get("email"):
                return entry["email"], bool(entry.get("verified"))
    raise ProviderError("GitHub user has no usable email address")


class GoogleProvider(ExternalProvider):
    """Google OpenID Connect. Identity comes from the userinfo endpoint."""

    name = "google"
    display_name = "Google"
    authorize_url = "https://accounts.google.com/o/oauth2/v2/auth"
    token_url = "https://oauth2.googleapis.com/token"  # noqa: S105 -- URL, not a password
    userinfo_url = "https://www.googleapis.com/oauth2/v3/userinfo"
    scope = "openid email profile"

    def extra_authorize_params(self) -> dict:
        return {"access_type": "online"}

    async def fetch_user_info(self, client: AsyncOAuth2Client) -> ExternalUserInfo:
        resp = await client.get(self.userinfo_url)
        resp.raise_for_status()
        claims = resp.json()
        if not claims.get("sub") or not claims.get("email"):
            raise ProviderError("Google userinfo is missing the sub or email claim")
        return ExternalUserInfo(
            provider_key=str(claims["sub"]),
            email=claims["email"],
            email_verified=claims.get("email_verified") is True,
            first_name=claims.get("given_name"),
            last_name=claims.get("family_name"),
        )


def build_providers(settings: Settings) -> dict[str, ExternalProvider]:
    """Instantiate every configured provider, keyed by lowercase name."""
    providers: dict[str, ExternalProvider] = {}
    timeout = settings.provider_timeout_seconds
    if settings.github_client_id and settings.github_client_secret:
        providers["github"] = GitHubProvider(settings.github_client_id, settings.github_client_secret, timeout=timeout)
        logger.info("GitHub OAuth provider registered")
    if settings.google_client_id and settings.google_client_secret:
        providers["google"] = GoogleProvider(settings.google_client_id, settings.google_client_secret, timeout=timeout)
        logger.info("Google OAuth provider registered")
    return providers
