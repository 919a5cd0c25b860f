"""
tests/test_providers.py -- Provider adapters against an httpx.MockTransport.

The adapters forward extra keyword arguments to httpx, so every request the
authlib client makes (token exchange, profile, emails) is served by the
handler below instead of the network.
"""

from __future__ import annotations

import asyncio
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from authlib.integrations.httpx_client import OAuthError

from auth.providers import GitHubProvider, GoogleProvider, ProviderError, _pick_github_email, build_providers
from tests.conftest import make_settings

REDIRECT = "https://app.example.com/callback"


def _transport(routes: dict[str, httpx.Response], seen: list[httpx.Request]) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        response = routes.get(request.url.path)
        if response is None:
            return httpx.Response(404, json={"error": "not found"})
        return response

    return httpx.MockTransport(handler)


def _token() -> httpx.Response:
    return httpx.Response(200, json={"access_token": "provider-access", "token_type": "bearer"})


class TestGitHub:
    def test_exchange_picks_primary_verified_email(self) -> None:
        seen: list[httpx.Request] = []
        routes = {
            "/login/oauth/access_token": _token(),
            "/user": httpx.Response(200, json={"id": 4242, "name": "Ada Lovelace"}),
            "/user/emails": httpx.Response(
                200,
                json=[
                    {"email": "old@example.com", "primary": False, "verified": True},
                    {"email": "ada@example.com", "primary": True, "verified": True},
                ],
            ),
        }
        provider = GitHubProvider("gh-id", "gh-secret", transport=_transport(routes, seen))
        info = asyncio.run(provider.exchange_code("the-code", REDIRECT))

        assert info.provider_key == "4242"
        assert info.email == "ada@example.com"
        assert info.email_verified is True
        assert (info.first_name, info.last_name) == ("Ada", "Lovelace")

        token_request = seen[0]
        assert token_request.method == "POST"
        assert b"code=the-code" in token_request.content
        assert seen[1].headers["Authorization"] == "Bearer provider-access"

    def test_token_error_propagates(self) -> None:
        routes = {"/login/oauth/access_token": httpx.Response(400, json={"error": "bad_verification_code"})}
        provider = GitHubProvider("gh-id", "gh-secret", transport=_transport(routes, []))
        with pytest.raises(OAuthError):
            asyncio.run(provider.exchange_code("stale", REDIRECT))

    def test_authorization_url(self) -> None:
        url = GitHubProvider("gh-id", "gh-secret").build_authorization_url("xyz", REDIRECT)
        query = parse_qs(urlparse(url).query)
        assert url.startswith("https://github.com/login/oauth/authorize?")
        assert query["state"] == ["xyz"]
        assert query["scope"] == ["read:user user:email"]


class TestGitHubEmailChoice:
    def test_primary_unverified_beats_secondary_verified(self) -> None:
        entries = [
            {"email": "b@example.com", "primary": False, "verified": True},
            {"email": "a@example.com", "primary": True, "verified": False},
        ]
        assert _pick_github_email(entries) == ("a@example.com", False)

    def test_any_verified_as_last_resort(self) -> None:
        entries = [{"email": "c@example.com", "primary": False, "verified": True}]
        assert _pick_github_email(entries) == ("c@example.com", True)

    def test_no_usable_email(self) -> None:
        with pytest.raises(ProviderError):
            _pick_github_email([{"email": "d@example.com", "primary": False, "verified": False}])


class TestGoogle:
    def test_userinfo(self) -> None:
        routes = {
            "/token": _token(),
            "/oauth2/v3/userinfo": httpx.Response(
                200,
                json={
                    "sub": "1100",
                    "email": "g@example.com",
                    "email_verified": True,
                    "given_name": "Grace",
                    "family_name": "Hopper",
                },
            ),
        }
        provider = GoogleProvider("g-id", "g-secret", transport=_transport(routes, []))
        info = asyncio.run(provider.exchange_code("code", REDIRECT))
        assert info.provider_key == "1100"
        assert info.email_verified is True
        assert info.first_name == "Grace"

    def test_email_verified_must_be_true(self) -> None:
        routes = {
            "/token": _token(),
            "/oauth2/v3/userinfo": httpx.Response(
                200, json={"sub": "1", "email": "g@example.com", "email_verified": "true"}
            ),
        }
        provider = GoogleProvider("g-id", "g-secret", transport=_transport(routes, []))
        assert asyncio.run(provider.exchange_code("code", REDIRECT)).email_verified is False

    def test_missing_claims(self) -> None:
        routes = {"/token": _token(), "/oauth2/v3/userinfo": httpx.Response(200, json={"sub": "1"})}
        provider = GoogleProvider("g-id", "g-secret", transport=_transport(routes, []))
        with pytest.raises(ProviderError):
            asyncio.run(provider.exchange_code("code", REDIRECT))

    def test_authorization_url_requests_online_access(self) -> None:
        url = GoogleProvider("g-id", "g-secret").build_authorization_url("s", REDIRECT)
        assert parse_qs(urlparse(url).query)["access_type"] == ["online"]


def test_build_providers_requires_id_and_secret() -> None:
    assert build_providers(make_settings()) == {}
    settings = make_settings(github_client_id="id", github_client_secret="secret", google_client_id="x")
    providers = build_providers(settings)
    assert list(providers) == ["github"]
