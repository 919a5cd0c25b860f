"""
tests/test_api_routes.py -- Integration tests for the Keyward HTTP API.

These tests exercise the full stack: FastAPI routing -> auth dependency
injection -> services -> AccountStore -> response model serialization.
Unit tests for the services live in their own modules; what matters here is
status codes, the error envelope, cookies vs body tokens, and headers.

Coverage:
  - login in body and cookie modes, /me, refresh from body and from cookie
  - 2FA enrollment and two-step login over HTTP
  - logout, password change and self-deletion revoking the caller's tokens
  - a stale access cookie never masks a valid Bearer header
  - admin endpoints: permission gating and rank rules surfacing as 403
  - external login endpoints with no providers configured
  - error envelope shape, Cache-Control: no-store, rate limiting

Fixtures used (from conftest.py):
  - api_client: ApiContext with a SuperAdmin superadmin@example.com / PASSWORD
"""

from __future__ import annotations

import pyotp
import pytest

from api.limiter import limiter
from auth.roles import ADMIN, USER
from core.cookies import ACCESS_COOKIE, REFRESH_COOKIE
from tests.conftest import PASSWORD


def _login_body(email: str, **extra) -> dict:
    return {"email": email, "password": PASSWORD, **extra}


@pytest.fixture
def clean_cookies(api_client):
    api_client.client.cookies.clear()
    yield api_client
    api_client.client.cookies.clear()


class TestAuthRequired:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/v1/auth/me"),
            ("POST", "/api/v1/auth/logout"),
            ("POST", "/api/v1/auth/2fa/setup"),
            ("GET", "/api/v1/admin/users"),
            ("GET", "/api/v1/admin/roles"),
        ],
    )
    def test_unauthenticated(self, clean_cookies, method: str, path: str) -> None:
        resp = clean_cookies.client.request(method, path)
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "not_authenticated"

    def test_garbage_bearer_token(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/me", headers={"Authorization": "Bearer nonsense"})
        assert resp.status_code == 401

    def test_stale_cookie_falls_back_to_bearer(self, clean_cookies) -> None:
        ctx = clean_cookies
        account = ctx.create_account("stale-cookie@example.com")
        stale = ctx.login("stale-cookie@example.com")["Authorization"].removeprefix("Bearer ")
        ctx.store.rotate_security_stamp(account.id)
        headers = ctx.login("stale-cookie@example.com")
        headers["Cookie"] = f"{ACCESS_COOKIE}={stale}"
        resp = ctx.client.get("/api/v1/auth/me", headers=headers)
        assert resp.status_code == 200
        assert resp.json()["email"] == "stale-cookie@example.com"


class TestLoginAndSession:
    def test_login_body_mode_and_me(self, api_client) -> None:
        api_client.create_account("body@example.com")
        resp = api_client.client.post("/api/v1/auth/login", json=_login_body("body@example.com"))
        assert resp.status_code == 200
        assert resp.headers["cache-control"] == "no-store"
        data = resp.json()
        assert data["requires_two_factor"] is False
        assert data["tokens"]["access_token"]
        assert data["tokens"]["refresh_token"]

        me = api_client.client.get(
            "/api/v1/auth/me", headers={"Authorization": f"Bearer {data['tokens']['access_token']}"}
        )
        assert me.status_code == 200
        body = me.json()
        assert body["email"] == "body@example.com"
        assert body["roles"] == [USER]
        assert body["permissions"] == []
        assert body["has_password"] is True
        assert body["external_logins"] == []

    def test_invalid_credentials_identical(self, api_client) -> None:
        api_client.create_account("known-api@example.com")
        unknown = api_client.client.post("/api/v1/auth/login", json=_login_body("nobody-api@example.com"))
        wrong = api_client.client.post(
            "/api/v1/auth/login", json={"email": "known-api@example.com", "password": "wrong-password"}
        )
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.json()["error"]["code"] == "invalid_credentials"

    def test_refresh_from_body(self, api_client) -> None:
        api_client.create_account("refresh-body@example.com")
        tokens = api_client.client.post(
            "/api/v1/auth/login", json=_login_body("refresh-body@example.com")
        ).json()["tokens"]

        first = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert first.status_code == 200
        assert first.json()["refresh_token"] != tokens["refresh_token"]

        replay = api_client.client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "token_already_used"

    def test_cookie_mode(self, clean_cookies) -> None:
        ctx = clean_cookies
        ctx.create_account("cookie@example.com")
        resp = ctx.client.post("/api/v1/auth/login", json=_login_body("cookie@example.com", use_cookies=True))
        assert resp.status_code == 200
        assert resp.json()["tokens"]["access_token"] is None
        assert resp.json()["tokens"]["refresh_token"] is None
        assert ACCESS_COOKIE in resp.cookies
        assert REFRESH_COOKIE in resp.cookies
        set_cookies = resp.headers.get_list("set-cookie")
        assert len(set_cookies) == 2
        assert all("; secure" in header.lower() for header in set_cookies)

        assert ctx.client.get("/api/v1/auth/me").status_code == 200

        refreshed = ctx.client.post("/api/v1/auth/refresh")
        assert refreshed.status_code == 200
        assert refreshed.json()["refresh_token"] is None
        assert ctx.client.get("/api/v1/auth/me").json()["email"] == "cookie@example.com"

    def test_refresh_without_any_token(self, clean_cookies) -> None:
        resp = clean_cookies.client.post("/api/v1/auth/refresh")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "token_missing"

    def test_logout_revokes_tokens(self, api_client) -> None:
        api_client.create_account("logout@example.com")
        headers = api_client.login("logout@example.com")
        assert api_client.client.post("/api/v1/auth/logout", headers=headers).status_code == 200
        assert api_client.client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_change_password(self, api_client) -> None:
        api_client.create_account("change@example.com")
        headers = api_client.login("change@example.com")
        resp = api_client.client.post(
            "/api/v1/auth/change-password",
            json={"current_password": PASSWORD, "new_password": "another-long-password"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert api_client.client.get("/api/v1/auth/me", headers=headers).status_code == 401
        api_client.login("change@example.com", "another-long-password")

    def test_delete_me(self, api_client) -> None:
        api_client.create_account("leaving@example.com")
        headers = api_client.login("leaving@example.com")
        wrong = api_client.client.request(
            "DELETE", "/api/v1/auth/me", json={"password": "wrong-password"}, headers=headers
        )
        assert wrong.status_code == 400
        assert wrong.json()["error"]["code"] == "password_incorrect"

        resp = api_client.client.request("DELETE", "/api/v1/auth/me", json={"password": PASSWORD}, headers=headers)
        assert resp.status_code == 200
        assert api_client.client.get("/api/v1/auth/me", headers=headers).status_code == 401
        assert api_client.store.get_by_email("leaving@example.com") is None

    def test_sole_superadmin_cannot_delete_itself(self, api_client) -> None:
        headers = api_client.login("superadmin@example.com")
        resp = api_client.client.request("DELETE", "/api/v1/auth/me", json={"password": PASSWORD}, headers=headers)
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "last_admin_cannot_delete"
        assert api_client.client.get("/api/v1/auth/me", headers=headers).status_code == 200


class TestRegistrationAndReset:
    def test_register(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/register", json={"email": "signup@example.com", "password": "long-enough-password"}
        )
        assert resp.status_code == 201
        assert resp.json()["email"] == "signup@example.com"
        assert resp.json()["email_confirmed"] is False

    def test_register_duplicate(self, api_client) -> None:
        api_client.create_account("taken@example.com")
        resp = api_client.client.post(
            "/api/v1/auth/register", json={"email": "taken@example.com", "password": "long-enough-password"}
        )
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "email_taken"

    def test_forgot_password_same_answer(self, api_client) -> None:
        api_client.create_account("forgot@example.com")
        known = api_client.client.post("/api/v1/auth/forgot-password", json={"email": "forgot@example.com"})
        unknown = api_client.client.post("/api/v1/auth/forgot-password", json={"email": "ghost@example.com"})
        assert known.status_code == unknown.status_code == 200
        assert known.json() == unknown.json()

    def test_reset_password(self, api_client) -> None:
        api_client.create_account("reset-api@example.com")
        api_client.client.post("/api/v1/auth/forgot-password", json={"email": "reset-api@example.com"})
        token = api_client.email.last_token()
        resp = api_client.client.post(
            "/api/v1/auth/reset-password", json={"token": token, "new_password": "fresh-password-123"}
        )
        assert resp.status_code == 200
        api_client.login("reset-api@example.com", "fresh-password-123")


class TestTwoFactorOverHttp:
    def test_enroll_and_login(self, api_client) -> None:
        api_client.create_account("tfa-api@example.com")
        headers = api_client.login("tfa-api@example.com")

        setup = api_client.client.post("/api/v1/auth/2fa/setup", headers=headers)
        assert setup.status_code == 200
        assert setup.headers["cache-control"] == "no-store"
        totp = pyotp.TOTP(setup.json()["secret"])

        verify = api_client.client.post("/api/v1/auth/2fa/verify-setup", json={"code": totp.now()}, headers=headers)
        assert verify.status_code == 200
        recovery_codes = verify.json()["recovery_codes"]
        assert len(recovery_codes) == 10

        step_one = api_client.client.post("/api/v1/auth/login", json=_login_body("tfa-api@example.com"))
        assert step_one.json()["requires_two_factor"] is True
        assert step_one.json()["tokens"] is None
        challenge = step_one.json()["challenge_token"]

        step_two = api_client.client.post(
            "/api/v1/auth/login/2fa", json={"challenge_token": challenge, "code": totp.now()}
        )
        assert step_two.status_code == 200
        assert step_two.json()["access_token"]

        again = api_client.client.post("/api/v1/auth/login", json=_login_body("tfa-api@example.com"))
        recovered = api_client.client.post(
            "/api/v1/auth/login/2fa/recovery",
            json={"challenge_token": again.json()["challenge_token"], "recovery_code": recovery_codes[0]},
        )
        assert recovered.status_code == 200


class TestAdminRoutes:
    def test_plain_user_forbidden(self, api_client) -> None:
        api_client.create_account("plain@example.com")
        resp = api_client.client.get("/api/v1/admin/users", headers=api_client.login("plain@example.com"))
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "permission_denied"

    def test_admin_lists_users(self, api_client) -> None:
        api_client.create_account("lister@example.com", roles=[ADMIN])
        resp = api_client.client.get(
            "/api/v1/admin/users", params={"page_size": 5}, headers=api_client.login("lister@example.com")
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["page"] == 1
        assert data["page_size"] == 5
        assert len(data["items"]) <= 5
        assert data["total"] >= 2

    def test_page_size_bounds(self, api_client) -> None:
        headers = api_client.login("superadmin@example.com")
        resp = api_client.client.get("/api/v1/admin/users", params={"page_size": 500}, headers=headers)
        assert resp.status_code == 422
        assert resp.json()["error"]["code"] == "validation_error"

    def test_admin_cannot_assign_admin(self, api_client) -> None:
        api_client.create_account("assigner@example.com", roles=[ADMIN])
        target = api_client.create_account("assignee@example.com")
        resp = api_client.client.post(
            f"/api/v1/admin/users/{target.id}/roles",
            json={"role": ADMIN},
            headers=api_client.login("assigner@example.com"),
        )
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "role_assign_above_rank"

    def test_superadmin_assigns_admin(self, api_client) -> None:
        target = api_client.create_account("promoted@example.com")
        headers = api_client.login("superadmin@example.com")
        resp = api_client.client.post(f"/api/v1/admin/users/{target.id}/roles", json={"role": ADMIN}, headers=headers)
        assert resp.status_code == 200
        detail = api_client.client.get(f"/api/v1/admin/users/{target.id}", headers=headers).json()
        assert detail["roles"] == [ADMIN, USER]

    def test_lock_cuts_off_target(self, api_client) -> None:
        target = api_client.create_account("locked-api@example.com")
        target_headers = api_client.login("locked-api@example.com")
        admin_headers = api_client.login("superadmin@example.com")
        resp = api_client.client.post(f"/api/v1/admin/users/{target.id}/lock", headers=admin_headers)
        assert resp.status_code == 200
        assert api_client.client.get("/api/v1/auth/me", headers=target_headers).status_code == 401
        detail = api_client.client.get(f"/api/v1/admin/users/{target.id}", headers=admin_headers).json()
        assert detail["is_locked"] is True

    def test_invite_user(self, api_client) -> None:
        headers = api_client.login("superadmin@example.com")
        resp = api_client.client.post("/api/v1/admin/users", json={"email": "invited@example.com"}, headers=headers)
        assert resp.status_code == 201
        assert resp.json()["email_confirmed"] is True
        assert api_client.email.sent[-1][0] == "invited@example.com"

    def test_admin_cannot_manage_roles(self, api_client) -> None:
        api_client.create_account("role-admin@example.com", roles=[ADMIN])
        resp = api_client.client.post(
            "/api/v1/admin/roles",
            json={"name": "Support", "permissions": ["users.view"]},
            headers=api_client.login("role-admin@example.com"),
        )
        assert resp.status_code == 403

    def test_role_lifecycle(self, api_client) -> None:
        headers = api_client.login("superadmin@example.com")
        created = api_client.client.post(
            "/api/v1/admin/roles", json={"name": "Auditors", "permissions": ["users.view"]}, headers=headers
        )
        assert created.status_code == 201
        assert created.json() == {
            "name": "Auditors",
            "permissions": ["users.view"],
            "is_system": False,
            "user_count": 0,
        }

        updated = api_client.client.put(
            "/api/v1/admin/roles/Auditors/permissions", json={"permissions": ["roles.view"]}, headers=headers
        )
        assert updated.json()["permissions"] == ["roles.view"]

        names = [r["name"] for r in api_client.client.get("/api/v1/admin/roles", headers=headers).json()]
        assert "Auditors" in names

        assert api_client.client.delete("/api/v1/admin/roles/Auditors", headers=headers).status_code == 200
        system = api_client.client.delete(f"/api/v1/admin/roles/{USER}", headers=headers)
        assert system.status_code == 400
        assert system.json()["error"]["code"] == "system_role_cannot_be_deleted"

    def test_unknown_user(self, api_client) -> None:
        headers = api_client.login("superadmin@example.com")
        resp = api_client.client.get("/api/v1/admin/users/987654", headers=headers)
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "user_not_found"


class TestExternalRoutes:
    def test_providers_public_and_empty(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/auth/external/providers")
        assert resp.status_code == 200
        assert resp.json() == []

    def test_challenge_rejects_unlisted_redirect(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/external/challenge",
            json={"provider": "github", "redirect_uri": "https://evil.example.com/"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_redirect_uri"

    def test_challenge_unconfigured_provider(self, api_client) -> None:
        resp = api_client.client.post(
            "/api/v1/auth/external/challenge",
            json={"provider": "github", "redirect_uri": "https://app.example.com/callback"},
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "provider_not_configured"

    def test_callback_with_forged_state(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/external/callback", json={"code": "c", "state": "forged"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_state"


class TestErrorEnvelope:
    def test_validation_error_shape(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json={"email": "x@example.com"})
        assert resp.status_code == 422
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert "message" in error
        assert resp.headers["cache-control"] == "no-store"

    def test_service_error_is_no_store(self, api_client) -> None:
        resp = api_client.client.post("/api/v1/auth/login", json=_login_body("missing@example.com"))
        assert resp.headers["cache-control"] == "no-store"
        assert set(resp.json()["error"]) == {"code", "message"}

    def test_unknown_route(self, api_client) -> None:
        resp = api_client.client.get("/api/v1/nope")
        assert resp.status_code == 404
        assert "error" in resp.json()


def test_login_rate_limit(api_client) -> None:
    """LOGIN_RATE_LIMIT defaults to 10/minute per client address."""
    limiter.reset()
    limiter.enabled = True
    try:
        codes = [
            api_client.client.post("/api/v1/auth/login", json=_login_body("flood@example.com")).status_code
            for _ in range(11)
        ]
    finally:
        limiter.enabled = False
        limiter.reset()
    assert codes[:10] == [401] * 10
    assert codes[10] == 429
