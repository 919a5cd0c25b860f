"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two transports are checked in priority order:
  1. Access cookie (ACCESS_COOKIE) -- browser clients with use_cookies=true.
  2. Authorization: Bearer <token> header -- API and mobile clients.
A cookie token that fails validation does not hide a valid Bearer token.

Both converge on TokenIssuer.validate_access_token(), which also rejects
tokens whose security stamp has been rotated and tokens of locked accounts.

try_get_current_account() is the soft variant (returns None on failure).
get_current_account() wraps it and raises UnauthorizedError.
require_permission(perm) builds a dependency that also raises ForbiddenError
when none of the caller's roles grants perm.

Errors are domain exceptions, not HTTPException: the ServiceError handler in
api/main.py renders them in the standard envelope.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from auth.errors import NOT_AUTHENTICATED, ForbiddenError, UnauthorizedError
from auth.models import Account
from auth.roles import is_superadmin
from core.cookies import ACCESS_COOKIE


def _bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None
    return None


def try_get_current_account(request: Request) -> Account | None:
    """Authenticate the request via cookie or Bearer header. Never raises."""
    issuer = request.app.state.issuer
    for token in (request.cookies.get(ACCESS_COOKIE), _bearer_token(request)):
        if not token:
            continue
        account = issuer.validate_access_token(token)
        if account is not None:
            return account
    return None


def get_current_account(request: Request) -> Account:
    """Require authentication.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(account: Account = Depends(get_current_account)): ...
    """
    account = try_get_current_account(request)
    if account is None:
        raise UnauthorizedError("not_authenticated", NOT_AUTHENTICATED)
    return account


def require_permission(permission: str) -> Callable[..., Account]:
    """Build a dependency requiring `permission` from one of the caller's roles.

    Permissions are read from the store on every request, not from the JWT
    claims, so a role edit takes effect before the access token expires.
    SuperAdmin holds every permission.
    """

    def dependency(request: Request, account: Account = Depends(get_current_account)) -> Account:
        if is_superadmin(account.roles):
            return account
        granted = request.app.state.store.get_permissions_for_roles(account.roles)
        if permission not in granted:
            raise ForbiddenError("permission_denied", "You do not have permission to perform this action.")
        return account

    return dependency
