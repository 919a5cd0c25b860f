"""
api/routes/v1/admin.py -- Administrative user and role endpoints.

Routes (permission in brackets):
  GET    /api/v1/admin/users                            [users.view]
  GET    /api/v1/admin/users/{id}                       [users.view]
  POST   /api/v1/admin/users                            [users.manage]  invite
  POST   /api/v1/admin/users/{id}/roles                 [users.assign_roles]
  DELETE /api/v1/admin/users/{id}/roles/{role}          [users.assign_roles]
  POST   /api/v1/admin/users/{id}/lock                  [users.manage]
  POST   /api/v1/admin/users/{id}/unlock                [users.manage]
  DELETE /api/v1/admin/users/{id}                       [users.manage]
  POST   /api/v1/admin/users/{id}/send-password-reset   [users.manage]
  POST   /api/v1/admin/users/{id}/verify-email          [users.manage]
  GET    /api/v1/admin/roles                            [roles.view]
  POST   /api/v1/admin/roles                            [roles.manage]
  PUT    /api/v1/admin/roles/{name}/permissions         [roles.manage]
  DELETE /api/v1/admin/roles/{name}                     [roles.manage]

The permission dependency only gates the endpoint. Rank, self-action,
escalation, and last-admin rules are enforced by AdminService.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from api.models import (
    MessageResponse,
    RoleAssign,
    RoleCreate,
    RolePermissionsUpdate,
    RoleResponse,
    UserCreate,
    UserListResponse,
    UserResponse,
)
from auth.dependencies import require_permission
from auth.models import Account
from auth.roles import Permissions
from auth.tokens import is_locked_out

router = APIRouter(prefix="/admin")

_view_users = require_permission(Permissions.USERS_VIEW)
_manage_users = require_permission(Permissions.USERS_MANAGE)
_assign_roles = require_permission(Permissions.USERS_ASSIGN_ROLES)
_view_roles = require_permission(Permissions.ROLES_VIEW)
_manage_roles = require_permission(Permissions.ROLES_MANAGE)


def _user(account: Account) -> UserResponse:
    return UserResponse.from_account(account, is_locked=is_locked_out(account))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=UserListResponse)
def list_users(
    request: Request,
    search: str | None = Query(default=None, max_length=320),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    caller: Account = Depends(_view_users),
) -> UserListResponse:
    accounts, total = request.app.state.admin.list_users(search, page, page_size)
    return UserListResponse(items=[_user(a) for a in accounts], total=total, page=page, page_size=page_size)


@router.get("/users/{user_id}", response_model=UserResponse)
def get_user(request: Request, user_id: int, caller: Account = Depends(_view_users)) -> UserResponse:
    return _user(request.app.state.admin.get_user(user_id))


@router.post("/users", response_model=UserResponse, status_code=201)
def create_user(request: Request, body: UserCreate, caller: Account = Depends(_manage_users)) -> UserResponse:
    """Invite a user. The invitee receives a password-reset link by email."""
    return _user(request.app.state.admin.create_user(caller, body.email))


@router.post("/users/{user_id}/roles", response_model=MessageResponse)
def assign_role(
    request: Request, user_id: int, body: RoleAssign, caller: Account = Depends(_assign_roles)
) -> MessageResponse:
    request.app.state.admin.assign_role(caller, user_id, body.role)
    return MessageResponse(message="Role assigned.")


@router.delete("/users/{user_id}/roles/{role}", response_model=MessageResponse)
def remove_role(
    request: Request, user_id: int, role: str, caller: Account = Depends(_assign_roles)
) -> MessageResponse:
    request.app.state.admin.remove_role(caller, user_id, role)
    return MessageResponse(message="Role removed.")


@router.post("/users/{user_id}/lock", response_model=MessageResponse)
def lock_user(request: Request, user_id: int, caller: Account = Depends(_manage_users)) -> MessageResponse:
    request.app.state.admin.lock_user(caller, user_id)
    return MessageResponse(message="User locked.")


@router.post("/users/{user_id}/unlock", response_model=MessageResponse)
def unlock_user(request: Request, user_id: int, caller: Account = Depends(_manage_users)) -> MessageResponse:
    request.app.state.admin.unlock_user(caller, user_id)
    return MessageResponse(message="User unlocked.")


@router.delete("/users/{user_id}", response_model=MessageResponse)
def delete_user(request: Request, user_id: int, caller: Account = Depends(_manage_users)) -> MessageResponse:
    request.app.state.admin.delete_user(caller, user_id)
    return MessageResponse(message="User deleted.")


@router.post("/users/{user_id}/send-password-reset", response_model=MessageResponse)
def send_password_reset(
    request: Request, user_id: int, caller: Account = Depends(_manage_users)
) -> MessageResponse:
    request.app.state.admin.send_password_reset(caller, user_id)
    return MessageResponse(message="Password reset email sent.")


@router.post("/users/{user_id}/verify-email", response_model=MessageResponse)
def verify_email(request: Request, user_id: int, caller: Account = Depends(_manage_users)) -> MessageResponse:
    request.app.state.admin.verify_email(caller, user_id)
    return MessageResponse(message="Email verified.")


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------


@router.get("/roles", response_model=list[RoleResponse])
def list_roles(request: Request, caller: Account = Depends(_view_roles)) -> list[RoleResponse]:
    return [RoleResponse.from_role(r) for r in request.app.state.admin.list_roles()]


@router.post("/roles", response_model=RoleResponse, status_code=201)
def create_role(request: Request, body: RoleCreate, caller: Account = Depends(_manage_roles)) -> RoleResponse:
    role = request.app.state.admin.create_role(caller, body.name, set(body.permissions))
    return RoleResponse.from_role(role)


@router.put("/roles/{name}/permissions", response_model=RoleResponse)
def set_role_permissions(
    request: Request, name: str, body: RolePermissionsUpdate, caller: Account = Depends(_manage_roles)
) -> RoleResponse:
    role = request.app.state.admin.set_role_permissions(caller, name, set(body.permissions))
    return RoleResponse.from_role(role)


@router.delete("/roles/{name}", response_model=MessageResponse)
def delete_role(request: Request, name: str, caller: Account = Depends(_manage_roles)) -> MessageResponse:
    request.app.state.admin.delete_role(caller, name)
    return MessageResponse(message="Role deleted.")
