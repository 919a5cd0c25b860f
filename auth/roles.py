"""
auth/roles.py -- Fixed role rank table and permission claims.

Ranks are the only ordering used for hierarchical authorization. They come
from a closed enum rather than string comparisons scattered through the code:

    User = 1, Admin = 2, SuperAdmin = 3

Any other role name (custom roles created by admins) ranks 0. Lookup is
case-sensitive on the canonical PascalCase names; an unrecognized name maps
to 0 instead of raising so stale role rows can never crash an admin request.

SuperAdmin implicitly holds every permission. Admin and User get a fixed
default set, seeded into the roles table by AccountStore.ensure_system_roles().
"""

from __future__ import annotations

from enum import IntEnum
from typing import Iterable


class SystemRole(IntEnum):
    USER = 1
    ADMIN = 2
    SUPERADMIN = 3

    @property
    def role_name(self) -> str:
        return _ROLE_NAMES[self]


_ROLE_NAMES = {
    SystemRole.USER: "User",
    SystemRole.ADMIN: "Admin",
    SystemRole.SUPERADMIN: "SuperAdmin",
}
_RANK_BY_NAME = {name: role for role, name in _ROLE_NAMES.items()}

USER = SystemRole.USER.role_name
ADMIN = SystemRole.ADMIN.role_name
SUPERADMIN = SystemRole.SUPERADMIN.role_name

SYSTEM_ROLES: tuple[str, ...] = (USER, ADMIN, SUPERADMIN)
ADMINISTRATIVE_ROLES: frozenset[str] = frozenset({ADMIN, SUPERADMIN})
DEFAULT_ROLE = USER


class Permissions:
    """Permission claim values carried in access tokens."""

    CLAIM_TYPE = "permission"

    USERS_VIEW = "users.view"
    USERS_MANAGE = "users.manage"
    USERS_ASSIGN_ROLES = "users.assign_roles"
    ROLES_VIEW = "roles.view"
    ROLES_MANAGE = "roles.manage"

    ALL: frozenset[str] = frozenset({USERS_VIEW, USERS_MANAGE, USERS_ASSIGN_ROLES, ROLES_VIEW, ROLES_MANAGE})


DEFAULT_PERMISSIONS: dict[str, frozenset[str]] = {
    USER: frozenset(),
    ADMIN: frozenset(
        {
            Permissions.USERS_VIEW,
            Permissions.USERS_MANAGE,
            Permissions.USERS_ASSIGN_ROLES,
            Permissions.ROLES_VIEW,
        }
    ),
    SUPERADMIN: Permissions.ALL,
}


def role_rank(name: str) -> int:
    """Return the rank for a single role name (0 for custom or unknown roles)."""
    role = _RANK_BY_NAME.get(name)
    return int(role) if role is not None else 0


def highest_rank(roles: Iterable[str]) -> int:
    """Return the highest rank across a set of role names (0 for none)."""
    return max((role_rank(r) for r in roles), default=0)


def is_system_role(name: str) -> bool:
    return name in _RANK_BY_NAME


def is_superadmin(roles: Iterable[str]) -> bool:
    return SUPERADMIN in set(roles)
