"""
admin/hierarchy.py -- Rank-based authorization guards for admin operations.

Every guard is a pure function: it takes ranks, role names, ids or counts
and either returns None or raises. No store access, no I/O, so each rule is
testable over the full rank table in isolation.

Rules (ranks from auth.roles: User=1, Admin=2, SuperAdmin=3, custom=0):

  hierarchy          caller's highest rank must be STRICTLY greater than
                     the target's. Equal ranks cannot manage each other.
  role rank          a role can be assigned or removed only if its rank is
                     strictly below the caller's highest rank.
  escalation         a custom role (rank 0) can be assigned only if the
                     caller already holds every permission it grants.
                     SuperAdmin is exempt.
  self action        lock, delete and role removal never target the caller.
  last admin         Admin/SuperAdmin cannot lose its last holder.

Denials are ForbiddenError (403) except last-admin, which is a ConflictError
(409): the caller is allowed to act, the data just does not permit it.
"""

from __future__ import annotations

from typing import Iterable

from auth.errors import ConflictError, ForbiddenError
from auth.roles import ADMINISTRATIVE_ROLES, highest_rank, is_superadmin

HIERARCHY_INSUFFICIENT = "You do not have sufficient privileges to manage this user."
ROLE_ASSIGN_ABOVE_RANK = "Cannot assign a role at or above your own rank."
ROLE_REMOVE_ABOVE_RANK = "Cannot remove a role at or above your own rank."
ROLE_ASSIGN_ESCALATION = "Cannot assign a role that grants permissions you do not hold."
LAST_ROLE_HOLDER = "Cannot remove this role. This is the last user holding it."
LAST_ADMIN_CANNOT_DELETE = "Cannot delete this user. They are the last user holding an administrative role."

_SELF_ACTION_MESSAGES = {
    "lock": "Cannot lock your own account.",
    "delete": "Cannot delete your own account.",
    "remove_role": "Cannot remove a role from your own account.",
}


def enforce_hierarchy(caller_roles: Iterable[str], target_roles: Iterable[str]) -> None:
    if highest_rank(caller_roles) <= highest_rank(target_roles):
        raise ForbiddenError("hierarchy_insufficient", HIERARCHY_INSUFFICIENT)


def enforce_role_assignment_rank(caller_rank: int, role_rank: int, removing: bool = False) -> None:
    if role_rank >= caller_rank:
        if removing:
            raise ForbiddenError("role_remove_above_rank", ROLE_REMOVE_ABOVE_RANK)
        raise ForbiddenError("role_assign_above_rank", ROLE_ASSIGN_ABOVE_RANK)


def enforce_permission_escalation(
    caller_roles: Iterable[str],
    caller_permissions: set[str],
    role_permissions: set[str],
) -> None:
    """Reject granting a role whose permissions the caller does not already hold."""
    if not role_permissions or is_superadmin(caller_roles):
        return
    if not role_permissions <= caller_permissions:
        raise ForbiddenError("role_assign_escalation", ROLE_ASSIGN_ESCALATION)


def enforce_self_action_protection(caller_id: int, target_id: int, action: str) -> None:
    if caller_id == target_id:
        message = _SELF_ACTION_MESSAGES.get(action, "Cannot perform this action on your own account.")
        raise ForbiddenError("self_action_forbidden", message)


def enforce_last_admin_protection(role: str, holder_count: int) -> None:
    """Pre-check for a friendly error. The store repeats the check atomically."""
    if role in ADMINISTRATIVE_ROLES and holder_count <= 1:
        raise ConflictError("last_role_holder", LAST_ROLE_HOLDER)
