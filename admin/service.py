"""
admin/service.py -- Administrative user and role management.

Every mutation follows the same order:

  1. load the target (NotFoundError if missing)
  2. self-action guard where it applies
  3. hierarchy guard (caller must outrank the target)
  4. operation-specific guards (rank, escalation, last admin, email state)
  5. the store mutation
  6. session consequence:
       role assign/remove          -> rotate the security stamp only
       lock, delete, verify email  -> revoke all sessions
  7. one audit event

Role changes deliberately keep refresh tokens alive: the target's next
silent refresh picks up a token with the new claims instead of logging them
out. Lock and delete must cut the target off immediately.

Layer rule: no imports from api/ or client/.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from admin.hierarchy import (
    LAST_ADMIN_CANNOT_DELETE,
    LAST_ROLE_HOLDER,
    enforce_hierarchy,
    enforce_last_admin_protection,
    enforce_permission_escalation,
    enforce_role_assignment_rank,
    enforce_self_action_protection,
)
from auth import audit
from auth.audit import AuditSink
from auth.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from auth.models import Account, Role
from auth.roles import (
    ADMINISTRATIVE_ROLES,
    DEFAULT_ROLE,
    SUPERADMIN,
    Permissions,
    highest_rank,
    is_superadmin,
    role_rank,
)
from auth.session import SessionService, normalize_email
from auth.store import AccountStore, utc_iso
from auth.tokens import TokenIssuer, generate_token, hash_password

logger = logging.getLogger("keyward.admin")

_ROLE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,49}$")
# Admin lock: effectively permanent until an explicit unlock.
_ADMIN_LOCK_DURATION = timedelta(days=365 * 100)


class AdminService:
    def __init__(
        self,
        store: AccountStore,
        issuer: TokenIssuer,
        sessions: SessionService,
        audit_sink: AuditSink,
    ) -> None:
        self._store = store
        self._issuer = issuer
        self._sessions = sessions
        self._audit = audit_sink

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_users(self, search: str | None = None, page: int = 1, page_size: int = 20) -> tuple[list[Account], int]:
        if page < 1:
            raise ValidationError("invalid_page", "Page number must be positive.")
        if page_size < 1:
            raise ValidationError("invalid_page_size", "Page size must be positive.")
        return self._store.list_accounts(search=search, offset=(page - 1) * page_size, limit=page_size)

    def get_user(self, user_id: int) -> Account:
        account = self._store.get_by_id(user_id)
        if account is None:
            raise NotFoundError("user_not_found", "User not found.")
        return account

    def list_roles(self) -> list[Role]:
        return self._store.list_roles()

    def _role(self, name: str) -> Role:
        role = self._store.get_role(name)
        if role is None:
            raise NotFoundError("role_not_found", "Role not found.")
        return role

    # ------------------------------------------------------------------
    # User lifecycle
    # ------------------------------------------------------------------

    def create_user(self, caller: Account, email: str) -> Account:
        """Invite a user: confirmed email, unusable random password, reset link by email."""
        email = normalize_email(email)
        if self._store.get_by_email(email) is not None:
            raise ConflictError("email_taken", "A user with this email address already exists.")
        try:
            user_id = self._store.create_account(
                Account(email=email, hashed_password=hash_password(generate_token()), email_confirmed=True),
                roles=[DEFAULT_ROLE],
            )
        except IntegrityError:
            raise ConflictError("email_taken", "A user with this email address already exists.")
        account = self._store.get_by_id(user_id)
        if not self._sessions.issue_password_reset(account, subject="You have been invited"):
            logger.warning("Invitation email for account_id=%d was not delivered", user_id)
        logger.info("Account account_id=%d created by admin account_id=%d", user_id, caller.id)
        audit.emit(self._audit, audit.USER_CREATED, caller.id, "account", user_id)
        return account

    def lock_user(self, caller: Account, user_id: int) -> None:
        target = self.get_user(user_id)
        enforce_self_action_protection(caller.id, target.id, "lock")
        enforce_hierarchy(caller.roles, target.roles)
        until = utc_iso(datetime.now(timezone.utc) + _ADMIN_LOCK_DURATION)
        self._store.update_account(target.id, lockout_until=until)
        self._issuer.revoke_all_sessions(target.id)
        logger.warning("Account account_id=%d locked by admin account_id=%d", target.id, caller.id)
        audit.emit(self._audit, audit.USER_LOCKED, caller.id, "account", target.id)

    def unlock_user(self, caller: Account, user_id: int) -> None:
        target = self.get_user(user_id)
        enforce_hierarchy(caller.roles, target.roles)
        self._store.update_account(target.id, lockout_until=None, failed_login_count=0)
        logger.info("Account account_id=%d unlocked by admin account_id=%d", target.id, caller.id)
        audit.emit(self._audit, audit.USER_UNLOCKED, caller.id, "account", target.id)

    def delete_user(self, caller: Account, user_id: int) -> None:
        target = self.get_user(user_id)
        enforce_self_action_protection(caller.id, target.id, "delete")
        enforce_hierarchy(caller.roles, target.roles)
        for role in target.roles:
            if role in ADMINISTRATIVE_ROLES and self._store.count_role_holders(role) <= 1:
                raise ConflictError("last_admin_cannot_delete", LAST_ADMIN_CANNOT_DELETE)

        self._issuer.revoke_all_sessions(target.id)
        if not self._store.delete_account_if_not_last_admin(target.id):
            # A concurrent removal made this the last admin after the pre-check.
            raise ConflictError("last_admin_cannot_delete", LAST_ADMIN_CANNOT_DELETE)
        logger.warning("Account account_id=%d deleted by admin account_id=%d", target.id, caller.id)
        audit.emit(self._audit, audit.USER_DELETED, caller.id, "account", target.id)

    def send_password_reset(self, caller: Account, user_id: int) -> None:
        target = self.get_user(user_id)
        enforce_hierarchy(caller.roles, target.roles)
        self._sessions.issue_password_reset(target)
        audit.emit(self._audit, audit.PASSWORD_RESET_SENT, caller.id, "account", target.id)

    def verify_email(self, caller: Account, user_id: int) -> None:
        target = self.get_user(user_id)
        enforce_hierarchy(caller.roles, target.roles)
        if target.email_confirmed:
            raise ValidationError("email_already_verified", "Email address is already verified.")
        self._store.update_account(target.id, email_confirmed=True)
        self._issuer.revoke_all_sessions(target.id)
        audit.emit(self._audit, audit.EMAIL_VERIFIED, caller.id, "account", target.id)

    # ------------------------------------------------------------------
    # Role membership
    # ------------------------------------------------------------------

    def assign_role(self, caller: Account, user_id: int, role: str) -> None:
        role_obj = self._role(role)
        target = self.get_user(user_id)
        enforce_hierarchy(caller.roles, target.roles)
        rank = role_rank(role_obj.name)
        enforce_role_assignment_rank(highest_rank(caller.roles), rank)
        if rank == 0:
            caller_permissions = self._store.get_permissions_for_roles(caller.roles)
            enforce_permission_escalation(caller.roles, caller_permissions, role_obj.permissions)
        if role_obj.name in target.roles:
            raise ConflictError("role_already_assigned", "User already has this role.")
        if rank > 0 and not target.email_confirmed:
            raise ValidationError(
                "email_verification_required",
                "User must have a verified email address before being assigned this role.",
            )
        try:
            self._store.add_role(target.id, role_obj.name)
        except IntegrityError:
            raise ConflictError("role_already_assigned", "User already has this role.")
        self._issuer.rotate_security_stamp(target.id)
        logger.info("Role %r assigned to account_id=%d by admin account_id=%d", role_obj.name, target.id, caller.id)
        audit.emit(self._audit, audit.ROLE_ASSIGNED, caller.id, "account", target.id, role=role_obj.name)

    def remove_role(self, caller: Account, user_id: int, role: str) -> None:
        role_obj = self._role(role)
        target = self.get_user(user_id)
        enforce_self_action_protection(caller.id, target.id, "remove_role")
        enforce_hierarchy(caller.roles, target.roles)
        enforce_role_assignment_rank(highest_rank(caller.roles), role_rank(role_obj.name), removing=True)
        if role_obj.name not in target.roles:
            raise ValidationError("role_not_assigned", "User does not have this role.")
        enforce_last_admin_protection(role_obj.name, self._store.count_role_holders(role_obj.name))
        if not self._store.remove_role_if_not_last(target.id, role_obj.name):
            raise ConflictError("last_role_holder", LAST_ROLE_HOLDER)
        self._issuer.rotate_security_stamp(target.id)
        logger.info("Role %r removed from account_id=%d by admin account_id=%d", role_obj.name, target.id, caller.id)
        audit.emit(self._audit, audit.ROLE_REMOVED, caller.id, "account", target.id, role=role_obj.name)

    # ------------------------------------------------------------------
    # Role definitions
    # ------------------------------------------------------------------

    def _check_permissions(self, caller: Account, permissions: set[str]) -> None:
        if not permissions <= Permissions.ALL:
            raise ValidationError("invalid_permission", "One or more permission values are invalid.")
        if is_superadmin(caller.roles):
            return
        held = self._store.get_permissions_for_roles(caller.roles)
        if not permissions <= held:
            raise ForbiddenError("cannot_grant_unheld_permission", "Cannot grant permissions that you do not hold.")

    def create_role(self, caller: Account, name: str, permissions: set[str]) -> Role:
        name = name.strip()
        if any(name.lower() == r.name.lower() for r in self._store.list_roles() if r.is_system):
            raise ValidationError("system_role_name_reserved", "This name is reserved for a system role.")
        if not _ROLE_NAME_PATTERN.match(name):
            raise ValidationError("invalid_role_name", "Role names use letters, digits, '_' or '-' (2-50 chars).")
        self._check_permissions(caller, permissions)
        try:
            self._store.create_role(name, permissions)
        except IntegrityError:
            raise ConflictError("role_name_taken", "A role with this name already exists.")
        audit.emit(self._audit, audit.ROLE_CREATED, caller.id, "role", name, permissions=sorted(permissions))
        return self._role(name)

    def set_role_permissions(self, caller: Account, name: str, permissions: set[str]) -> Role:
        """Replace a role's permissions and rotate every holder's stamp so new claims apply."""
        role = self._role(name)
        if role.name == SUPERADMIN:
            raise ValidationError("superadmin_permissions_fixed", "SuperAdmin permissions cannot be modified.")
        self._check_permissions(caller, permissions)
        self._store.set_role_permissions(role.name, permissions)
        for account_id in self._store.list_role_holders(role.name):
            self._issuer.rotate_security_stamp(account_id)
        audit.emit(
            self._audit, audit.ROLE_PERMISSIONS_CHANGED, caller.id, "role", role.name, permissions=sorted(permissions)
        )
        return self._role(role.name)

    def delete_role(self, caller: Account, name: str) -> None:
        role = self._role(name)
        if role.is_system:
            raise ValidationError("system_role_cannot_be_deleted", "System roles cannot be deleted.")
        if not self._store.delete_role(role.name):
            raise ConflictError("role_has_users", "Cannot delete a role that has users assigned to it.")
        audit.emit(self._audit, audit.ROLE_DELETED, caller.id, "role", role.name)
