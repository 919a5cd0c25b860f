"""
auth/audit.py -- Audit event emission.

Services only ever *emit* audit events; storage and querying belong to an
external audit pipeline. AuditSink is the narrow seam. The default
LoggingAuditSink writes one structured log line per event to the
"keyward.audit" logger, which a deployment can route to its own handler.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Protocol

logger = logging.getLogger("keyward.audit")

# ---------------------------------------------------------------------------
# Action tags
# ---------------------------------------------------------------------------

LOGIN_SUCCEEDED = "auth.login_succeeded"
LOGIN_FAILED = "auth.login_failed"
LOGIN_LOCKED_OUT = "auth.locked_out"
TWO_FACTOR_CHALLENGED = "auth.two_factor_challenged"
TWO_FACTOR_FAILED = "auth.two_factor_failed"
LOGOUT = "auth.logout"
PASSWORD_CHANGED = "auth.password_changed"
PASSWORD_SET = "auth.password_set"
PASSWORD_RESET = "auth.password_reset"
REGISTERED = "auth.registered"
TWO_FACTOR_ENABLED = "auth.two_factor_enabled"
TWO_FACTOR_DISABLED = "auth.two_factor_disabled"
RECOVERY_CODES_REGENERATED = "auth.recovery_codes_regenerated"
EXTERNAL_LOGIN = "auth.external_login"
EXTERNAL_LINKED = "auth.external_linked"
EXTERNAL_UNLINKED = "auth.external_unlinked"
EXTERNAL_ACCOUNT_CREATED = "auth.external_account_created"
ACCOUNT_DELETED = "auth.account_deleted"

USER_CREATED = "admin.user_created"
USER_LOCKED = "admin.user_locked"
USER_UNLOCKED = "admin.user_unlocked"
USER_DELETED = "admin.user_deleted"
ROLE_ASSIGNED = "admin.role_assigned"
ROLE_REMOVED = "admin.role_removed"
PASSWORD_RESET_SENT = "admin.password_reset_sent"
EMAIL_VERIFIED = "admin.email_verified"
ROLE_CREATED = "admin.role_created"
ROLE_PERMISSIONS_CHANGED = "admin.role_permissions_changed"
ROLE_DELETED = "admin.role_deleted"


@dataclass
class AuditEvent:
    action: str
    actor_id: int | None
    target_type: str
    target_id: str | None
    metadata: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None: ...


class LoggingAuditSink:
    """Write each event as a JSON object on the keyward.audit logger."""

    def record(self, event: AuditEvent) -> None:
        logger.info("%s", json.dumps(asdict(event), sort_keys=True, default=str))


class MemoryAuditSink:
    """Collects events in a list for inspection in tests."""

    def __init__(self) -> None:
        self.events: list[AuditEvent] = []

    def record(self, event: AuditEvent) -> None:
        self.events.append(event)

    def actions(self) -> list[str]:
        return [e.action for e in self.events]


def emit(
    sink: AuditSink,
    action: str,
    actor_id: int | None,
    target_type: str,
    target_id: object = None,
    **metadata,
) -> None:
    """Build and record an AuditEvent. A failing sink never breaks the caller."""
    event = AuditEvent(
        action=action,
        actor_id=actor_id,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        metadata=metadata,
    )
    try:
        sink.record(event)
    except Exception:
        logger.exception("Audit sink failed for action=%s", action)
