"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AccountStore is the repository; the
_row_to_* functions at the bottom are the mappers. Services never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Only hashes of refresh tokens, OAuth state nonces, 2FA challenge tokens,
  recovery codes and password-reset tokens are stored. The plaintext values
  leave the process once, in the response that created them.

Single-use consumption:
  Every "check then mark used" sequence is ONE conditional UPDATE whose WHERE
  clause re-states the validity predicate (not used, not invalidated, not
  expired). The row count decides the winner: with N concurrent callers exactly
  one sees rowcount == 1, the others see 0 and must treat the token as used.
  Never split this into a SELECT followed by an UPDATE.

Last-admin protection:
  remove_role_if_not_last() and delete_account_if_not_last_admin() fold the
  holder count into the DELETE itself, so two concurrent removals of different
  holders of the same administrative role cannot both pass a stale count.

Layer rule: no imports from api/, admin/, or client/.
"""

from __future__ import annotations

import secrets
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine

from auth.models import Account, ExternalAuthState, ExternalLogin, RefreshToken, Role, TwoFactorChallenge
from auth.roles import ADMINISTRATIVE_ROLES, DEFAULT_PERMISSIONS, SYSTEM_ROLES

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'keyward_auth.db'}"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for external-only accounts
    Column("security_stamp", String(64), nullable=False),
    Column("email_confirmed", Integer, nullable=False, server_default="0"),
    Column("lockout_until", String(40)),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("totp_secret", String(64)),
    Column("created_at", String(40), nullable=False),
    Column("last_login", String(40)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("name", String(100), primary_key=True),
    Column("is_system", Integer, nullable=False, server_default="0"),
)

_role_permissions = Table(
    "role_permissions",
    _metadata,
    Column("role_name", String(100), nullable=False),
    Column("permission", String(100), nullable=False),
    UniqueConstraint("role_name", "permission"),
)

_account_roles = Table(
    "account_roles",
    _metadata,
    Column("account_id", Integer, nullable=False),
    Column("role_name", String(100), nullable=False),
    UniqueConstraint("account_id", "role_name"),
)

_refresh_tokens = Table(
    "refresh_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("used_at", String(40), nullable=True),
    Column("is_invalidated", Integer, nullable=False, server_default="0"),
    Column("is_persistent", Integer, nullable=False, server_default="0"),
)

_external_states = Table(
    "external_auth_states",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("provider", String(30), nullable=False),
    Column("redirect_uri", Text, nullable=False),
    Column("account_id", Integer),  # set when an authenticated user links a provider
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
)

_external_logins = Table(
    "external_logins",
    _metadata,
    Column("provider", String(30), nullable=False),
    Column("provider_key", String(255), nullable=False),
    Column("account_id", Integer, nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    UniqueConstraint("provider", "provider_key"),
)

_challenges = Table(
    "two_factor_challenges",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("account_id", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
    Column("is_persistent", Integer, nullable=False, server_default="0"),
    Column("failed_attempts", Integer, nullable=False, server_default="0"),
)

_recovery_codes = Table(
    "recovery_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
)

_password_resets = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("account_id", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("is_used", Integer, nullable=False, server_default="0"),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool. In-memory databases silently keep their
    "memory" journal mode.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utc_iso(moment: datetime) -> str:
    """Serialize a datetime as a fixed-width UTC ISO string.

    Fixed width (always microseconds) keeps lexicographic order equal to
    chronological order, which the expiry predicates in SQL rely on.
    """
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return utc_iso(datetime.now(timezone.utc))


def new_security_stamp() -> str:
    return secrets.token_hex(16)


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for accounts, roles, and every single-use auth token.

    Usage:
        store = AccountStore("sqlite:///keyward.db")
        store.ensure_system_roles()
        account_id = store.create_account(Account(email="a@example.com"), roles=["User"])
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL, timeout: float = 5.0) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = timeout
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(text("SELECT 1")).scalar() == 1

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def ensure_system_roles(self) -> None:
        """Create the system roles and their default permissions if missing.

        Idempotent -- safe to call on every startup. Permissions of an existing
        system role are left alone so operator edits survive restarts.
        """
        with self.engine.begin() as conn:
            existing = {row.name for row in conn.execute(select(_roles.c.name))}
            for name in SYSTEM_ROLES:
                if name in existing:
                    continue
                conn.execute(_roles.insert().values(name=name, is_system=1))
                for permission in sorted(DEFAULT_PERMISSIONS[name]):
                    conn.execute(_role_permissions.insert().values(role_name=name, permission=permission))

    def get_role(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(_roles.select().where(_roles.c.name == name)).fetchone()
            if row is None:
                return None
            return self._load_role(conn, row)

    def list_roles(self) -> list[Role]:
        with self.engine.connect() as conn:
            rows = conn.execute(_roles.select().order_by(_roles.c.name)).fetchall()
            return [self._load_role(conn, r) for r in rows]

    def create_role(self, name: str, permissions: set[str]) -> None:
        """Insert a custom role. Raises IntegrityError if the name is taken."""
        with self.engine.begin() as conn:
            conn.execute(_roles.insert().values(name=name, is_system=0))
            for permission in sorted(permissions):
                conn.execute(_role_permissions.insert().values(role_name=name, permission=permission))

    def set_role_permissions(self, name: str, permissions: set[str]) -> None:
        """Replace the permission set of a role in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_name == name))
            for permission in sorted(permissions):
                conn.execute(_role_permissions.insert().values(role_name=name, permission=permission))

    def delete_role(self, name: str) -> bool:
        """Delete a role that nobody holds. Returns False if it has holders or does not exist."""
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    "DELETE FROM roles WHERE name = :name AND is_system = 0 "
                    "AND NOT EXISTS (SELECT 1 FROM account_roles WHERE role_name = :name)"
                ),
                {"name": name},
            )
            if result.rowcount == 0:
                return False
            conn.execute(_role_permissions.delete().where(_role_permissions.c.role_name == name))
        return True

    def get_permissions_for_roles(self, roles: list[str]) -> set[str]:
        if not roles:
            return set()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_role_permissions.c.permission).where(_role_permissions.c.role_name.in_(roles))
            ).fetchall()
        return {r.permission for r in rows}

    def count_role_holders(self, role: str) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_account_roles).where(_account_roles.c.role_name == role)
            ).scalar()
        return result or 0

    def list_role_holders(self, role: str) -> list[int]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_account_roles.c.account_id).where(_account_roles.c.role_name == role)
            ).fetchall()
        return [r.account_id for r in rows]

    def _load_role(self, conn, row) -> Role:
        perms = conn.execute(
            select(_role_permissions.c.permission).where(_role_permissions.c.role_name == row.name)
        ).fetchall()
        holders = conn.execute(
            select(func.count()).select_from(_account_roles).where(_account_roles.c.role_name == row.name)
        ).scalar()
        return Role(
            name=row.name,
            permissions={p.permission for p in perms},
            is_system=bool(row.is_system),
            holder_count=holders or 0,
        )

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def create_account(self, account: Account, roles: list[str] | None = None) -> int:
        """Insert a new account (and its roles) and return its database ID.

        Raises sqlalchemy.exc.IntegrityError if the email already exists.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.insert().values(
                    email=account.email,
                    hashed_password=account.hashed_password,
                    security_stamp=account.security_stamp or new_security_stamp(),
                    email_confirmed=1 if account.email_confirmed else 0,
                    lockout_until=account.lockout_until,
                    failed_login_count=0,
                    two_factor_enabled=1 if account.two_factor_enabled else 0,
                    totp_secret=account.totp_secret,
                    created_at=_now_iso(),
                )
            )
            account_id = result.inserted_primary_key[0]
            for role in roles or account.roles:
                conn.execute(_account_roles.insert().values(account_id=account_id, role_name=role))
        return account_id

    def get_by_id(self, account_id: int) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
            return self._load_account(conn, row) if row is not None else None

    def get_by_email(self, email: str) -> Account | None:
        """Look up an account by email (stored lowercased by the services)."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email)).fetchone()
            return self._load_account(conn, row) if row is not None else None

    def list_accounts(self, search: str | None = None, offset: int = 0, limit: int = 50) -> tuple[list[Account], int]:
        """Return one page of accounts ordered by email, plus the total count."""
        query = _accounts.select()
        count_query = select(func.count()).select_from(_accounts)
        if search:
            pattern = f"%{search.lower()}%"
            query = query.where(_accounts.c.email.like(pattern))
            count_query = count_query.where(_accounts.c.email.like(pattern))
        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(query.order_by(_accounts.c.email).offset(offset).limit(limit)).fetchall()
            return [self._load_account(conn, r) for r in rows], total

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable columns on an account.

        Boolean fields are converted to 0/1 for SQLite. Returns True if a row
        was updated, False if account_id was not found.
        """
        for key in ("email_confirmed", "two_factor_enabled"):
            if key in fields:
                fields[key] = 1 if fields[key] else 0
        with self.engine.connect() as conn:
            result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def rotate_security_stamp(self, account_id: int) -> str:
        """Replace the security stamp. Every access token minted before now stops validating."""
        stamp = new_security_stamp()
        self.update_account(account_id, security_stamp=stamp)
        return stamp

    def record_failed_login(self, account_id: int, max_attempts: int, lockout_until: str) -> bool:
        """Count a failed password attempt; lock the account once max_attempts is reached.

        Returns True if this attempt triggered the lockout. The increment and
        the threshold check run in one transaction so concurrent failures
        cannot skip past the threshold.
        """
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(failed_login_count=_accounts.c.failed_login_count + 1)
            )
            result = conn.execute(
                _accounts.update()
                .where((_accounts.c.id == account_id) & (_accounts.c.failed_login_count >= max_attempts))
                .values(lockout_until=lockout_until, failed_login_count=0)
            )
        return result.rowcount > 0

    def record_successful_login(self, account_id: int) -> None:
        """Reset the failure counter and stamp last_login."""
        self.update_account(account_id, failed_login_count=0, last_login=_now_iso())

    def add_role(self, account_id: int, role: str) -> None:
        """Assign a role. Raises IntegrityError if already assigned."""
        with self.engine.connect() as conn:
            conn.execute(_account_roles.insert().values(account_id=account_id, role_name=role))
            conn.commit()

    def remove_role_if_not_last(self, account_id: int, role: str) -> bool:
        """Remove a role unless that would leave an administrative role with no holder.

        The holder count is evaluated inside the DELETE, so the decision and the
        removal are one statement. Non-administrative roles are removed
        unconditionally. Returns False when nothing was removed.
        """
        protect = 1 if role in ADMINISTRATIVE_ROLES else 0
        with self.engine.connect() as conn:
            result = conn.execute(
                text(
                    "DELETE FROM account_roles WHERE account_id = :account_id AND role_name = :role "
                    "AND (:protect = 0 OR (SELECT COUNT(*) FROM account_roles WHERE role_name = :role) > 1)"
                ),
                {"account_id": account_id, "role": role, "protect": protect},
            )
            conn.commit()
        return result.rowcount > 0

    def delete_account_if_not_last_admin(self, account_id: int) -> bool:
        """Delete an account and everything it owns, unless it is the last holder of an admin role.

        Callers must revoke sessions first; this method removes the refresh
        token rows along with the account. Returns False if the account is the
        sole holder of Admin or SuperAdmin, or does not exist.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                text(
                    "DELETE FROM accounts WHERE id = :account_id AND NOT EXISTS ("
                    "  SELECT 1 FROM account_roles ar"
                    "  WHERE ar.account_id = :account_id AND ar.role_name IN ('Admin', 'SuperAdmin')"
                    "  AND (SELECT COUNT(*) FROM account_roles x WHERE x.role_name = ar.role_name) <= 1"
                    ")"
                ),
                {"account_id": account_id},
            )
            if result.rowcount == 0:
                return False
            for table in (_account_roles, _external_logins, _refresh_tokens, _challenges, _recovery_codes):
                conn.execute(table.delete().where(table.c.account_id == account_id))
            conn.execute(_password_resets.delete().where(_password_resets.c.account_id == account_id))
            conn.execute(_external_states.delete().where(_external_states.c.account_id == account_id))
        return True

    def _load_account(self, conn, row) -> Account:
        roles = conn.execute(
            select(_account_roles.c.role_name)
            .where(_account_roles.c.account_id == row.id)
            .order_by(_account_roles.c.role_name)
        ).fetchall()
        return _row_to_account(row, [r.role_name for r in roles])

    # ------------------------------------------------------------------
    # Refresh tokens
    # ------------------------------------------------------------------

    def add_refresh_token(self, token: RefreshToken) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(token)))
            conn.commit()
            return result.inserted_primary_key[0]

    def get_refresh_token(self, token_hash: str) -> RefreshToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_refresh_token(row) if row is not None else None

    def rotate_refresh_token(
        self,
        token_hash: str,
        now: str,
        make_successor: Callable[[RefreshToken], RefreshToken],
    ) -> tuple[RefreshToken, RefreshToken] | None:
        """Atomically redeem a refresh token and persist its successor.

        The conditional UPDATE is the first statement of the transaction, so the
        write lock is taken before anything is read. If it matches no row the
        token was already used, invalidated, expired, or never existed and None
        is returned; the caller classifies the failure with get_refresh_token().

        make_successor receives the redeemed record and returns the new record
        to insert. Both writes commit together or not at all.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where(
                    (_refresh_tokens.c.token_hash == token_hash)
                    & (_refresh_tokens.c.is_used == 0)
                    & (_refresh_tokens.c.is_invalidated == 0)
                    & (_refresh_tokens.c.expires_at > now)
                )
                .values(is_used=1, used_at=now)
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(_refresh_tokens.select().where(_refresh_tokens.c.token_hash == token_hash)).fetchone()
            redeemed = _row_to_refresh_token(row)
            successor = make_successor(redeemed)
            inserted = conn.execute(_refresh_tokens.insert().values(**_refresh_token_values(successor)))
            successor.id = inserted.inserted_primary_key[0]
        return redeemed, successor

    def invalidate_refresh_tokens(self, account_id: int) -> int:
        """Invalidate every not-yet-invalidated refresh token of an account. Returns the count."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update()
                .where((_refresh_tokens.c.account_id == account_id) & (_refresh_tokens.c.is_invalidated == 0))
                .values(is_invalidated=1)
            )
            conn.commit()
        return result.rowcount

    def invalidate_refresh_token(self, token_hash: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _refresh_tokens.update().where(_refresh_tokens.c.token_hash == token_hash).values(is_invalidated=1)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # External auth state and logins
    # ------------------------------------------------------------------

    def add_external_state(self, state: ExternalAuthState) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _external_states.insert().values(
                    token_hash=state.token_hash,
                    provider=state.provider,
                    redirect_uri=state.redirect_uri,
                    account_id=state.account_id,
                    created_at=state.created_at or _now_iso(),
                    expires_at=state.expires_at,
                    is_used=0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def consume_external_state(self, token_hash: str, now: str) -> ExternalAuthState | None:
        """Mark a state record used if it is unused and unexpired; return it, else None."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _external_states.update()
                .where(
                    (_external_states.c.token_hash == token_hash)
                    & (_external_states.c.is_used == 0)
                    & (_external_states.c.expires_at > now)
                )
                .values(is_used=1)
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(
                _external_states.select().where(_external_states.c.token_hash == token_hash)
            ).fetchone()
        return _row_to_external_state(row)

    def get_external_login(self, provider: str, provider_key: str) -> ExternalLogin | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _external_logins.select().where(
                    (_external_logins.c.provider == provider) & (_external_logins.c.provider_key == provider_key)
                )
            ).fetchone()
        return _row_to_external_login(row) if row is not None else None

    def add_external_login(self, login: ExternalLogin) -> None:
        """Link a provider identity. Raises IntegrityError if (provider, key) is already linked."""
        with self.engine.connect() as conn:
            conn.execute(
                _external_logins.insert().values(
                    provider=login.provider,
                    provider_key=login.provider_key,
                    account_id=login.account_id,
                    created_at=_now_iso(),
                )
            )
            conn.commit()

    def list_external_logins(self, account_id: int) -> list[ExternalLogin]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _external_logins.select()
                .where(_external_logins.c.account_id == account_id)
                .order_by(_external_logins.c.provider)
            ).fetchall()
        return [_row_to_external_login(r) for r in rows]

    def remove_external_login(self, account_id: int, provider: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _external_logins.delete().where(
                    (_external_logins.c.account_id == account_id) & (_external_logins.c.provider == provider)
                )
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Two-factor challenges and recovery codes
    # ------------------------------------------------------------------

    def add_challenge(self, challenge: TwoFactorChallenge) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.insert().values(
                    token_hash=challenge.token_hash,
                    account_id=challenge.account_id,
                    created_at=challenge.created_at or _now_iso(),
                    expires_at=challenge.expires_at,
                    is_used=0,
                    is_persistent=1 if challenge.is_persistent else 0,
                    failed_attempts=0,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_challenge(self, token_hash: str) -> TwoFactorChallenge | None:
        with self.engine.connect() as conn:
            row = conn.execute(_challenges.select().where(_challenges.c.token_hash == token_hash)).fetchone()
        return _row_to_challenge(row) if row is not None else None

    def record_challenge_failure(self, challenge_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _challenges.update()
                .where(_challenges.c.id == challenge_id)
                .values(failed_attempts=_challenges.c.failed_attempts + 1)
            )
            conn.commit()

    def consume_challenge(self, challenge_id: int, now: str, max_attempts: int) -> bool:
        """Mark a challenge used if it is still live. Returns True for the single winner."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _challenges.update()
                .where(
                    (_challenges.c.id == challenge_id)
                    & (_challenges.c.is_used == 0)
                    & (_challenges.c.expires_at > now)
                    & (_challenges.c.failed_attempts < max_attempts)
                )
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount == 1

    def replace_recovery_codes(self, account_id: int, code_hashes: list[str]) -> None:
        """Drop every existing recovery code and store a fresh set."""
        with self.engine.begin() as conn:
            conn.execute(_recovery_codes.delete().where(_recovery_codes.c.account_id == account_id))
            for code_hash in code_hashes:
                conn.execute(_recovery_codes.insert().values(account_id=account_id, code_hash=code_hash, is_used=0))

    def consume_recovery_code(self, account_id: int, code_hash: str) -> bool:
        """Burn one unused recovery code. Returns False if no matching unused code exists."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _recovery_codes.update()
                .where(
                    (_recovery_codes.c.account_id == account_id)
                    & (_recovery_codes.c.code_hash == code_hash)
                    & (_recovery_codes.c.is_used == 0)
                )
                .values(is_used=1)
            )
            conn.commit()
        return result.rowcount > 0

    def count_recovery_codes(self, account_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_recovery_codes)
                .where((_recovery_codes.c.account_id == account_id) & (_recovery_codes.c.is_used == 0))
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def add_password_reset_token(self, account_id: int, token_hash: str, expires_at: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _password_resets.insert().values(
                    token_hash=token_hash,
                    account_id=account_id,
                    created_at=_now_iso(),
                    expires_at=expires_at,
                    is_used=0,
                )
            )
            conn.commit()

    def consume_password_reset_token(self, token_hash: str, now: str) -> int | None:
        """Burn a live reset token and return its account id, or None."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.update()
                .where(
                    (_password_resets.c.token_hash == token_hash)
                    & (_password_resets.c.is_used == 0)
                    & (_password_resets.c.expires_at > now)
                )
                .values(is_used=1)
            )
            if result.rowcount != 1:
                return None
            return conn.execute(
                select(_password_resets.c.account_id).where(_password_resets.c.token_hash == token_hash)
            ).scalar()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def purge_expired(self, now: str | None = None) -> dict[str, int]:
        """Delete expired or spent single-use records. Returns rows removed per table.

        Refresh tokens are kept until they expire even when used, so replay of
        a rotated token is still recognized as reuse for its full lifetime.
        """
        cutoff = now or _now_iso()
        removed: dict[str, int] = {}
        with self.engine.begin() as conn:
            removed["refresh_tokens"] = conn.execute(
                _refresh_tokens.delete().where(_refresh_tokens.c.expires_at <= cutoff)
            ).rowcount
            removed["external_auth_states"] = conn.execute(
                _external_states.delete().where(
                    (_external_states.c.expires_at <= cutoff) | (_external_states.c.is_used == 1)
                )
            ).rowcount
            removed["two_factor_challenges"] = conn.execute(
                _challenges.delete().where((_challenges.c.expires_at <= cutoff) | (_challenges.c.is_used == 1))
            ).rowcount
            removed["password_reset_tokens"] = conn.execute(
                _password_resets.delete().where(
                    (_password_resets.c.expires_at <= cutoff) | (_password_resets.c.is_used == 1)
                )
            ).rowcount
        return removed

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _refresh_token_values(token: RefreshToken) -> dict:
    return {
        "account_id": token.account_id,
        "token_hash": token.token_hash,
        "created_at": token.created_at or _now_iso(),
        "expires_at": token.expires_at,
        "is_used": 1 if token.is_used else 0,
        "is_invalidated": 1 if token.is_invalidated else 0,
        "is_persistent": 1 if token.is_persistent else 0,
    }


def _row_to_account(row, roles: list[str]) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        security_stamp=row.security_stamp,
        email_confirmed=bool(row.email_confirmed),
        lockout_until=row.lockout_until,
        failed_login_count=row.failed_login_count,
        two_factor_enabled=bool(row.two_factor_enabled),
        totp_secret=row.totp_secret,
        roles=roles,
        created_at=row.created_at,
        last_login=row.last_login,
    )


def _row_to_refresh_token(row) -> RefreshToken:
    return RefreshToken(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        created_at=row.created_at,
        expires_at=row.expires_at,
        is_used=bool(row.is_used),
        used_at=row.used_at,
        is_invalidated=bool(row.is_invalidated),
        is_persistent=bool(row.is_persistent),
    )


def _row_to_external_state(row) -> ExternalAuthState:
    return ExternalAuthState(
        id=row.id,
        token_hash=row.token_hash,
        provider=row.provider,
        redirect_uri=row.redirect_uri,
        account_id=row.account_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        is_used=bool(row.is_used),
    )


def _row_to_external_login(row) -> ExternalLogin:
    return ExternalLogin(
        provider=row.provider,
        provider_key=row.provider_key,
        account_id=row.account_id,
        created_at=row.created_at,
    )


def _row_to_challenge(row) -> TwoFactorChallenge:
    return TwoFactorChallenge(
        id=row.id,
        token_hash=row.token_hash,
        account_id=row.account_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        is_used=bool(row.is_used),
        is_persistent=bool(row.is_persistent),
        failed_attempts=row.failed_attempts,
    )
