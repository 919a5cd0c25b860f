#!/usr/bin/env python3
"""
Keyward -- account, session, and role service.

Usage:
  python main.py seed
  python main.py seed --email root@example.com --password 'long-passphrase'
  python main.py purge
  python main.py serve --host 0.0.0.0 --port 8000

Environment variables (see core/config.py for the full list):
  SECRET_KEY                      Required unless DEBUG=true. At least 32 characters.
  DATABASE_URL                    SQLAlchemy URL (default: sqlite:///keyward.db)
  BOOTSTRAP_SUPERADMIN_EMAIL      Used by `seed` when --email is not given.
  BOOTSTRAP_SUPERADMIN_PASSWORD   Used by `seed` when --password is not given.
"""

import argparse
import sys

from auth.errors import ServiceError
from auth.models import Account
from auth.roles import SUPERADMIN
from auth.session import check_password_strength, normalize_email
from auth.store import AccountStore
from auth.tokens import hash_password
from core.config import Settings, get_settings


def _open_store(settings: Settings) -> AccountStore:
    return AccountStore(db_url=settings.database_url, timeout=settings.store_timeout_seconds)


def seed(settings: Settings, email: str | None, password: str | None) -> int:
    """Create the system roles and, if credentials are given, the first SuperAdmin.

    Idempotent: an existing account with the bootstrap email is left untouched.
    """
    store = _open_store(settings)
    try:
        store.ensure_system_roles()
        print("  System roles ready.")

        email = email or settings.bootstrap_superadmin_email
        password = password or settings.bootstrap_superadmin_password
        if not email:
            return 0
        if not password:
            print("  [!] A bootstrap email was given without a password.")
            return 1

        email = normalize_email(email)
        if store.get_by_email(email) is not None:
            print(f"  Account {email} already exists -- skipped.")
            return 0
        try:
            check_password_strength(password)
        except ServiceError as e:
            print(f"  [!] {e.message}")
            return 1
        account_id = store.create_account(
            Account(email=email, hashed_password=hash_password(password), email_confirmed=True),
            roles=[SUPERADMIN],
        )
        print(f"  SuperAdmin {email} created (id {account_id}).")
        return 0
    finally:
        store.close()


def purge(settings: Settings) -> int:
    store = _open_store(settings)
    try:
        removed = store.purge_expired()
    finally:
        store.close()
    for table, count in removed.items():
        print(f"  {table}: {count} removed")
    return 0


def serve(host: str, port: int, reload: bool) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=host, port=port, reload=reload)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="keyward",
        description="Account, session, and role service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py seed --email root@example.com --password 'correct horse battery'
  python main.py purge
  python main.py serve --reload
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    seed_parser = sub.add_parser("seed", help="Create system roles and the bootstrap SuperAdmin")
    seed_parser.add_argument("--email", help="SuperAdmin email (default: BOOTSTRAP_SUPERADMIN_EMAIL)")
    seed_parser.add_argument("--password", help="SuperAdmin password (default: BOOTSTRAP_SUPERADMIN_PASSWORD)")

    sub.add_parser("purge", help="Delete expired refresh tokens, OAuth states, challenges, and reset links")

    serve_parser = sub.add_parser("serve", help="Run the API with uvicorn")
    serve_parser.add_argument("--host", default="127.0.0.1")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.add_argument("--reload", action="store_true", help="Reload on code changes (development)")

    args = parser.parse_args(argv)

    if args.command == "serve":
        return serve(args.host, args.port, args.reload)

    settings = get_settings()
    if args.command == "seed":
        return seed(settings, args.email, args.password)
    return purge(settings)


if __name__ == "__main__":
    sys.exit(main())
