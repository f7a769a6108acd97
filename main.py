#!/usr/bin/env python3
"""
Auth service -- management CLI.

Usage:
  python main.py serve
  python main.py serve --host 0.0.0.0 --port 8000
  python main.py create-account --email admin@example.com --password 'Passw0rd!' --role admin
  python main.py revoke-sessions --account-id 42
  python main.py purge-sessions

Configuration comes from the environment / .env exactly as for the API
(ACCESS_TOKEN_SECRET, REFRESH_TOKEN_SECRET, DATABASE_URL, ...). Set DEBUG=true to
run locally without real secrets.
"""

import argparse
import sys
from contextlib import contextmanager
from typing import Iterator, Optional

from auth.accounts import AccountService
from auth.engine import AuthEngine
from auth.errors import AuthError
from auth.models import Role
from auth.sessions import SessionStore
from auth.store import AccountStore, create_db_engine
from core.config import get_settings


@contextmanager
def _services() -> Iterator[tuple[AccountService, AuthEngine, SessionStore]]:
    """Build the same object graph as the API lifespan, minus the last-seen worker.

    The database engine is disposed on exit, whether or not the command failed.
    """
    settings = get_settings()
    db_engine = create_db_engine(settings.database_url, timeout=settings.db_timeout_seconds)
    try:
        accounts = AccountStore(db_engine)
        sessions = SessionStore(db_engine)
        engine = AuthEngine(accounts, sessions, settings)
        yield AccountService(accounts, engine), engine, sessions
    finally:
        db_engine.dispose()


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def _create_account(args: argparse.Namespace) -> int:
    with _services() as (service, _engine, _sessions):
        account = service.register(args.email, args.password, role=Role(args.role))
    print(f"  Created account {account.id} ({account.email}, role={account.role.value}).")
    return 0


def _revoke_sessions(args: argparse.Namespace) -> int:
    with _services() as (_service, engine, _sessions):
        count = engine.revoke_all(args.account_id)
    print(f"  Revoked {count} refresh session(s) for account {args.account_id}.")
    return 0


def _purge_sessions(args: argparse.Namespace) -> int:
    with _services() as (_service, _engine, sessions):
        count = sessions.delete_expired()
    print(f"  Purged {count} expired refresh session(s).")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="authsvc",
        description="Account and refresh-session management for the auth service.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    serve = sub.add_parser("serve", help="Run the HTTP API with uvicorn")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true", help="Reload on code changes (development only)")
    serve.set_defaults(func=_serve)

    create = sub.add_parser("create-account", help="Register an account")
    create.add_argument("--email", required=True)
    create.add_argument("--password", required=True)
    create.add_argument("--role", choices=[r.value for r in Role], default=Role.user.value)
    create.set_defaults(func=_create_account)

    revoke = sub.add_parser("revoke-sessions", help="Delete every refresh session of an account")
    revoke.add_argument("--account-id", type=int, required=True)
    revoke.set_defaults(func=_revoke_sessions)

    purge = sub.add_parser("purge-sessions", help="Delete expired refresh sessions")
    purge.set_defaults(func=_purge_sessions)

    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        parser.print_help()
        return 1
    try:
        return args.func(args)
    except AuthError as exc:
        print(f"  [!] {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
