"""
auth/store.py -- SQLAlchemy Core schema, engine factory, and the account repository.

Pattern: Repository + Data Mapper.
AccountStore is the repository for Account rows; _row_to_account is the mapper.
SessionStore (auth/sessions.py) shares this module's metadata and engine because
session lookups join against the accounts table. Route, engine, and dependency
code never touches SQL directly.

Soft delete:
  Accounts are never hard-deleted by normal flow. soft_delete() stamps
  deleted_at, and every query filters on ACCOUNT_IS_LIVE, so a tombstoned
  account is invisible to lookups and to the session joins.

Errors:
  IntegrityError on the email UNIQUE index becomes EmailAlreadyExists. Every
  other SQLAlchemyError is logged with full detail and re-raised as
  StorageUnavailable so raw database errors never reach transport.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision, so string
order equals time order.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import Column, ForeignKey, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.errors import AccountNotFound, EmailAlreadyExists, StorageUnavailable
from auth.models import Account, Role

logger = logging.getLogger("authsvc.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text, nullable=False),
    Column("role", String(16), nullable=False, server_default=Role.user.value),
    Column("last_seen", String(32)),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),  # soft-delete tombstone
)

refresh_sessions = Table(
    "refresh_sessions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("owner_id", Integer, ForeignKey("accounts.id"), nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("expires_at", String(32), nullable=False, index=True),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)


# The soft-delete rule lives here and only here. Account lookups filter on
# ACCOUNT_IS_LIVE; session queries restrict owner_id to live_account_ids().
ACCOUNT_IS_LIVE = accounts.c.deleted_at.is_(None)


def live_account_ids():
    """Select the ids of accounts that are not tombstoned."""
    return select(accounts.c.id).where(ACCOUNT_IS_LIVE)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new SQLite connection.

    SQLite PRAGMAs are per-connection, so they are set on connect rather than
    once at engine creation.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(db_url: str, timeout: float = 5.0) -> Engine:
    """Create the shared engine and make sure the schema exists.

    timeout bounds both the pool checkout and, for SQLite, the busy wait on a
    locked database, so no store call blocks indefinitely.
    """
    connect_args: dict = {}
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout
    else:
        kwargs["pool_pre_ping"] = True
        kwargs["pool_timeout"] = timeout
    engine = create_engine(db_url, connect_args=connect_args, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragmas)
    metadata.create_all(engine)
    return engine


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@contextmanager
def transaction(engine: Engine, operation: str) -> Iterator[Connection]:
    """Run a block inside one transaction, translating driver failures.

    IntegrityError propagates untouched so callers can map the specific
    constraint; anything else becomes StorageUnavailable.
    """
    try:
        with engine.begin() as conn:
            yield conn
    except IntegrityError:
        raise
    except SQLAlchemyError as exc:
        logger.error("%s failed: %s", operation, exc)
        raise StorageUnavailable() from exc


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account entities.

    Usage:
        store = AccountStore(create_db_engine("sqlite:///authsvc.db"))
        account_id = store.create(Account(email="a@x.com", password_hash=hash_password("Passw0rd!")))
        account = store.get_by_email("a@x.com")
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_accounts(self) -> bool:
        """Return True if at least one live account exists."""
        with transaction(self.engine, "has_accounts") as conn:
            count = conn.execute(
                select(func.count()).select_from(accounts).where(ACCOUNT_IS_LIVE)
            ).scalar()
        return (count or 0) > 0

    def get_by_email(self, email: str) -> Account:
        """Look up a live account by exact email (case-sensitive).

        Raises AccountNotFound if no live account has that email.
        """
        with transaction(self.engine, "get_by_email") as conn:
            row = conn.execute(
                accounts.select().where((accounts.c.email == email) & ACCOUNT_IS_LIVE)
            ).fetchone()
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    def get_by_id(self, account_id: int) -> Account:
        """Look up a live account by primary key. Raises AccountNotFound."""
        with transaction(self.engine, "get_by_id") as conn:
            row = conn.execute(
                accounts.select().where((accounts.c.id == account_id) & ACCOUNT_IS_LIVE)
            ).fetchone()
        if row is None:
            raise AccountNotFound()
        return _row_to_account(row)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, account: Account) -> int:
        """Insert a new account and return its id.

        Raises EmailAlreadyExists if the email is already taken. The UNIQUE
        index also covers tombstoned rows, so a soft-deleted email cannot be
        re-registered.
        """
        stamp = to_iso(now_utc())
        try:
            with transaction(self.engine, "create_account") as conn:
                result = conn.execute(
                    accounts.insert().values(
                        email=account.email,
                        password_hash=account.password_hash,
                        role=Role(account.role).value,
                        last_seen=account.last_seen or stamp,
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise EmailAlreadyExists() from exc

    def _update(self, account_id: int, operation: str, **fields) -> None:
        fields["updated_at"] = to_iso(now_utc())
        with transaction(self.engine, operation) as conn:
            result = conn.execute(
                accounts.update()
                .where((accounts.c.id == account_id) & ACCOUNT_IS_LIVE)
                .values(**fields)
            )
        if result.rowcount == 0:
            raise AccountNotFound()

    def update_email(self, account_id: int, email: str) -> None:
        """Change an account's email. Raises EmailAlreadyExists or AccountNotFound."""
        try:
            self._update(account_id, "update_email", email=email)
        except IntegrityError as exc:
            raise EmailAlreadyExists() from exc

    def update_password(self, account_id: int, password_hash: str) -> None:
        """Replace an account's password hash. Raises AccountNotFound."""
        self._update(account_id, "update_password", password_hash=password_hash)

    def touch_last_seen(self, account_id: int) -> None:
        """Stamp the current UTC time as last_seen. Raises AccountNotFound."""
        self._update(account_id, "touch_last_seen", last_seen=to_iso(now_utc()))

    def soft_delete(self, account_id: int) -> None:
        """Tombstone an account. It disappears from every lookup and session join."""
        self._update(account_id, "soft_delete", deleted_at=to_iso(now_utc()))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        role=Role(row.role),
        last_seen=row.last_seen,
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )
