"""
auth/sessions.py -- Repository for refresh session rows.

Pattern: Repository + Data Mapper over the refresh_sessions table defined in
auth/store.py. SessionStore owns every refresh session row; the engine fetches,
validates, and discards rows within one request and never caches them.

Invariants enforced here:
  - Every lookup and delete is restricted to sessions whose owner is a live
    (non-tombstoned) account. A session of a soft-deleted account behaves as
    if it does not exist.
  - token_hash is UNIQUE. create() surfaces a collision as DuplicateSessionHash
    so the caller can retry with a freshly generated session id.
  - rotate() is one conditional UPDATE inside one transaction. The WHERE clause
    re-validates the old hash, the owner, and the expiry. An expired row is
    never extended, and when two requests race on the same old hash the
    database lets exactly one of them match a row; the other sees rowcount 0
    and gets SessionNotFound.
  - Deletes are hard deletes and report SessionNotFound when nothing matched,
    except the expiry purges (delete_if_expired, delete_expired), which report
    what they removed.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import DuplicateSessionHash, SessionNotFound
from auth.models import RefreshSession
from auth.store import from_iso, live_account_ids, now_utc, refresh_sessions, to_iso, transaction

logger = logging.getLogger("authsvc.store")

_LIVE_SESSION = refresh_sessions.c.deleted_at.is_(None) & refresh_sessions.c.owner_id.in_(live_account_ids())


class SessionStore:
    """Repository for RefreshSession entities.

    Usage:
        sessions = SessionStore(engine)
        sessions.create(RefreshSession(owner_id=1, token_hash=h, expires_at=expiry))
        row = sessions.read_by_hash(h)
        sessions.rotate(h, new_h, new_expiry)
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    def create(self, session: RefreshSession) -> int:
        """Insert a new session row and return its id.

        Raises DuplicateSessionHash on a token_hash collision and
        StorageUnavailable on any other database failure.
        """
        stamp = to_iso(now_utc())
        try:
            with transaction(self.engine, "create_session") as conn:
                result = conn.execute(
                    refresh_sessions.insert().values(
                        owner_id=session.owner_id,
                        token_hash=session.token_hash,
                        expires_at=to_iso(session.expires_at),
                        created_at=stamp,
                        updated_at=stamp,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            # token_hash is the only UNIQUE column; owner_id is validated by the caller
            raise DuplicateSessionHash() from exc

    def read_by_hash(self, token_hash: str) -> RefreshSession:
        """Return the live session with this hash. Raises SessionNotFound."""
        with transaction(self.engine, "read_session_by_hash") as conn:
            row = conn.execute(
                refresh_sessions.select().where((refresh_sessions.c.token_hash == token_hash) & _LIVE_SESSION)
            ).fetchone()
        if row is None:
            raise SessionNotFound()
        return _row_to_session(row)

    def read_by_id(self, session_id: int) -> RefreshSession:
        """Return the live session with this primary key. Raises SessionNotFound."""
        with transaction(self.engine, "read_session_by_id") as conn:
            row = conn.execute(
                refresh_sessions.select().where((refresh_sessions.c.id == session_id) & _LIVE_SESSION)
            ).fetchone()
        if row is None:
            raise SessionNotFound()
        return _row_to_session(row)

    # ------------------------------------------------------------------
    # Rotation
    # ------------------------------------------------------------------

    def rotate(self, old_hash: str, new_hash: str, new_expiry: datetime, now: datetime | None = None) -> None:
        """Atomically replace old_hash with new_hash and reset the expiry.

        Raises SessionNotFound if old_hash no longer resolves to a live,
        unexpired session (already rotated, logged out, expired as of `now`, or
        owner deleted), and DuplicateSessionHash if new_hash collides with
        another row.
        """
        moment = now or now_utc()
        try:
            with transaction(self.engine, "rotate_session") as conn:
                result = conn.execute(
                    refresh_sessions.update()
                    .where(
                        (refresh_sessions.c.token_hash == old_hash)
                        & (refresh_sessions.c.expires_at > to_iso(moment))
                        & _LIVE_SESSION
                    )
                    .values(token_hash=new_hash, expires_at=to_iso(new_expiry), updated_at=to_iso(moment))
                )
        except IntegrityError as exc:
            raise DuplicateSessionHash() from exc
        if result.rowcount == 0:
            raise SessionNotFound()
        if result.rowcount > 1:
            # token_hash is UNIQUE, so this means the schema was tampered with
            logger.error("rotate_session matched %d rows for one hash", result.rowcount)

    # ------------------------------------------------------------------
    # Deletes
    # ------------------------------------------------------------------

    def _delete(self, clause, operation: str) -> int:
        with transaction(self.engine, operation) as conn:
            result = conn.execute(refresh_sessions.delete().where(clause & _LIVE_SESSION))
        if result.rowcount == 0:
            raise SessionNotFound()
        return result.rowcount

    def delete_by_hash(self, token_hash: str) -> None:
        """Hard-delete the session with this hash. Raises SessionNotFound."""
        self._delete(refresh_sessions.c.token_hash == token_hash, "delete_session_by_hash")

    def delete_by_id(self, session_id: int) -> None:
        """Hard-delete the session with this primary key. Raises SessionNotFound."""
        self._delete(refresh_sessions.c.id == session_id, "delete_session_by_id")

    def delete_by_owner(self, owner_id: int) -> int:
        """Hard-delete every session owned by an account; returns the count.

        Raises SessionNotFound when the account had no sessions.
        """
        return self._delete(refresh_sessions.c.owner_id == owner_id, "delete_sessions_by_owner")

    def delete_if_expired(self, token_hash: str, now: datetime | None = None) -> bool:
        """Hard-delete the session with this hash only if it has expired.

        The expiry test and the delete are one statement, so a row that a
        concurrent refresh just rotated (new hash, new expiry) is never removed.
        Returns True when a row was deleted.
        """
        cutoff = to_iso(now or now_utc())
        with transaction(self.engine, "delete_session_if_expired") as conn:
            result = conn.execute(
                refresh_sessions.delete().where(
                    (refresh_sessions.c.token_hash == token_hash) & (refresh_sessions.c.expires_at <= cutoff)
                )
            )
        return result.rowcount > 0

    def delete_expired(self, now: datetime | None = None) -> int:
        """Purge every session whose expiry has passed; returns the count.

        Unlike the other deletes this ignores owner liveness: expired rows are
        garbage regardless of who owns them, and zero matches is not an error.
        """
        cutoff = to_iso(now or now_utc())
        with transaction(self.engine, "delete_expired_sessions") as conn:
            result = conn.execute(refresh_sessions.delete().where(refresh_sessions.c.expires_at <= cutoff))
        if result.rowcount:
            logger.info("Purged %d expired refresh sessions", result.rowcount)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        owner_id=row.owner_id,
        token_hash=row.token_hash,
        expires_at=from_iso(row.expires_at),
        created_at=row.created_at,
        updated_at=row.updated_at,
        deleted_at=row.deleted_at,
    )
